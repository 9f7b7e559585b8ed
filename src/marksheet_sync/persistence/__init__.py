from .store import MarksheetStore
from .writer import FallbackIdentifierPolicy, NullToZeroAtPersistence, PersistenceWriter, to_record

__all__ = [
    "FallbackIdentifierPolicy",
    "MarksheetStore",
    "NullToZeroAtPersistence",
    "PersistenceWriter",
    "to_record",
]
