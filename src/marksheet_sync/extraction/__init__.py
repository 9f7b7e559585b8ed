from .engine import extract_records, extract_student_info, find_group_title, is_record_table, map_row
from .rules import ExtractionRules, FieldRule

__all__ = [
    "ExtractionRules",
    "FieldRule",
    "extract_records",
    "extract_student_info",
    "find_group_title",
    "is_record_table",
    "map_row",
]
