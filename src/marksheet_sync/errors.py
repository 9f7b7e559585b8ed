from __future__ import annotations


class MarksheetSyncError(RuntimeError):
    """
    Base class for every failure this package raises on purpose.
    """


class TransportError(MarksheetSyncError):
    """
    Navigation or network failure reported by the browser driver.

    Non-fatal while checking an existing session; fatal when it keeps us from reaching the login page.
    """


class AuthenticationFailure(MarksheetSyncError):
    """
    The portal refused the login or sent us back to its login page mid-run.
    """


class LoginFormNotFoundError(AuthenticationFailure):
    """
    Raised when the username field never shows up on the login page (and we were not redirected into the portal).
    """


class ContentNotFound(MarksheetSyncError):
    """
    The records page was reached but the expected tables never showed up (or yielded no records).
    """


class ExtractionAnomaly(MarksheetSyncError):
    """
    A row or field could not be classified. Logged and counted, never fatal.
    """


class PersistenceConflict(MarksheetSyncError):
    """
    The store already holds a record for this (student, course code) key.
    """


class PersistenceError(MarksheetSyncError):
    """
    Any other store failure for a single record.
    """
