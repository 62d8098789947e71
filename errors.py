"""
Error taxonomy shared by every workflow.

Each error carries the HTTP status the API answers with, so main.py can
translate them in a single exception handler.
"""


class WasteLedgerError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(WasteLedgerError):
    """Missing or malformed caller input. Raised before any write."""
    status_code = 400


class NotFoundError(WasteLedgerError):
    status_code = 404


class TaskConflict(WasteLedgerError):
    """The task changed hands or status while we were working on it."""
    status_code = 409


class InsufficientBalance(WasteLedgerError):
    status_code = 400


class PersistenceError(WasteLedgerError):
    """The store is unreachable or rejected a write."""
    status_code = 503


class VerificationError(WasteLedgerError):
    """The vision model call failed."""
    status_code = 502


class ParseError(VerificationError):
    """The vision model answered, but not with the JSON shape we asked for."""
