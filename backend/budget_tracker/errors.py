"""Domain errors raised by persistence and the recurring engine.

Each error carries a stable ``code`` that the HTTP layer puts in the error
envelope and an HTTP ``status_code`` it maps to.
"""


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class AccessDeniedError(LedgerError):
    code = "FORBIDDEN"
    status_code = 403


class ConflictError(LedgerError):
    code = "CONFLICT"
    status_code = 409


class TransientStorageError(LedgerError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class InvariantViolation(LedgerError):
    code = "INVARIANT_VIOLATION"
    status_code = 500
