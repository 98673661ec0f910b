"""Typed failures raised by the merge engine, the reconciler and the stores.

Every error carries the operation that failed and the offending id so that the
HTTP layer (or any other caller) can build a message without re-deriving context.
"""


class LedgerError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, operation: str | None = None, entity_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "operation": self.operation,
            "entity_id": self.entity_id,
            "retryable": self.retryable,
        }


class ValidationError(LedgerError):
    """Bad caller input: too few orders, blank display code, bad amount."""
    status_code = 400


class NotFound(LedgerError):
    status_code = 404


class InvalidState(LedgerError):
    """Operation attempted on an order in the wrong merge state."""
    status_code = 409


class PersistenceError(LedgerError):
    status_code = 503
    retryable = True
