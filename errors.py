from typing import Optional


class NotFoundError(LookupError):
    """A referenced entity (profile, period, transaction, ...) does not exist."""


class ValidationError(ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class StoreError(RuntimeError):
    """The underlying store failed to read or write.

    ``operation`` names the store call that failed, e.g. ``"load:transactions"``
    or ``"insert_period"``.
    """

    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        super().__init__(f"{operation} failed: {message}" if message else f"{operation} failed")
        self.operation = operation
