from typing import Optional


class LedgerError(Exception):
    """Base class for errors raised by the ledger services."""


class ValidationError(LedgerError, ValueError):
    """Malformed or missing input. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(LedgerError, ValueError):
    """A user-owned entity does not exist or is soft-deleted."""


class ConflictError(LedgerError, ValueError):
    """A uniqueness invariant would be violated outside an upsert path."""


class StorageError(LedgerError, RuntimeError):
    """The store failed; callers retry the whole logical operation."""
