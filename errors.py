"""Failure taxonomy shared by the ledger, the aggregators and the HTTP adapter.

Caller-correctable failures also derive from ``ValueError`` so call sites can
keep handling them the way the rest of the code base handles bad input.
"""


class LedgerError(Exception):
    """Base class for every failure raised by the ledger core."""


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, detected before any write."""


class InvalidAmount(ValidationError):
    pass


class FutureDate(ValidationError):
    pass


class NotFoundError(LedgerError, ValueError):
    """A referenced record does not exist or is not visible to the user."""


class CategoryNotFound(NotFoundError):
    pass


class TransactionNotFound(NotFoundError):
    pass


class BudgetNotFound(NotFoundError):
    pass


class TypeMismatchError(LedgerError, ValueError):
    """Category type does not match the transaction or budget type."""


class ConflictError(LedgerError, ValueError):
    """The request is well formed but clashes with the current state."""


class RecomputeFailure(LedgerError):
    """A derived-data scan failed; previously stored values were kept."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"recompute failed for {key}: {cause}")
        self.key = key
        self.cause = cause


class StoreUnavailable(LedgerError):
    """The backing store could not be reached; the caller may retry."""
