"""Exception taxonomy raised by the daybook reconciliation engine."""

from __future__ import annotations

from typing import Optional, Sequence


class ClosingError(Exception):
    """Base class for every recoverable daybook error."""


class ValidationError(ClosingError, ValueError):
    """Raised when caller input is rejected before any I/O happens."""


class MissingReferenceError(ClosingError):
    """Raised when a write references a product or movement that does not exist."""


class IllegalTransitionError(ClosingError):
    """Raised when an operation is not allowed in the current closing state."""


class ConflictError(ClosingError):
    """Raised when the day was finalized (or handed off) by another session.

    The caller is expected to reload state instead of retrying.
    """


class PersistenceError(ClosingError):
    """Raised when the record store fails; the original failure is attached."""

    def __init__(self, message: str, *, reason: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.reason = reason


class PartialLockFailure(PersistenceError):
    """Raised when some per-product stock writes failed during a lock."""

    def __init__(
        self,
        message: str,
        *,
        failed_product_ids: Sequence[str],
        updated_product_ids: Sequence[str],
        rolled_back: bool,
        reason: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.failed_product_ids = tuple(failed_product_ids)
        self.updated_product_ids = tuple(updated_product_ids)
        self.rolled_back = rolled_back


__all__ = [
    "ClosingError",
    "ValidationError",
    "MissingReferenceError",
    "IllegalTransitionError",
    "ConflictError",
    "PersistenceError",
    "PartialLockFailure",
]
