"""
Fees-specific exceptions for ledger, penalty, approval and payment operations.

Every rejected operation raises one of these typed errors; none of them is
swallowed inside the services, and the operation that raised leaves no
partial writes behind (each service method runs in transaction.atomic()).

Exception Hierarchy:
    FeesError (base for fees domain)
    ├── FeesNotFoundError - Entity lookup failures
    ├── FeesValidationError - Invalid input (non-positive amounts, bad ranges)
    ├── PeriodLockedError - Mutation against a locked effective date
    ├── OverAllocationError - Allocation exceeds invoice or payment remainder
    └── NotUnlockableError - Unlock attempted on a period with can_unlock=False

    ConflictError subclasses (HTTP 409):
    ├── DuplicateTransactionReferenceError - transaction_reference reused
    ├── DuplicateRequestError - Second pending approval for the same target
    ├── PeriodOverlapError - Period overlaps another of the institution
    ├── InvalidTransitionError - State machine transition from a non-source state
    ├── StaleRecordError - Optimistic locking conflict
    └── LockAcquisitionError - Distributed lock timeout

Usage:
    from fees.exceptions import PeriodLockedError, OverAllocationError

    if PeriodGuard.is_locked(institution_id, due_date):
        raise PeriodLockedError(institution_id=institution_id, effective_date=due_date)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    import datetime
    import uuid
    from typing import Any


# =============================================================================
# Fees Domain Exceptions
# =============================================================================


class FeesError(BaseApplicationError):
    """
    Base exception for all fees operations.

    Example:
        try:
            LedgerService.allocate(payment_id, invoice_id, 1500_00)
        except FeesError as e:
            logger.warning(f"Allocation rejected: {e}")
            return Response(e.to_dict(), status=e.http_status)
    """

    default_error_code: str = "FEES_ERROR"


class FeesNotFoundError(FeesError):
    """Raised when an invoice, payment, period, penalty, request or intent is missing."""

    default_error_code: str = "FEES_NOT_FOUND"
    http_status: int = 404


class FeesValidationError(FeesError):
    """
    Raised when input fails a business rule before any write.

    Use for:
    - Non-positive invoice totals, payment or allocation amounts
    - Period ranges where start_date is after end_date
    - Allocation against a draft or cancelled invoice
    """

    default_error_code: str = "FEES_VALIDATION_ERROR"


class PeriodLockedError(FeesError):
    """
    Raised when a mutation's effective date falls in a locked period.

    Recoverable by the caller choosing a different effective date or by
    an operator unlocking the period (when it allows unlocking).

    Attributes:
        institution_id: Institution whose period is locked
        effective_date: The date that was checked
    """

    default_error_code: str = "PERIOD_LOCKED"
    http_status: int = 409

    def __init__(
        self,
        institution_id: uuid.UUID,
        effective_date: datetime.date,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.institution_id = institution_id
        self.effective_date = effective_date

        full_details = {
            "institution_id": str(institution_id),
            "effective_date": effective_date.isoformat(),
        }
        if details:
            full_details.update(details)

        super().__init__(
            message=f"Accounting period is locked for {effective_date.isoformat()}",
            error_code=error_code,
            details=full_details,
        )


class OverAllocationError(FeesError):
    """
    Raised when an allocation exceeds the invoice outstanding balance or
    the payment's unallocated remainder.

    Attributes:
        requested: Amount (in cents) the caller tried to allocate
        available: Amount (in cents) that was actually available
    """

    default_error_code: str = "OVER_ALLOCATION"

    def __init__(
        self,
        message: str,
        requested: int,
        available: int,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.requested = requested
        self.available = available

        full_details = {
            "requested_cents": requested,
            "available_cents": available,
        }
        if details:
            full_details.update(details)

        super().__init__(message=message, error_code=error_code, details=full_details)


class NotUnlockableError(FeesError):
    """Raised when unlocking a period whose can_unlock flag is False."""

    default_error_code: str = "NOT_UNLOCKABLE"
    http_status: int = 409


# =============================================================================
# Conflict Exceptions
# =============================================================================


class DuplicateTransactionReferenceError(ConflictError):
    """
    Raised when a transaction_reference has already been recorded.

    First-party submissions treat this as an error. Provider callback
    replays never reach it: the callback handler checks the intent's
    terminal state first and returns a no-op success.
    """

    default_error_code: str = "DUPLICATE_TRANSACTION_REFERENCE"


class DuplicateRequestError(ConflictError):
    """Raised when a pending approval request already targets the same entity."""

    default_error_code: str = "DUPLICATE_REQUEST"


class PeriodOverlapError(ConflictError):
    """Raised when a new period overlaps an existing one of the same institution."""

    default_error_code: str = "PERIOD_OVERLAP"


class InvalidTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with our standard error format.

    Example:
        try:
            request.approve(reviewer_id, notes)
        except TransitionNotAllowed:
            raise InvalidTransitionError(
                f"Cannot approve request in '{request.status}' state",
                details={"current_state": request.status, "transition": "approve"},
            )
    """

    default_error_code: str = "INVALID_TRANSITION"


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Fees domain
    "FeesError",
    "FeesNotFoundError",
    "FeesValidationError",
    "PeriodLockedError",
    "OverAllocationError",
    "NotUnlockableError",
    # Conflicts
    "DuplicateTransactionReferenceError",
    "DuplicateRequestError",
    "PeriodOverlapError",
    "InvalidTransitionError",
    "StaleRecordError",
    "LockAcquisitionError",
]
