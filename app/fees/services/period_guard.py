"""
Period guard for accounting period locks.

PeriodGuard answers "is date D locked for institution I?" as a pure query
over the FinancialPeriod table; there is no process-wide "current period".
Every mutating ledger and penalty operation calls assert_open() with its
effective date before writing anything.

Lock, unlock and delete serialize on the period row (select_for_update) so
two operators acting on the same period never interleave. is_locked takes
no locks and never blocks writers.

Usage:
    from fees.services import PeriodGuard

    PeriodGuard.create_period(
        institution_id=institution_id,
        name="January 2024",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
    )
    PeriodGuard.lock(period.id, reason="Month closed", actor_id=bursar_id)

    PeriodGuard.is_locked(institution_id, date(2024, 1, 15))   # True
    PeriodGuard.assert_open(institution_id, date(2024, 1, 15))  # raises PeriodLockedError
"""

from __future__ import annotations

import datetime
import logging
import uuid

from django.utils import timezone

from core.services import BaseService

from fees.events import record_audit
from fees.exceptions import (
    FeesNotFoundError,
    FeesValidationError,
    InvalidTransitionError,
    NotUnlockableError,
    PeriodLockedError,
    PeriodOverlapError,
)
from fees.locks import DistributedLock
from fees.models import FinancialPeriod
from fees.state_machines import PeriodType

logger = logging.getLogger(__name__)

PERIOD_CREATE_LOCK_TTL = 30
PERIOD_CREATE_LOCK_TIMEOUT = 5.0


class PeriodGuard(BaseService):
    """Accounting period lock queries and transitions."""

    # ==========================================================================
    # Queries
    # ==========================================================================

    @staticmethod
    def is_locked(institution_id: uuid.UUID, on_date: datetime.date) -> bool:
        """Whether on_date falls inside a locked period of the institution."""
        return (
            FinancialPeriod.objects.covering(institution_id, on_date)
            .filter(is_locked=True)
            .exists()
        )

    @classmethod
    def assert_open(cls, institution_id: uuid.UUID, on_date: datetime.date) -> None:
        """
        Raise PeriodLockedError when on_date falls inside a locked period.

        Called by mutating operations with their effective date (invoice due
        date, payment date, penalty applied date) before any write.
        """
        if cls.is_locked(institution_id, on_date):
            raise PeriodLockedError(institution_id=institution_id, effective_date=on_date)

    # ==========================================================================
    # Period management
    # ==========================================================================

    @classmethod
    def create_period(
        cls,
        institution_id: uuid.UUID,
        name: str,
        start_date: datetime.date,
        end_date: datetime.date,
        period_type: str = PeriodType.MONTH,
        can_unlock: bool = True,
    ) -> FinancialPeriod:
        """
        Create an open period.

        Raises:
            FeesValidationError: If start_date is after end_date
            PeriodOverlapError: If the range overlaps another period
            LockAcquisitionError: If another create for the institution holds
                the lock past its timeout
        """
        if start_date > end_date:
            raise FeesValidationError(
                "Period start_date must not be after end_date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        # The overlap check and the insert must not interleave with another
        # create for the same institution; there may be no row to lock yet.
        lock = DistributedLock(
            f"periods:{institution_id}",
            ttl=PERIOD_CREATE_LOCK_TTL,
            timeout=PERIOD_CREATE_LOCK_TIMEOUT,
        )
        with lock, cls.atomic():
            existing = (
                FinancialPeriod.objects.overlapping(institution_id, start_date, end_date)
                .order_by("start_date")
                .first()
            )
            if existing is not None:
                raise PeriodOverlapError(
                    f"Period overlaps '{existing.name}' ({existing.start_date} to {existing.end_date})",
                    details={"overlapping_period_id": str(existing.id)},
                )

            period = FinancialPeriod.objects.create(
                institution_id=institution_id,
                name=name,
                period_type=period_type,
                start_date=start_date,
                end_date=end_date,
                can_unlock=can_unlock,
            )

        logger.info(
            f"Created financial period {period.name}",
            extra={"period_id": str(period.id), "institution_id": str(institution_id)},
        )
        return period

    @classmethod
    def lock(cls, period_id: uuid.UUID, reason: str, actor_id: uuid.UUID) -> FinancialPeriod:
        """
        Lock an open period.

        Raises:
            FeesNotFoundError: If the period does not exist
            InvalidTransitionError: If the period is already locked
        """
        with cls.atomic():
            period = cls._get_for_update(period_id)
            if period.is_locked:
                raise InvalidTransitionError(
                    f"Period '{period.name}' is already locked",
                    details={"current_state": period.status, "transition": "lock"},
                )

            period.is_locked = True
            period.locked_at = timezone.now()
            period.locked_by = actor_id
            period.lock_reason = reason or ""
            period.save(update_fields=["is_locked", "locked_at", "locked_by", "lock_reason", "updated_at"])

            record_audit(
                "period.locked",
                "financial_period",
                period.id,
                institution_id=period.institution_id,
                actor_id=actor_id,
                metadata={"from_status": "open", "to_status": "locked", "reason": reason},
            )

        logger.info(
            f"Locked financial period {period.name}",
            extra={"period_id": str(period.id), "actor_id": str(actor_id)},
        )
        return period

    @classmethod
    def unlock(cls, period_id: uuid.UUID, actor_id: uuid.UUID, reason: str = "") -> FinancialPeriod:
        """
        Reopen a locked period.

        Raises:
            FeesNotFoundError: If the period does not exist
            NotUnlockableError: If the period's can_unlock flag is False
            InvalidTransitionError: If the period is not locked
        """
        with cls.atomic():
            period = cls._get_for_update(period_id)
            if not period.is_locked:
                raise InvalidTransitionError(
                    f"Period '{period.name}' is not locked",
                    details={"current_state": period.status, "transition": "unlock"},
                )
            if not period.can_unlock:
                raise NotUnlockableError(
                    f"Period '{period.name}' cannot be unlocked",
                    details={"period_id": str(period.id)},
                )

            period.is_locked = False
            period.save(update_fields=["is_locked", "updated_at"])

            record_audit(
                "period.unlocked",
                "financial_period",
                period.id,
                institution_id=period.institution_id,
                actor_id=actor_id,
                metadata={"from_status": "locked", "to_status": "open", "reason": reason},
            )

        logger.info(
            f"Unlocked financial period {period.name}",
            extra={"period_id": str(period.id), "actor_id": str(actor_id)},
        )
        return period

    @classmethod
    def delete_period(cls, period_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        """
        Delete an open period.

        Raises:
            FeesNotFoundError: If the period does not exist
            InvalidTransitionError: If the period is locked
        """
        with cls.atomic():
            period = cls._get_for_update(period_id)
            if period.is_locked:
                raise InvalidTransitionError(
                    f"Locked period '{period.name}' cannot be deleted",
                    details={"current_state": period.status, "transition": "delete"},
                )

            record_audit(
                "period.deleted",
                "financial_period",
                period.id,
                institution_id=period.institution_id,
                actor_id=actor_id,
                metadata={
                    "from_status": "open",
                    "to_status": "deleted",
                    "name": period.name,
                    "start_date": period.start_date,
                    "end_date": period.end_date,
                },
            )
            period.delete()

        logger.info(f"Deleted financial period {period_id}", extra={"actor_id": str(actor_id)})

    @staticmethod
    def _get_for_update(period_id: uuid.UUID) -> FinancialPeriod:
        try:
            return FinancialPeriod.objects.select_for_update().get(pk=period_id)
        except FinancialPeriod.DoesNotExist:
            raise FeesNotFoundError(
                f"Financial period {period_id} not found",
                error_code="PERIOD_NOT_FOUND",
                details={"period_id": str(period_id)},
            ) from None
