"""
Tests for PeriodGuard.

Covers the pure lock query, period creation and the lock / unlock /
delete lifecycle with its audit trail.
"""

import datetime
import uuid

import pytest

from fees.exceptions import (
    FeesNotFoundError,
    FeesValidationError,
    InvalidTransitionError,
    LockAcquisitionError,
    NotUnlockableError,
    PeriodLockedError,
    PeriodOverlapError,
)
from fees.models import AuditRecord, FinancialPeriod
from fees.services import PeriodGuard
from fees.tests.factories import FinancialPeriodFactory

pytestmark = pytest.mark.django_db


class TestIsLocked:
    """Tests for PeriodGuard.is_locked / assert_open."""

    @pytest.mark.parametrize(
        "on_date",
        [datetime.date(2024, 1, 1), datetime.date(2024, 1, 15), datetime.date(2024, 1, 31)],
    )
    def test_dates_inside_locked_period_are_locked(self, locked_january, institution_id, on_date):
        """Should treat both range ends as inside the period."""
        assert PeriodGuard.is_locked(institution_id, on_date) is True

    @pytest.mark.parametrize("on_date", [datetime.date(2023, 12, 31), datetime.date(2024, 2, 1)])
    def test_dates_outside_locked_period_are_open(self, locked_january, institution_id, on_date):
        assert PeriodGuard.is_locked(institution_id, on_date) is False

    def test_open_period_is_not_locked(self, january_period, institution_id):
        assert PeriodGuard.is_locked(institution_id, datetime.date(2024, 1, 15)) is False

    def test_date_outside_any_period_is_open(self, institution_id):
        assert PeriodGuard.is_locked(institution_id, datetime.date(2030, 6, 1)) is False

    def test_lock_is_scoped_to_institution(self, locked_january):
        """Should not leak one institution's lock to another."""
        assert PeriodGuard.is_locked(uuid.uuid4(), datetime.date(2024, 1, 15)) is False

    def test_assert_open_raises_with_details(self, locked_january, institution_id):
        with pytest.raises(PeriodLockedError) as exc_info:
            PeriodGuard.assert_open(institution_id, datetime.date(2024, 1, 15))

        error = exc_info.value
        assert error.error_code == "PERIOD_LOCKED"
        assert error.http_status == 409
        assert error.effective_date == datetime.date(2024, 1, 15)
        assert error.details["effective_date"] == "2024-01-15"
        assert error.details["institution_id"] == str(institution_id)

    def test_assert_open_passes_for_open_date(self, locked_january, institution_id):
        PeriodGuard.assert_open(institution_id, datetime.date(2024, 2, 1))


@pytest.mark.usefixtures("mock_redis")
class TestCreatePeriod:
    """Tests for PeriodGuard.create_period."""

    def test_creates_open_period(self, institution_id):
        period = PeriodGuard.create_period(
            institution_id=institution_id,
            name="Term 1 2024",
            start_date=datetime.date(2024, 1, 8),
            end_date=datetime.date(2024, 4, 5),
            period_type="term",
        )

        assert period.is_locked is False
        assert period.status == "open"
        assert period.can_unlock is True
        assert PeriodGuard.is_locked(institution_id, datetime.date(2024, 3, 1)) is False

    def test_single_day_period_is_allowed(self, institution_id):
        day = datetime.date(2024, 5, 1)
        period = PeriodGuard.create_period(institution_id, "May Day", day, day)

        assert period.start_date == period.end_date == day

    def test_rejects_inverted_range(self, institution_id):
        with pytest.raises(FeesValidationError):
            PeriodGuard.create_period(
                institution_id, "Backwards", datetime.date(2024, 2, 1), datetime.date(2024, 1, 1)
            )

    @pytest.mark.parametrize(
        "start,end",
        [
            (datetime.date(2024, 1, 31), datetime.date(2024, 2, 29)),
            (datetime.date(2023, 12, 1), datetime.date(2024, 1, 1)),
            (datetime.date(2024, 1, 10), datetime.date(2024, 1, 20)),
            (datetime.date(2023, 12, 1), datetime.date(2024, 3, 1)),
        ],
    )
    def test_rejects_overlap(self, january_period, institution_id, start, end):
        with pytest.raises(PeriodOverlapError) as exc_info:
            PeriodGuard.create_period(institution_id, "Overlap", start, end)

        assert exc_info.value.details["overlapping_period_id"] == str(january_period.id)
        assert exc_info.value.http_status == 409

    def test_adjacent_period_is_allowed(self, january_period, institution_id):
        period = PeriodGuard.create_period(
            institution_id, "February 2024", datetime.date(2024, 2, 1), datetime.date(2024, 2, 29)
        )

        assert FinancialPeriod.objects.filter(institution_id=institution_id).count() == 2
        assert period.start_date == datetime.date(2024, 2, 1)

    def test_other_institution_may_overlap(self, january_period):
        PeriodGuard.create_period(uuid.uuid4(), "January 2024", datetime.date(2024, 1, 1), datetime.date(2024, 1, 31))

    def test_serializes_on_institution_lock(self, mock_redis, institution_id):
        PeriodGuard.create_period(institution_id, "March 2024", datetime.date(2024, 3, 1), datetime.date(2024, 3, 31))

        args, kwargs = mock_redis.set.call_args
        assert args[0] == f"lock:periods:{institution_id}"
        assert kwargs["nx"] is True
        mock_redis.eval.assert_called_once()

    def test_concurrent_create_holding_lock_blocks_insert(self, mock_redis, institution_id, mocker):
        mocker.patch("fees.services.period_guard.PERIOD_CREATE_LOCK_TIMEOUT", 0.0)
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError):
            PeriodGuard.create_period(
                institution_id, "March 2024", datetime.date(2024, 3, 1), datetime.date(2024, 3, 31)
            )

        assert not FinancialPeriod.objects.filter(institution_id=institution_id).exists()


class TestLockLifecycle:
    """Tests for lock, unlock and delete."""

    def test_lock_stamps_and_audits(self, january_period, institution_id, actor_id):
        period = PeriodGuard.lock(january_period.id, reason="Month closed", actor_id=actor_id)

        assert period.is_locked is True
        assert period.locked_by == actor_id
        assert period.locked_at is not None
        assert period.lock_reason == "Month closed"
        assert PeriodGuard.is_locked(institution_id, datetime.date(2024, 1, 10)) is True

        audit = AuditRecord.objects.get(action="period.locked")
        assert audit.entity_id == january_period.id
        assert audit.actor_id == actor_id
        assert audit.metadata == {"from_status": "open", "to_status": "locked", "reason": "Month closed"}

    def test_lock_twice_is_invalid(self, locked_january, actor_id):
        with pytest.raises(InvalidTransitionError):
            PeriodGuard.lock(locked_january.id, reason="again", actor_id=actor_id)

    def test_unlock_reopens_period(self, locked_january, institution_id, actor_id):
        PeriodGuard.unlock(locked_january.id, actor_id=actor_id, reason="Correcting a receipt")

        assert PeriodGuard.is_locked(institution_id, datetime.date(2024, 1, 10)) is False
        audit = AuditRecord.objects.get(action="period.unlocked")
        assert audit.metadata["reason"] == "Correcting a receipt"
        assert audit.metadata["to_status"] == "open"

    def test_unlock_open_period_is_invalid(self, january_period, actor_id):
        with pytest.raises(InvalidTransitionError):
            PeriodGuard.unlock(january_period.id, actor_id=actor_id)

    def test_unlock_respects_can_unlock(self, institution_id, actor_id):
        period = FinancialPeriodFactory(institution_id=institution_id, is_locked=True, can_unlock=False)

        with pytest.raises(NotUnlockableError):
            PeriodGuard.unlock(period.id, actor_id=actor_id)

        assert FinancialPeriod.objects.get(pk=period.pk).is_locked is True
        assert not AuditRecord.objects.filter(action="period.unlocked").exists()

    def test_delete_open_period(self, january_period, actor_id):
        PeriodGuard.delete_period(january_period.id, actor_id=actor_id)

        assert not FinancialPeriod.objects.filter(pk=january_period.pk).exists()
        audit = AuditRecord.objects.get(action="period.deleted")
        assert audit.metadata["name"] == "January 2024"
        assert audit.metadata["start_date"] == "2024-01-01"

    def test_delete_locked_period_is_invalid(self, locked_january, actor_id):
        with pytest.raises(InvalidTransitionError):
            PeriodGuard.delete_period(locked_january.id, actor_id=actor_id)

        assert FinancialPeriod.objects.filter(pk=locked_january.pk).exists()

    @pytest.mark.parametrize("operation", ["lock", "unlock", "delete_period"])
    def test_unknown_period(self, operation, actor_id):
        kwargs = {"actor_id": actor_id}
        if operation == "lock":
            kwargs["reason"] = "x"

        with pytest.raises(FeesNotFoundError) as exc_info:
            getattr(PeriodGuard, operation)(uuid.uuid4(), **kwargs)

        assert exc_info.value.error_code == "PERIOD_NOT_FOUND"
