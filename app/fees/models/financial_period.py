"""
FinancialPeriod model for accounting period locks.

A period covers an inclusive date range for one institution. While a period
is locked, no ledger or penalty mutation whose effective date falls inside
it is accepted (see fees.services.period_guard.PeriodGuard).

Usage:
    from fees.models import FinancialPeriod

    FinancialPeriod.objects.covering(institution_id, date(2024, 1, 15)).filter(is_locked=True).exists()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from fees.state_machines import PeriodType

if TYPE_CHECKING:
    import datetime
    import uuid


class FinancialPeriodQuerySet(models.QuerySet):
    def covering(self, institution_id: uuid.UUID, on_date: datetime.date) -> FinancialPeriodQuerySet:
        """Periods of the institution whose inclusive range contains on_date."""
        return self.filter(
            institution_id=institution_id,
            start_date__lte=on_date,
            end_date__gte=on_date,
        )

    def overlapping(
        self,
        institution_id: uuid.UUID,
        start_date: datetime.date,
        end_date: datetime.date,
    ) -> FinancialPeriodQuerySet:
        """Periods of the institution sharing at least one day with the range."""
        return self.filter(
            institution_id=institution_id,
            start_date__lte=end_date,
            end_date__gte=start_date,
        )


class FinancialPeriod(UUIDPrimaryKeyMixin, BaseModel):
    """
    An accounting period that can be locked against mutation.

    Lifecycle:
        created open -> locked (lock)
        locked -> open (unlock, only while can_unlock is True)
        deletion only while open

    Fields:
        institution_id: Owning institution (opaque id from identity service)
        period_type: Granularity of the period
        start_date/end_date: Inclusive range, never overlapping another
            period of the same institution
        is_locked: Whether mutations inside the range are rejected
        locked_at/locked_by/lock_reason: Stamped by the most recent lock
        can_unlock: Operator escape hatch for correcting a wrong lock
    """

    institution_id = models.UUIDField(
        db_index=True,
        help_text="Institution this period belongs to",
    )

    name = models.CharField(
        max_length=100,
        help_text="Display name (e.g., 'Term 1 2024')",
    )

    period_type = models.CharField(
        max_length=20,
        choices=PeriodType.choices,
        default=PeriodType.MONTH,
        help_text="Granularity of the period",
    )

    start_date = models.DateField(help_text="First day of the period (inclusive)")
    end_date = models.DateField(help_text="Last day of the period (inclusive)")

    is_locked = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether ledger mutations inside this period are rejected",
    )

    locked_at = models.DateTimeField(null=True, blank=True)

    locked_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="Actor who locked the period",
    )

    lock_reason = models.TextField(blank=True, default="")

    can_unlock = models.BooleanField(
        default=True,
        help_text="Whether a locked period may be reopened",
    )

    objects = FinancialPeriodQuerySet.as_manager()

    class Meta:
        ordering = ["start_date"]
        verbose_name = "Financial Period"
        verbose_name_plural = "Financial Periods"
        indexes = [
            models.Index(fields=["institution_id", "start_date", "end_date"], name="fees_period_inst_range_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(start_date__lte=models.F("end_date")),
                name="financial_period_range_valid",
            ),
        ]

    def __str__(self) -> str:
        state = "locked" if self.is_locked else "open"
        return f"FinancialPeriod({self.name}, {self.start_date}..{self.end_date}, {state})"

    @property
    def status(self) -> str:
        return "locked" if self.is_locked else "open"
