"""
Late-payment penalty rules and the penalties applied under them.

PenaltyRule describes how much to charge once an invoice is overdue past
its grace period. AppliedPenalty is one charge on one invoice for one day;
waiving a penalty flips its flag and removes it from the balance, the row
itself is kept.

Usage:
    from fees.models import AppliedPenalty, PenaltyRule

    rule = PenaltyRule.objects.create(
        institution_id=institution_id,
        name="5% late fee",
        penalty_type=PenaltyType.PER_DAY_PERCENTAGE,
        rate=Decimal("5"),
        grace_days=7,
    )
"""

from __future__ import annotations

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from fees.state_machines import AppliedBy, PenaltyFrequency, PenaltyType


class PenaltyRule(UUIDPrimaryKeyMixin, BaseModel):
    """
    Rule for charging late-payment penalties.

    Fields:
        penalty_type: FLAT (rate is cents) or PER_DAY_PERCENTAGE (rate is a
            percentage of the invoice's outstanding balance)
        rate: Amount or percentage, see penalty_type
        grace_days: Days after the due date before the rule applies
        apply_per: DAILY stacks one row per day, ONCE charges a single row
        max_penalty_cents: Optional cap on the rule's unwaived total per invoice
        is_active/auto_apply: Whether the scheduled sweep picks this rule up
        last_applied_at: When the sweep last processed this rule
    """

    institution_id = models.UUIDField(db_index=True)

    name = models.CharField(max_length=100)

    penalty_type = models.CharField(
        max_length=20,
        choices=PenaltyType.choices,
        default=PenaltyType.FLAT,
    )

    rate = models.DecimalField(
        max_digits=14,
        decimal_places=4,
        validators=[MinValueValidator(Decimal("0"))],
        help_text="Cents for flat rules, percent of outstanding balance otherwise",
    )

    grace_days = models.PositiveIntegerField(default=0)

    apply_per = models.CharField(
        max_length=10,
        choices=PenaltyFrequency.choices,
        default=PenaltyFrequency.DAILY,
    )

    max_penalty_cents = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Cap on this rule's unwaived penalties per invoice",
    )

    is_active = models.BooleanField(default=True)
    auto_apply = models.BooleanField(default=True)

    last_applied_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["name"]
        verbose_name = "Penalty Rule"
        verbose_name_plural = "Penalty Rules"
        indexes = [
            models.Index(fields=["is_active", "auto_apply"], name="fees_rule_active_auto_idx"),
        ]

    def __str__(self) -> str:
        return f"PenaltyRule({self.name}, {self.penalty_type}, {self.rate})"


class AppliedPenaltyQuerySet(models.QuerySet):
    def unwaived(self) -> AppliedPenaltyQuerySet:
        return self.filter(waived=False)


class AppliedPenalty(UUIDPrimaryKeyMixin, BaseModel):
    """
    One late-payment charge on an invoice.

    At most one non-waived row exists per (invoice, applied_date); the
    conditional unique constraint backs the engine's skip-if-present check
    so that concurrent sweeps cannot double-charge.

    Fields:
        amount_cents: Charged amount in minor units
        days_overdue: Whole days between due date and applied_date
        applied_date: Effective date for period locks
        applied_by: SYSTEM for the scheduled sweep, ADMIN for manual charges
        waived/waived_at/waived_by/waiver_reason: Set when a waiver is approved
    """

    institution_id = models.UUIDField(db_index=True)
    student_id = models.UUIDField(db_index=True)

    invoice = models.ForeignKey(
        "fees.Invoice",
        on_delete=models.PROTECT,
        related_name="penalties",
    )

    penalty_rule = models.ForeignKey(
        PenaltyRule,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="applied_penalties",
    )

    amount_cents = models.PositiveBigIntegerField()
    days_overdue = models.PositiveIntegerField(default=0)
    applied_date = models.DateField(db_index=True)

    applied_by = models.CharField(
        max_length=10,
        choices=AppliedBy.choices,
        default=AppliedBy.SYSTEM,
    )

    applied_by_actor = models.UUIDField(
        null=True,
        blank=True,
        help_text="Admin who applied a manual penalty",
    )

    waived = models.BooleanField(default=False, db_index=True)
    waived_at = models.DateTimeField(null=True, blank=True)
    waived_by = models.UUIDField(null=True, blank=True)
    waiver_reason = models.TextField(blank=True, default="")

    objects = AppliedPenaltyQuerySet.as_manager()

    class Meta:
        ordering = ["-applied_date", "-created_at"]
        verbose_name = "Applied Penalty"
        verbose_name_plural = "Applied Penalties"
        indexes = [
            models.Index(fields=["institution_id", "student_id", "waived"], name="fees_penalty_inst_student_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["invoice", "applied_date"],
                condition=models.Q(waived=False),
                name="applied_penalty_one_unwaived_per_day",
            ),
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="applied_penalty_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        suffix = ", waived" if self.waived else ""
        return f"AppliedPenalty({self.invoice_id}, {self.applied_date}, {self.amount_cents}{suffix})"

    def waive(self, actor_id, reason: str = "") -> None:
        """Exclude this penalty from the balance, keeping the row."""
        self.waived = True
        self.waived_at = timezone.now()
        self.waived_by = actor_id
        self.waiver_reason = reason
        self.save(update_fields=["waived", "waived_at", "waived_by", "waiver_reason", "updated_at"])
