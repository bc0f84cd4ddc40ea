"""
Penalty engine for late-payment penalties.

This module provides the PenaltyEngine class which charges AppliedPenalty
rows against overdue posted invoices according to PenaltyRule settings.

Eligibility for an invoice under a rule on a given day:
1. The invoice is posted and has an outstanding balance > 0
2. days_overdue = (today - due_date).days is greater than grace_days
3. No non-waived penalty exists for (invoice, today)
4. For ONCE rules, no non-waived penalty from the rule exists at all
5. The rule's max_penalty_cents cap (if any) is not yet used up

Applying is idempotent per invoice and day, so the scheduled sweep can be
re-triggered safely; the conditional unique constraint on AppliedPenalty
backs the check against concurrent sweeps. Penalties stack day-over-day as
separate rows and are never compounded.

Usage:
    from fees.services import PenaltyEngine

    result = PenaltyEngine.sweep(institution_id=institution_id)
    print(f"Applied {result.applied}, skipped {result.skipped}, failed {result.failed}")
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from core.services import BaseService

from fees.events import EventType, publish, record_audit
from fees.exceptions import FeesNotFoundError, FeesValidationError
from fees.models import AppliedPenalty, Invoice, PenaltyRule
from fees.services.ledger_service import LedgerService
from fees.services.period_guard import PeriodGuard
from fees.state_machines import AppliedBy, InvoiceStatus, PenaltyFrequency, PenaltyType

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class SweepResult:
    """
    Summary of one penalty sweep.

    Attributes:
        rules_processed: Active auto-apply rules visited
        applied: Penalties created
        skipped: Eligible-by-date invoices that needed no penalty today
        failed: Invoices whose application raised; the sweep continued
        errors: One entry per failure with invoice, rule and error
    """

    rules_processed: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


# =============================================================================
# Penalty Engine
# =============================================================================


class PenaltyEngine(BaseService):
    """Computes and applies late-payment penalties."""

    @staticmethod
    def compute_amount(rule: PenaltyRule, outstanding_cents: int, days_overdue: int) -> int:
        """
        Penalty for one application of the rule, in cents.

        FLAT charges rate cents; PER_DAY_PERCENTAGE charges rate percent of
        the outstanding balance, rounded half-up to whole cents. Nothing is
        charged within the grace period.
        """
        if days_overdue <= rule.grace_days or outstanding_cents <= 0:
            return 0

        rate = Decimal(rule.rate)
        if rule.penalty_type == PenaltyType.FLAT:
            amount = rate
        else:
            amount = Decimal(outstanding_cents) * rate / Decimal(100)

        return max(int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)), 0)

    @classmethod
    def apply_for_invoice(
        cls,
        invoice: Invoice,
        rule: PenaltyRule,
        today: datetime.date | None = None,
        applied_by: str = AppliedBy.SYSTEM,
    ) -> AppliedPenalty | None:
        """
        Apply the rule to one invoice for today, if eligible.

        Returns:
            The created AppliedPenalty, or None when the invoice needs no
            penalty today (not eligible, already charged, cap reached)

        Raises:
            FeesValidationError: If the rule belongs to another institution
            PeriodLockedError: If today falls in a locked period
        """
        today = today or timezone.localdate()

        if rule.institution_id != invoice.institution_id:
            raise FeesValidationError(
                "Penalty rule and invoice belong to different institutions",
                details={"rule_id": str(rule.id), "invoice_id": str(invoice.id)},
            )

        with cls.atomic():
            invoice = Invoice.objects.select_for_update().get(pk=invoice.pk)
            if invoice.status != InvoiceStatus.POSTED:
                return None

            outstanding = LedgerService.invoice_outstanding_cents(invoice.id)
            days_overdue = (today - invoice.due_date).days
            amount = cls.compute_amount(rule, outstanding, days_overdue)
            if amount <= 0:
                return None

            unwaived = AppliedPenalty.objects.unwaived().filter(invoice_id=invoice.id)
            if unwaived.filter(applied_date=today).exists():
                return None

            from_rule = unwaived.filter(penalty_rule_id=rule.id)
            if rule.apply_per == PenaltyFrequency.ONCE and from_rule.exists():
                return None

            if rule.max_penalty_cents is not None:
                charged = from_rule.aggregate(total=Sum("amount_cents"))["total"] or 0
                remaining_cap = rule.max_penalty_cents - charged
                if remaining_cap <= 0:
                    return None
                amount = min(amount, remaining_cap)

            PeriodGuard.assert_open(invoice.institution_id, today)

            try:
                with transaction.atomic():
                    penalty = AppliedPenalty.objects.create(
                        institution_id=invoice.institution_id,
                        student_id=invoice.student_id,
                        invoice=invoice,
                        penalty_rule=rule,
                        amount_cents=amount,
                        days_overdue=days_overdue,
                        applied_date=today,
                        applied_by=applied_by,
                    )
            except IntegrityError:
                # A concurrent sweep charged this invoice for today first
                return None

            cls._record_applied(penalty, actor_id=None, rule_name=rule.name)

        logger.info(
            f"Applied penalty to invoice {invoice.id}",
            extra={
                "penalty_id": str(penalty.id),
                "invoice_id": str(invoice.id),
                "rule_id": str(rule.id),
                "amount_cents": amount,
                "days_overdue": days_overdue,
            },
        )
        return penalty

    @classmethod
    def sweep(
        cls,
        institution_id: uuid.UUID | None = None,
        today: datetime.date | None = None,
    ) -> SweepResult:
        """
        Apply every active auto-apply rule to its overdue invoices.

        Each invoice is applied in its own transaction. A failure on one
        invoice is logged and counted, and the sweep moves on.
        """
        today = today or timezone.localdate()
        result = SweepResult()

        rules = PenaltyRule.objects.filter(is_active=True, auto_apply=True).order_by("created_at", "id")
        if institution_id is not None:
            rules = rules.filter(institution_id=institution_id)

        for rule in rules:
            cutoff = today - datetime.timedelta(days=rule.grace_days)
            overdue = Invoice.objects.filter(
                institution_id=rule.institution_id,
                status=InvoiceStatus.POSTED,
                due_date__lt=cutoff,
            ).order_by("due_date", "id")

            for invoice in overdue:
                try:
                    penalty = cls.apply_for_invoice(invoice, rule, today=today)
                except Exception as e:
                    result.failed += 1
                    result.errors.append(
                        {"invoice_id": str(invoice.id), "rule_id": str(rule.id), "error": str(e)}
                    )
                    logger.error(
                        f"Failed to apply penalty to invoice {invoice.id}: {e}",
                        extra={"invoice_id": str(invoice.id), "rule_id": str(rule.id), "error": str(e)},
                    )
                    continue

                if penalty is None:
                    result.skipped += 1
                else:
                    result.applied += 1

            rule.last_applied_at = timezone.now()
            rule.save(update_fields=["last_applied_at", "updated_at"])
            result.rules_processed += 1

        logger.info(
            f"Penalty sweep complete: applied {result.applied}, skipped {result.skipped}, failed {result.failed}",
            extra={
                "institution_id": str(institution_id) if institution_id else None,
                "today": today.isoformat(),
                "rules_processed": result.rules_processed,
                "applied": result.applied,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
        return result

    @classmethod
    def apply_manual(
        cls,
        invoice_id: uuid.UUID,
        amount_cents: int,
        actor_id: uuid.UUID,
        applied_date: datetime.date | None = None,
        penalty_rule_id: uuid.UUID | None = None,
    ) -> AppliedPenalty:
        """
        Charge an admin-entered penalty on a posted invoice.

        Raises:
            FeesNotFoundError: If the invoice does not exist
            FeesValidationError: If the amount is not positive, the invoice is
                not posted, or it already has a penalty for applied_date
            PeriodLockedError: If applied_date falls in a locked period
        """
        applied_date = applied_date or timezone.localdate()
        if amount_cents is None or amount_cents <= 0:
            raise FeesValidationError(
                "amount_cents must be greater than zero",
                details={"amount_cents": ["Must be greater than zero"]},
            )

        with cls.atomic():
            try:
                invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            except Invoice.DoesNotExist:
                raise FeesNotFoundError(
                    f"Invoice {invoice_id} not found",
                    error_code="INVOICE_NOT_FOUND",
                    details={"invoice_id": str(invoice_id)},
                ) from None

            if invoice.status != InvoiceStatus.POSTED:
                raise FeesValidationError(
                    f"Penalties can only be applied to posted invoices (invoice is '{invoice.status}')",
                    details={"invoice_id": str(invoice.id)},
                )

            PeriodGuard.assert_open(invoice.institution_id, applied_date)

            if AppliedPenalty.objects.unwaived().filter(invoice_id=invoice.id, applied_date=applied_date).exists():
                raise FeesValidationError(
                    f"Invoice already has a penalty for {applied_date.isoformat()}",
                    details={"invoice_id": str(invoice.id), "applied_date": applied_date.isoformat()},
                )

            penalty = AppliedPenalty.objects.create(
                institution_id=invoice.institution_id,
                student_id=invoice.student_id,
                invoice=invoice,
                penalty_rule_id=penalty_rule_id,
                amount_cents=amount_cents,
                days_overdue=max((applied_date - invoice.due_date).days, 0),
                applied_date=applied_date,
                applied_by=AppliedBy.ADMIN,
                applied_by_actor=actor_id,
            )
            cls._record_applied(penalty, actor_id=actor_id)

        logger.info(
            f"Manually applied penalty to invoice {invoice.id}",
            extra={"penalty_id": str(penalty.id), "actor_id": str(actor_id), "amount_cents": amount_cents},
        )
        return penalty

    @staticmethod
    def _record_applied(penalty: AppliedPenalty, actor_id: uuid.UUID | None, rule_name: str = "") -> None:
        details = {
            "invoice_id": penalty.invoice_id,
            "student_id": penalty.student_id,
            "amount_cents": penalty.amount_cents,
            "days_overdue": penalty.days_overdue,
            "applied_date": penalty.applied_date,
            "applied_by": penalty.applied_by,
        }
        record_audit(
            "penalty.applied",
            "applied_penalty",
            penalty.id,
            institution_id=penalty.institution_id,
            actor_id=actor_id,
            metadata={**details, "penalty_rule": rule_name},
        )
        publish(EventType.PENALTY_APPLIED, penalty.institution_id, {"penalty_id": penalty.id, **details})
