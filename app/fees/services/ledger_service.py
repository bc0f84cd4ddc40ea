"""
Ledger service for invoices, payments and allocations.

This module provides the LedgerService class, the only writer of Invoice,
Payment and Allocation rows. It keeps the per-student balance invariant

    balance = Σ posted invoice totals
              − Σ confirmed payment amounts
              + Σ unwaived applied penalties

true at every commit, and the allocation bounds:

- active allocations against an invoice never exceed its total
- active allocations of a payment never exceed its amount

Every mutation runs in one transaction, checks the period guard with its
effective date before writing, and row-locks what it touches (the payment
first, then invoices in primary key order) so concurrent writers on the
same rows serialize.

Usage:
    from fees.services import LedgerService

    invoice = LedgerService.create_invoice(
        institution_id=institution_id,
        student_id=student_id,
        total_cents=1000_00,
        due_date=date(2024, 2, 1),
    )
    LedgerService.post_invoice(invoice.id, actor_id=bursar_id)

    payment = LedgerService.record_payment(
        institution_id=institution_id,
        student_id=student_id,
        amount_cents=600_00,
        transaction_reference="QX123ABC",
        payment_date=date(2024, 2, 3),
        method=PaymentMethod.MPESA,
    )  # auto-allocates oldest-due-first

    LedgerService.student_balance(institution_id, student_id).balance_cents
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import Sum

from django_fsm import TransitionNotAllowed

from core.services import BaseService

from fees.events import record_audit
from fees.exceptions import (
    DuplicateTransactionReferenceError,
    FeesNotFoundError,
    FeesValidationError,
    InvalidTransitionError,
    OverAllocationError,
)
from fees.locks import check_version
from fees.models import Allocation, AppliedPenalty, Invoice, Payment
from fees.services.period_guard import PeriodGuard
from fees.state_machines import InvoiceStatus, PaymentMethod, PaymentStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


# =============================================================================
# Allocation Policies
# =============================================================================

OLDEST_DUE_FIRST = "oldest_due_first"
NEWEST_DUE_FIRST = "newest_due_first"

# policy -> newest-first flag; ties always fall back to ascending id
ALLOCATION_POLICIES = {
    OLDEST_DUE_FIRST: False,
    NEWEST_DUE_FIRST: True,
}


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class AllocationRequest:
    """Explicit allocation of part of a payment to one invoice."""

    invoice_id: uuid.UUID
    amount_cents: int


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    A student's balance and its three components, read at one point in time.

    Attributes:
        invoiced_cents: Σ posted invoice totals
        paid_cents: Σ confirmed payment amounts
        penalty_cents: Σ unwaived applied penalties
    """

    institution_id: uuid.UUID
    student_id: uuid.UUID
    invoiced_cents: int
    paid_cents: int
    penalty_cents: int

    @property
    def balance_cents(self) -> int:
        return self.invoiced_cents - self.paid_cents + self.penalty_cents


# =============================================================================
# Ledger Service
# =============================================================================


class LedgerService(BaseService):
    """Invoice, payment and allocation operations."""

    # ==========================================================================
    # Invoices
    # ==========================================================================

    @classmethod
    def create_invoice(
        cls,
        institution_id: uuid.UUID,
        student_id: uuid.UUID,
        total_cents: int,
        due_date: datetime.date,
        invoice_number: str = "",
        description: str = "",
        actor_id: uuid.UUID | None = None,
    ) -> Invoice:
        """
        Create a draft invoice.

        Drafts do not count toward the balance; the period guard is checked
        when the invoice is posted.

        Raises:
            FeesValidationError: If total_cents is not positive
        """
        cls._require_positive(total_cents, "total_cents")

        invoice = Invoice.objects.create(
            institution_id=institution_id,
            student_id=student_id,
            total_cents=total_cents,
            due_date=due_date,
            invoice_number=invoice_number,
            description=description,
            created_by=actor_id,
        )
        logger.info(
            f"Created draft invoice {invoice.id}",
            extra={"invoice_id": str(invoice.id), "student_id": str(student_id), "total_cents": total_cents},
        )
        return invoice

    @classmethod
    def post_invoice(
        cls,
        invoice_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        expected_version: int | None = None,
    ) -> Invoice:
        """
        Post a draft invoice so it counts toward the balance.

        Pass expected_version when acting on a copy read earlier (an edit
        screen); the post is refused if the invoice changed since.

        Raises:
            FeesNotFoundError: If the invoice does not exist
            StaleRecordError: If expected_version no longer matches
            InvalidTransitionError: If the invoice is not a draft
            FeesValidationError: If the total is not positive
            PeriodLockedError: If the due date falls in a locked period
        """
        with cls.atomic():
            invoice = cls._lock_invoice(invoice_id, expected_version)
            cls._require_positive(invoice.total_cents, "total_cents")
            PeriodGuard.assert_open(invoice.institution_id, invoice.due_date)

            try:
                invoice.post(actor_id=actor_id)
            except TransitionNotAllowed:
                raise InvalidTransitionError(
                    f"Cannot post invoice in '{invoice.status}' state",
                    details={"invoice_id": str(invoice.id), "current_state": invoice.status, "transition": "post"},
                ) from None
            invoice.save()

            record_audit(
                "invoice.posted",
                "invoice",
                invoice.id,
                institution_id=invoice.institution_id,
                actor_id=actor_id,
                metadata={"from_status": InvoiceStatus.DRAFT, "to_status": InvoiceStatus.POSTED},
            )

        logger.info(f"Posted invoice {invoice.id}", extra={"invoice_id": str(invoice.id)})
        return invoice

    @classmethod
    def cancel_invoice(
        cls,
        invoice_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        reason: str = "",
        expected_version: int | None = None,
    ) -> Invoice:
        """
        Cancel a draft or posted invoice.

        Raises:
            FeesNotFoundError: If the invoice does not exist
            StaleRecordError: If expected_version is given and no longer matches
            InvalidTransitionError: If the invoice is already cancelled or
                confirmed payments are still allocated against it
            PeriodLockedError: If a posted invoice's due date is locked
        """
        with cls.atomic():
            invoice = cls._lock_invoice(invoice_id, expected_version)
            from_status = invoice.status

            if from_status == InvoiceStatus.POSTED:
                PeriodGuard.assert_open(invoice.institution_id, invoice.due_date)

            allocated = cls._invoice_allocated_cents(invoice.id)
            if allocated > 0:
                raise InvalidTransitionError(
                    "Cannot cancel an invoice with confirmed payments allocated against it",
                    details={"invoice_id": str(invoice.id), "allocated_cents": allocated, "transition": "cancel"},
                )

            try:
                invoice.cancel(actor_id=actor_id)
            except TransitionNotAllowed:
                raise InvalidTransitionError(
                    f"Cannot cancel invoice in '{invoice.status}' state",
                    details={"invoice_id": str(invoice.id), "current_state": invoice.status, "transition": "cancel"},
                ) from None
            invoice.save()

            record_audit(
                "invoice.cancelled",
                "invoice",
                invoice.id,
                institution_id=invoice.institution_id,
                actor_id=actor_id,
                metadata={"from_status": from_status, "to_status": InvoiceStatus.CANCELLED, "reason": reason},
            )

        logger.info(f"Cancelled invoice {invoice.id}", extra={"invoice_id": str(invoice.id)})
        return invoice

    # ==========================================================================
    # Payments
    # ==========================================================================

    @classmethod
    def record_payment(
        cls,
        institution_id: uuid.UUID,
        student_id: uuid.UUID,
        amount_cents: int,
        transaction_reference: str,
        payment_date: datetime.date,
        method: str = PaymentMethod.CASH,
        actor_id: uuid.UUID | None = None,
        allocations: Iterable[AllocationRequest] | None = None,
        allocation_policy: str | None = OLDEST_DUE_FIRST,
        notes: str = "",
    ) -> Payment:
        """
        Record a confirmed payment and allocate it.

        With explicit allocations, exactly those are applied. Otherwise the
        payment is auto-allocated with allocation_policy (pass None to leave
        it unallocated). Whatever is not allocated stays as credit.

        The whole operation is one transaction: if any allocation is
        rejected, the payment is not recorded either.

        Raises:
            FeesValidationError: If amount_cents is not positive
            PeriodLockedError: If payment_date falls in a locked period
            DuplicateTransactionReferenceError: If the reference was already used
            OverAllocationError: If an explicit allocation exceeds a bound
        """
        cls._require_positive(amount_cents, "amount_cents")
        requested = list(allocations or [])

        with cls.atomic():
            PeriodGuard.assert_open(institution_id, payment_date)

            if Payment.objects.filter(transaction_reference=transaction_reference).exists():
                raise DuplicateTransactionReferenceError(
                    f"Transaction reference '{transaction_reference}' has already been recorded",
                    details={"transaction_reference": transaction_reference},
                )

            try:
                with transaction.atomic():
                    payment = Payment.objects.create(
                        institution_id=institution_id,
                        student_id=student_id,
                        amount_cents=amount_cents,
                        transaction_reference=transaction_reference,
                        payment_date=payment_date,
                        method=method,
                        recorded_by=actor_id,
                        notes=notes,
                    )
            except IntegrityError:
                raise DuplicateTransactionReferenceError(
                    f"Transaction reference '{transaction_reference}' has already been recorded",
                    details={"transaction_reference": transaction_reference},
                ) from None

            payment.confirm()
            payment.save()

            if requested:
                invoices = {inv.id: inv for inv in cls._lock_invoices([r.invoice_id for r in requested])}
                for item in requested:
                    cls._allocate_locked(payment, invoices[_as_uuid(item.invoice_id)], item.amount_cents)
            elif allocation_policy is not None:
                cls._auto_allocate_locked(payment, allocation_policy)

            record_audit(
                "payment.recorded",
                "payment",
                payment.id,
                institution_id=institution_id,
                actor_id=actor_id,
                metadata={
                    "amount_cents": amount_cents,
                    "transaction_reference": transaction_reference,
                    "method": method,
                    "allocated_cents": cls._payment_allocated_cents(payment.id),
                },
            )

        logger.info(
            f"Recorded payment {payment.id}",
            extra={
                "payment_id": str(payment.id),
                "student_id": str(student_id),
                "amount_cents": amount_cents,
                "transaction_reference": transaction_reference,
            },
        )
        return payment

    @classmethod
    def reverse_payment(cls, payment_id: uuid.UUID, reason: str, actor_id: uuid.UUID | None = None) -> Payment:
        """
        Reverse a confirmed payment and void all of its allocations.

        Raises:
            FeesNotFoundError: If the payment does not exist
            InvalidTransitionError: If the payment is not confirmed
            PeriodLockedError: If the payment date falls in a locked period
        """
        with cls.atomic():
            payment = cls._lock_payment(payment_id)
            PeriodGuard.assert_open(payment.institution_id, payment.payment_date)

            try:
                payment.reverse(reason=reason, actor_id=actor_id)
            except TransitionNotAllowed:
                raise InvalidTransitionError(
                    f"Cannot reverse payment in '{payment.status}' state",
                    details={"payment_id": str(payment.id), "current_state": payment.status, "transition": "reverse"},
                ) from None

            active = list(
                Allocation.objects.select_for_update()
                .filter(payment_id=payment.id, is_void=False)
                .order_by("pk")
            )
            for allocation in active:
                allocation.void()
            payment.save()

            record_audit(
                "payment.reversed",
                "payment",
                payment.id,
                institution_id=payment.institution_id,
                actor_id=actor_id,
                metadata={
                    "from_status": PaymentStatus.CONFIRMED,
                    "to_status": PaymentStatus.REVERSED,
                    "reason": reason,
                    "voided_allocations": [str(a.id) for a in active],
                },
            )

        logger.info(
            f"Reversed payment {payment.id}",
            extra={"payment_id": str(payment.id), "voided_allocations": len(active)},
        )
        return payment

    # ==========================================================================
    # Allocations
    # ==========================================================================

    @classmethod
    def allocate(cls, payment_id: uuid.UUID, invoice_id: uuid.UUID, amount_cents: int) -> Allocation:
        """
        Allocate part of a confirmed payment to a posted invoice.

        Raises:
            FeesNotFoundError: If the payment or invoice does not exist
            FeesValidationError: If the amount is not positive, the payment is
                not confirmed, the invoice is not posted, or they belong to
                different students
            PeriodLockedError: If the payment date falls in a locked period
            OverAllocationError: If the amount exceeds the payment remainder
                or the invoice outstanding balance
        """
        with cls.atomic():
            payment = cls._lock_payment(payment_id)
            invoice = cls._lock_invoices([invoice_id])[0]
            return cls._allocate_locked(payment, invoice, amount_cents)

    @classmethod
    def auto_allocate(cls, payment_id: uuid.UUID, policy: str = OLDEST_DUE_FIRST) -> list[Allocation]:
        """
        Fill the student's outstanding posted invoices from the payment's
        unallocated remainder, in policy order. Any remainder stays as credit.
        """
        with cls.atomic():
            payment = cls._lock_payment(payment_id)
            return cls._auto_allocate_locked(payment, policy)

    @classmethod
    def _allocate_locked(cls, payment: Payment, invoice: Invoice, amount_cents: int) -> Allocation:
        cls._require_positive(amount_cents, "amount_cents")

        if payment.status != PaymentStatus.CONFIRMED:
            raise FeesValidationError(
                f"Only confirmed payments can be allocated (payment is '{payment.status}')",
                details={"payment_id": str(payment.id)},
            )
        if invoice.status != InvoiceStatus.POSTED:
            raise FeesValidationError(
                f"Only posted invoices accept allocations (invoice is '{invoice.status}')",
                details={"invoice_id": str(invoice.id)},
            )
        if (payment.institution_id, payment.student_id) != (invoice.institution_id, invoice.student_id):
            raise FeesValidationError(
                "Payment and invoice belong to different students",
                details={"payment_id": str(payment.id), "invoice_id": str(invoice.id)},
            )

        PeriodGuard.assert_open(payment.institution_id, payment.payment_date)

        payment_remaining = payment.amount_cents - cls._payment_allocated_cents(payment.id)
        if amount_cents > payment_remaining:
            raise OverAllocationError(
                f"Allocation of {amount_cents} exceeds payment remainder {payment_remaining}",
                requested=amount_cents,
                available=payment_remaining,
                details={"payment_id": str(payment.id)},
            )

        outstanding = invoice.total_cents - cls._invoice_allocated_cents(invoice.id)
        if amount_cents > outstanding:
            raise OverAllocationError(
                f"Allocation of {amount_cents} exceeds invoice outstanding balance {outstanding}",
                requested=amount_cents,
                available=outstanding,
                details={"invoice_id": str(invoice.id)},
            )

        allocation = Allocation.objects.create(payment=payment, invoice=invoice, amount_cents=amount_cents)
        logger.debug(
            f"Allocated {amount_cents} of payment {payment.id} to invoice {invoice.id}",
            extra={"allocation_id": str(allocation.id)},
        )
        return allocation

    @classmethod
    def _auto_allocate_locked(cls, payment: Payment, policy: str) -> list[Allocation]:
        try:
            newest_first = ALLOCATION_POLICIES[policy]
        except KeyError:
            raise FeesValidationError(
                f"Unknown allocation policy '{policy}'",
                details={"policy": policy, "allowed": sorted(ALLOCATION_POLICIES)},
            ) from None

        remaining = payment.amount_cents - cls._payment_allocated_cents(payment.id)
        if remaining <= 0:
            return []

        # One locked read; ordering is applied to exactly the rows we hold.
        candidates = list(
            Invoice.objects.select_for_update()
            .filter(
                institution_id=payment.institution_id,
                student_id=payment.student_id,
                status=InvoiceStatus.POSTED,
            )
            .order_by("pk")
        )
        candidates.sort(key=lambda inv: (inv.due_date, inv.created_at), reverse=newest_first)

        created = []
        for invoice in candidates:
            if remaining <= 0:
                break
            outstanding = invoice.total_cents - cls._invoice_allocated_cents(invoice.id)
            if outstanding <= 0:
                continue
            amount = min(outstanding, remaining)
            created.append(cls._allocate_locked(payment, invoice, amount))
            remaining -= amount
        return created

    # ==========================================================================
    # Reads
    # ==========================================================================

    @classmethod
    def invoice_outstanding_cents(cls, invoice_id: uuid.UUID) -> int:
        """Invoice total minus its active allocations."""
        total = Invoice.objects.filter(pk=invoice_id).values_list("total_cents", flat=True).first()
        if total is None:
            raise FeesNotFoundError(
                f"Invoice {invoice_id} not found",
                error_code="INVOICE_NOT_FOUND",
                details={"invoice_id": str(invoice_id)},
            )
        return total - cls._invoice_allocated_cents(invoice_id)

    @classmethod
    def payment_unallocated_cents(cls, payment_id: uuid.UUID) -> int:
        """Payment amount minus its active allocations."""
        amount = Payment.objects.filter(pk=payment_id).values_list("amount_cents", flat=True).first()
        if amount is None:
            raise FeesNotFoundError(
                f"Payment {payment_id} not found",
                error_code="PAYMENT_NOT_FOUND",
                details={"payment_id": str(payment_id)},
            )
        return amount - cls._payment_allocated_cents(payment_id)

    @staticmethod
    def student_balance(institution_id: uuid.UUID, student_id: uuid.UUID) -> BalanceSnapshot:
        """
        Read a student's balance from its three components.

        Runs in one transaction so the components are read from the same
        committed state.
        """
        scope = {"institution_id": institution_id, "student_id": student_id}
        with transaction.atomic():
            invoiced = Invoice.objects.filter(status=InvoiceStatus.POSTED, **scope).aggregate(
                total=Sum("total_cents")
            )["total"]
            paid = Payment.objects.filter(status=PaymentStatus.CONFIRMED, **scope).aggregate(
                total=Sum("amount_cents")
            )["total"]
            penalties = AppliedPenalty.objects.unwaived().filter(**scope).aggregate(
                total=Sum("amount_cents")
            )["total"]

        return BalanceSnapshot(
            institution_id=institution_id,
            student_id=student_id,
            invoiced_cents=invoiced or 0,
            paid_cents=paid or 0,
            penalty_cents=penalties or 0,
        )

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @staticmethod
    def _require_positive(value: int, field_name: str) -> None:
        if value is None or value <= 0:
            raise FeesValidationError(
                f"{field_name} must be greater than zero",
                details={field_name: ["Must be greater than zero"]},
            )

    @staticmethod
    def _invoice_allocated_cents(invoice_id: uuid.UUID) -> int:
        total = Allocation.objects.filter(invoice_id=invoice_id, is_void=False).aggregate(
            total=Sum("amount_cents")
        )["total"]
        return total or 0

    @staticmethod
    def _payment_allocated_cents(payment_id: uuid.UUID) -> int:
        total = Allocation.objects.filter(payment_id=payment_id, is_void=False).aggregate(
            total=Sum("amount_cents")
        )["total"]
        return total or 0

    @staticmethod
    def _lock_payment(payment_id: uuid.UUID) -> Payment:
        try:
            return Payment.objects.select_for_update().get(pk=payment_id)
        except Payment.DoesNotExist:
            raise FeesNotFoundError(
                f"Payment {payment_id} not found",
                error_code="PAYMENT_NOT_FOUND",
                details={"payment_id": str(payment_id)},
            ) from None

    @classmethod
    def _lock_invoice(cls, invoice_id: uuid.UUID, expected_version: int | None = None) -> Invoice:
        if expected_version is None:
            return cls._lock_invoices([invoice_id])[0]
        return check_version(Invoice, invoice_id, expected_version)

    @staticmethod
    def _lock_invoices(invoice_ids: Iterable[uuid.UUID]) -> list[Invoice]:
        """Row-lock invoices in primary key order; raise if any is missing."""
        wanted = {_as_uuid(pk) for pk in invoice_ids}
        if not wanted:
            return []
        invoices = list(Invoice.objects.select_for_update().filter(pk__in=wanted).order_by("pk"))
        missing = wanted - {inv.id for inv in invoices}
        if missing:
            missing_id = sorted(str(pk) for pk in missing)[0]
            raise FeesNotFoundError(
                f"Invoice {missing_id} not found",
                error_code="INVOICE_NOT_FOUND",
                details={"invoice_id": missing_id},
            )
        return invoices
