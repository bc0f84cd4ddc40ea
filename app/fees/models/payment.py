"""
Payment and Allocation models.

A Payment records money received for a student. Its transaction_reference
is the idempotency key shared with the mobile money provider. Allocations
assign part or all of a payment to specific invoices; they are voided,
never deleted, when the payment is reversed.

Usage:
    from fees.models import Allocation, Payment

    payment.confirm()
    payment.save()

    Allocation.objects.create(payment=payment, invoice=invoice, amount_cents=500_00)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel, VersionedModel
from core.model_mixins import UUIDPrimaryKeyMixin

from fees.state_machines import PaymentMethod, PaymentStatus


class Payment(UUIDPrimaryKeyMixin, VersionedModel):
    """
    Money received from or on behalf of a student.

    State Flow:
        PENDING -> CONFIRMED -> REVERSED

    Fields:
        amount_cents: Amount received in minor units (always > 0)
        method: Channel the money came through
        status: Current FSM state (protected)
        transaction_reference: Provider-supplied, unique across all payments
        payment_date: Effective date for period locks
        reversed_*: Stamped by the reversal
    """

    institution_id = models.UUIDField(db_index=True)
    student_id = models.UUIDField(db_index=True)

    amount_cents = models.PositiveBigIntegerField(
        help_text="Payment amount in smallest currency unit",
    )

    method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.CASH,
    )

    status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payment (managed by FSM)",
    )

    transaction_reference = models.CharField(
        max_length=100,
        unique=True,
        help_text="External transaction reference (idempotency key)",
    )

    payment_date = models.DateField(db_index=True)

    recorded_by = models.UUIDField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    confirmed_at = models.DateTimeField(null=True, blank=True)

    reversed_at = models.DateTimeField(null=True, blank=True)
    reversed_by = models.UUIDField(null=True, blank=True)
    reversal_reason = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-payment_date", "-created_at"]
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        indexes = [
            models.Index(fields=["institution_id", "student_id", "status"], name="fees_payment_inst_student_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="payment_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Payment({self.transaction_reference}, {self.status}, {self.amount_cents})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentStatus.PENDING,
        target=PaymentStatus.CONFIRMED,
    )
    def confirm(self):
        """
        Confirm the payment so it counts toward the balance.

        Transition: PENDING -> CONFIRMED
        """
        self.confirmed_at = timezone.now()

    @transition(
        field=status,
        source=PaymentStatus.CONFIRMED,
        target=PaymentStatus.REVERSED,
    )
    def reverse(self, reason: str, actor_id=None):
        """
        Reverse a confirmed payment.

        Transition: CONFIRMED -> REVERSED

        Allocations are voided by the ledger service in the same transaction.
        """
        self.reversed_at = timezone.now()
        self.reversed_by = actor_id
        self.reversal_reason = reason


class Allocation(UUIDPrimaryKeyMixin, BaseModel):
    """
    Assignment of part of a payment to one invoice.

    Active (non-void) allocations never exceed the invoice total nor the
    payment amount. Voided rows stay for the audit trail.
    """

    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name="allocations",
    )

    invoice = models.ForeignKey(
        "fees.Invoice",
        on_delete=models.PROTECT,
        related_name="allocations",
    )

    amount_cents = models.PositiveBigIntegerField()

    is_void = models.BooleanField(default=False, db_index=True)
    voided_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Allocation"
        verbose_name_plural = "Allocations"
        indexes = [
            models.Index(fields=["invoice", "is_void"], name="fees_alloc_invoice_void_idx"),
            models.Index(fields=["payment", "is_void"], name="fees_alloc_payment_void_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="allocation_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        suffix = ", void" if self.is_void else ""
        return f"Allocation({self.payment_id} -> {self.invoice_id}, {self.amount_cents}{suffix})"

    def void(self) -> None:
        self.is_void = True
        self.voided_at = timezone.now()
        self.save(update_fields=["is_void", "voided_at", "updated_at"])
