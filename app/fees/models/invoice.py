"""
Invoice model for student fee charges.

Only POSTED invoices count toward a student's balance. Once posted, the
only permitted change is the transition to CANCELLED.

Usage:
    from fees.models import Invoice

    invoice = Invoice.objects.create(
        institution_id=institution_id,
        student_id=student_id,
        total_cents=1000_00,
        due_date=date(2024, 2, 1),
    )
    invoice.post()
    invoice.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import VersionedModel
from core.model_mixins import UUIDPrimaryKeyMixin

from fees.state_machines import InvoiceStatus


class Invoice(UUIDPrimaryKeyMixin, VersionedModel):
    """
    A charge against a student, payable by a due date.

    State Flow:
        DRAFT -> POSTED -> CANCELLED
        DRAFT -> CANCELLED

    Fields:
        institution_id/student_id: Opaque ids from the identity service
        invoice_number: Optional human-facing number
        total_cents: Amount charged in minor units (always > 0)
        status: Current FSM state (protected; change only via transitions)
        due_date: Effective date for period locks and penalty eligibility
        posted_at/cancelled_at: Transition timestamps
    """

    institution_id = models.UUIDField(db_index=True)
    student_id = models.UUIDField(db_index=True)

    invoice_number = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Human-facing invoice number",
    )

    description = models.CharField(max_length=255, blank=True, default="")

    total_cents = models.PositiveBigIntegerField(
        help_text="Invoice total in smallest currency unit",
    )

    status = FSMField(
        default=InvoiceStatus.DRAFT,
        choices=InvoiceStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the invoice (managed by FSM)",
    )

    due_date = models.DateField(db_index=True)

    created_by = models.UUIDField(null=True, blank=True)

    posted_at = models.DateTimeField(null=True, blank=True)
    posted_by = models.UUIDField(null=True, blank=True)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.UUIDField(null=True, blank=True)

    class Meta:
        ordering = ["due_date", "created_at"]
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        indexes = [
            models.Index(fields=["institution_id", "student_id", "status"], name="fees_invoice_inst_student_idx"),
            models.Index(fields=["status", "due_date"], name="fees_invoice_status_due_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_cents__gt=0),
                name="invoice_total_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Invoice({self.invoice_number or self.id}, {self.status}, {self.total_cents})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=InvoiceStatus.DRAFT,
        target=InvoiceStatus.POSTED,
    )
    def post(self, actor_id=None):
        """
        Post the invoice so it counts toward the balance.

        Transition: DRAFT -> POSTED
        """
        self.posted_at = timezone.now()
        self.posted_by = actor_id

    @transition(
        field=status,
        source=[InvoiceStatus.DRAFT, InvoiceStatus.POSTED],
        target=InvoiceStatus.CANCELLED,
    )
    def cancel(self, actor_id=None):
        """
        Cancel the invoice.

        Transition: DRAFT/POSTED -> CANCELLED

        The ledger service refuses this while confirmed payments are still
        allocated against the invoice.
        """
        self.cancelled_at = timezone.now()
        self.cancelled_by = actor_id
