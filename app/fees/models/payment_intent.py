"""
PaymentIntent model for mobile money payment confirmation.

A PaymentIntent anchors one payer-initiated mobile money payment between
the synchronous initiation request, the client polling for status, and the
provider's asynchronous callback. The provider_reference is the idempotency
key shared with the resulting Payment's transaction_reference.

Usage:
    from fees.models import PaymentIntent

    intent = PaymentIntent.objects.select_for_update().get(provider_reference=ref)
    if not intent.is_terminal:
        intent.complete(receipt_code="QX123ABC")
        intent.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import VersionedModel
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

from fees.state_machines import PaymentIntentState

_NON_TERMINAL = [PaymentIntentState.PENDING, PaymentIntentState.PROCESSING]


class PaymentIntent(UUIDPrimaryKeyMixin, MetadataMixin, VersionedModel):
    """
    Consumer-side state machine for an asynchronous mobile money payment.

    State Flow:
        PENDING -> PROCESSING -> COMPLETED
        PENDING -> PROCESSING -> FAILED
        PENDING -> COMPLETED / FAILED

    COMPLETED and FAILED are terminal: no transition lists them as a
    source, and the status field is protected against direct assignment,
    so once a terminal state is saved no further state write is accepted.

    Fields:
        amount_cents: Requested amount in minor units
        phone: Payer's mobile number the prompt is sent to
        provider_reference: Provider's id for this request (unique)
        status: Current FSM state (protected)
        result_description: Provider's description, or the ledger error
            that prevented posting
        receipt_code: Provider receipt for a completed payment
        payment: Ledger Payment created on completion
        terminal_at: When a terminal state was reached
    """

    institution_id = models.UUIDField(db_index=True)
    student_id = models.UUIDField(db_index=True)

    amount_cents = models.PositiveBigIntegerField()

    phone = models.CharField(max_length=20)

    provider_reference = models.CharField(
        max_length=100,
        unique=True,
        null=True,
        blank=True,
        help_text="Provider request id, e.g. an STK push CheckoutRequestID",
    )

    status = FSMField(
        default=PaymentIntentState.PENDING,
        choices=PaymentIntentState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the intent (managed by FSM)",
    )

    result_description = models.TextField(blank=True, default="")
    receipt_code = models.CharField(max_length=100, blank=True, default="")

    payment = models.OneToOneField(
        "fees.Payment",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="intent",
    )

    initiated_by = models.UUIDField(null=True, blank=True)

    terminal_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Intent"
        verbose_name_plural = "Payment Intents"
        indexes = [
            models.Index(fields=["institution_id", "student_id"], name="fees_intent_inst_student_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="payment_intent_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentIntent({self.provider_reference or self.id}, {self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in PaymentIntentState.terminal_states()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentIntentState.PENDING,
        target=PaymentIntentState.PROCESSING,
    )
    def mark_processing(self):
        """
        Provider acknowledged the prompt is being acted on.

        Transition: PENDING -> PROCESSING
        """
        pass

    @transition(
        field=status,
        source=_NON_TERMINAL,
        target=PaymentIntentState.COMPLETED,
    )
    def complete(self, receipt_code: str, payment=None, description: str = ""):
        """
        Provider confirmed funds received and the ledger posting succeeded.

        Transition: PENDING/PROCESSING -> COMPLETED
        """
        self.receipt_code = receipt_code or ""
        self.payment = payment
        self.result_description = description or ""
        self.terminal_at = timezone.now()

    @transition(
        field=status,
        source=_NON_TERMINAL,
        target=PaymentIntentState.FAILED,
    )
    def fail(self, description: str):
        """
        Provider reported failure, or the confirmed funds could not be posted.

        Transition: PENDING/PROCESSING -> FAILED
        """
        self.result_description = description or ""
        self.terminal_at = timezone.now()
