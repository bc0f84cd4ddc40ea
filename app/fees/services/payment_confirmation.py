"""
Payment confirmation service for mobile money payments.

This module reconciles a PaymentIntent between three parties:

1. The initiating client (initiate): creates the intent and asks the
   gateway to prompt the payer's device
2. The provider's asynchronous callback (handle_callback): the only path
   to a terminal state; delivery is at-least-once
3. Polling clients (get_status): pure reads that never write

The terminal write is guarded twice: handle_callback row-locks the intent
and returns a no-op success for an intent that is already terminal, and
the intent's django-fsm transitions never list a terminal state as a
source, so a terminal intent cannot be written again even by other code.

On a success callback, posting the ledger Payment, auto-allocating it and
marking the intent completed happen in one savepoint. If the ledger refuses
(e.g., the payment date falls in a locked period) the savepoint rolls back
and the intent is marked failed with the cause; confirmed funds are never
left completed without a ledger posting.

Usage:
    from fees.services import PaymentConfirmationService

    intent = PaymentConfirmationService.initiate(
        institution_id=institution_id,
        student_id=student_id,
        amount_cents=1500_00,
        phone="254712345678",
    )

    # Later, from the callback view
    PaymentConfirmationService.handle_callback(
        provider_reference=intent.provider_reference,
        outcome=CallbackOutcome.SUCCESS,
        receipt_code="QX123ABC",
    )

    PaymentConfirmationService.get_status(intent.id).to_dict()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from django_fsm import can_proceed

from core.exceptions import BaseApplicationError, ExternalServiceError
from core.services import BaseService

from fees.adapters import PromptRequest, get_gateway
from fees.events import EventType, publish, record_audit
from fees.exceptions import (
    DuplicateTransactionReferenceError,
    FeesNotFoundError,
    FeesValidationError,
)
from fees.models import Payment, PaymentIntent
from fees.services.ledger_service import LedgerService
from fees.state_machines import CallbackOutcome, PaymentIntentState, PaymentMethod

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class IntentStatus:
    """
    Client-visible status of a payment intent.

    Attributes:
        intent_id: PaymentIntent id
        status: One of PaymentIntentState
        receipt_code: Provider receipt, set once completed
        result_description: Provider or ledger description, set once terminal
    """

    intent_id: uuid.UUID
    status: str
    receipt_code: str | None = None
    result_description: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in PaymentIntentState.terminal_states()

    def to_dict(self) -> dict[str, Any]:
        """Response body for the status endpoint; empty optionals are omitted."""
        data: dict[str, Any] = {"status": self.status}
        if self.receipt_code:
            data["receiptCode"] = self.receipt_code
        if self.result_description:
            data["resultDescription"] = self.result_description
        return data


@dataclass(frozen=True)
class CallbackResult:
    """
    Outcome of processing one provider callback.

    Attributes:
        intent: The intent after processing
        processed: False when the callback was a replay for a terminal intent
        payment: Ledger payment linked to a completed intent
    """

    intent: PaymentIntent
    processed: bool
    payment: Payment | None = None


# =============================================================================
# Payment Confirmation Service
# =============================================================================


class PaymentConfirmationService(BaseService):
    """State machine driver for mobile money payment intents."""

    @classmethod
    def initiate(
        cls,
        institution_id: uuid.UUID,
        student_id: uuid.UUID,
        amount_cents: int,
        phone: str,
        actor_id: uuid.UUID | None = None,
        account_reference: str = "",
    ) -> PaymentIntent:
        """
        Create a pending intent and prompt the payer through the gateway.

        Raises:
            FeesValidationError: If the amount is not positive or phone is empty
            ExternalServiceError: If the gateway refuses the prompt; the
                intent is left failed with the gateway's message
            Exception: Any other gateway error is re-raised after the intent
                is marked failed
        """
        if amount_cents is None or amount_cents <= 0:
            raise FeesValidationError(
                "amount_cents must be greater than zero",
                details={"amount_cents": ["Must be greater than zero"]},
            )
        if not phone:
            raise FeesValidationError("phone is required", details={"phone": ["This field is required"]})

        with cls.atomic():
            intent = PaymentIntent.objects.create(
                institution_id=institution_id,
                student_id=student_id,
                amount_cents=amount_cents,
                phone=phone,
                initiated_by=actor_id,
            )
            record_audit(
                "payment_intent.created",
                "payment_intent",
                intent.id,
                institution_id=institution_id,
                actor_id=actor_id,
                metadata={"to_status": PaymentIntentState.PENDING, "amount_cents": amount_cents},
            )

        try:
            prompt = get_gateway().request_prompt(
                PromptRequest(
                    intent_id=intent.id,
                    phone=phone,
                    amount_cents=amount_cents,
                    account_reference=account_reference,
                )
            )
        except Exception as e:
            # Without a provider reference no callback can ever resolve the intent
            message = e.message if isinstance(e, BaseApplicationError) else str(e)
            with cls.atomic():
                intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
                from_status = intent.status
                intent.fail(description=f"Payment prompt could not be sent: {message}")
                intent.save()
                cls._record_terminal(intent, from_status)
            if isinstance(e, ExternalServiceError):
                logger.warning(
                    f"Gateway refused prompt for intent {intent.id}: {e}",
                    extra={"intent_id": str(intent.id), "error_code": e.error_code},
                )
            else:
                logger.exception(
                    f"Gateway error while prompting for intent {intent.id}",
                    extra={"intent_id": str(intent.id)},
                )
            raise

        with cls.atomic():
            intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
            intent.provider_reference = prompt.provider_reference
            if prompt.customer_message:
                intent.set_meta("customer_message", prompt.customer_message, save=False)
            intent.save(update_fields=["provider_reference", "metadata", "updated_at"])

        logger.info(
            f"Initiated payment intent {intent.id}",
            extra={
                "intent_id": str(intent.id),
                "provider_reference": intent.provider_reference,
                "amount_cents": amount_cents,
            },
        )
        return intent

    @classmethod
    def mark_processing(cls, provider_reference: str) -> PaymentIntent:
        """
        Record the provider's optional processing acknowledgement.

        A no-op for intents already processing or terminal, since the signal
        may arrive late or more than once.
        """
        with cls.atomic():
            intent = cls._lock_by_reference(provider_reference)
            if not can_proceed(intent.mark_processing):
                logger.debug(
                    f"Ignoring processing signal for intent in '{intent.status}' state",
                    extra={"intent_id": str(intent.id), "provider_reference": provider_reference},
                )
                return intent

            intent.mark_processing()
            intent.save()
            record_audit(
                "payment_intent.processing",
                "payment_intent",
                intent.id,
                institution_id=intent.institution_id,
                metadata={"from_status": PaymentIntentState.PENDING, "to_status": PaymentIntentState.PROCESSING},
            )
        return intent

    @classmethod
    def handle_callback(
        cls,
        provider_reference: str,
        outcome: str,
        receipt_code: str = "",
        description: str = "",
    ) -> CallbackResult:
        """
        Apply a provider callback to its intent.

        Idempotent on provider_reference: a callback for a terminal intent
        returns processed=False without writing anything.

        Raises:
            FeesNotFoundError: If no intent has this provider_reference
            FeesValidationError: If outcome is not success or failure
        """
        if outcome not in CallbackOutcome.values:
            raise FeesValidationError(
                f"Unknown callback outcome '{outcome}'",
                details={"outcome": outcome, "allowed": list(CallbackOutcome.values)},
            )

        with cls.atomic():
            intent = cls._lock_by_reference(provider_reference)

            if intent.is_terminal:
                logger.info(
                    f"Ignoring replayed callback for terminal intent {intent.id}",
                    extra={"intent_id": str(intent.id), "provider_reference": provider_reference, "status": intent.status},
                )
                return CallbackResult(intent=intent, processed=False, payment=intent.payment)

            from_status = intent.status
            payment = None

            if outcome == CallbackOutcome.SUCCESS:
                try:
                    with transaction.atomic():
                        payment = cls._post_payment(intent, receipt_code)
                        intent.complete(receipt_code=receipt_code, payment=payment, description=description)
                        intent.save()
                except BaseApplicationError as e:
                    payment = None
                    intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
                    intent.fail(description=f"Payment confirmed by provider but could not be posted: {e.message}")
                    intent.save()
                    logger.error(
                        f"Ledger rejected confirmed payment for intent {intent.id}: {e}",
                        extra={"intent_id": str(intent.id), "error_code": e.error_code},
                    )
            else:
                intent.fail(description=description or "Payment failed")
                intent.save()

            cls._record_terminal(intent, from_status)

        logger.info(
            f"Payment intent {intent.id} is {intent.status}",
            extra={"intent_id": str(intent.id), "provider_reference": provider_reference, "status": intent.status},
        )
        return CallbackResult(intent=intent, processed=True, payment=payment)

    @staticmethod
    def get_status(intent_id: uuid.UUID) -> IntentStatus:
        """
        Read an intent's status. Never writes and takes no locks.

        Raises:
            FeesNotFoundError: If the intent does not exist
        """
        row = (
            PaymentIntent.objects.filter(pk=intent_id)
            .values("id", "status", "receipt_code", "result_description")
            .first()
        )
        if row is None:
            raise FeesNotFoundError(
                f"Payment intent {intent_id} not found",
                error_code="PAYMENT_INTENT_NOT_FOUND",
                details={"intent_id": str(intent_id)},
            )
        return IntentStatus(
            intent_id=row["id"],
            status=row["status"],
            receipt_code=row["receipt_code"] or None,
            result_description=row["result_description"] or None,
        )

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @staticmethod
    def _lock_by_reference(provider_reference: str) -> PaymentIntent:
        try:
            return PaymentIntent.objects.select_for_update().get(provider_reference=provider_reference)
        except PaymentIntent.DoesNotExist:
            raise FeesNotFoundError(
                f"No payment intent for provider reference '{provider_reference}'",
                error_code="PAYMENT_INTENT_NOT_FOUND",
                details={"provider_reference": provider_reference},
            ) from None

    @staticmethod
    def _post_payment(intent: PaymentIntent, receipt_code: str) -> Payment:
        """Record the confirmed payment, or link one already recorded under the same reference."""
        try:
            return LedgerService.record_payment(
                institution_id=intent.institution_id,
                student_id=intent.student_id,
                amount_cents=intent.amount_cents,
                transaction_reference=intent.provider_reference,
                payment_date=timezone.localdate(),
                method=PaymentMethod.MPESA,
                notes=f"Mobile money receipt {receipt_code}" if receipt_code else "",
            )
        except DuplicateTransactionReferenceError:
            existing = Payment.objects.get(transaction_reference=intent.provider_reference)
            if (existing.student_id, existing.amount_cents) != (intent.student_id, intent.amount_cents):
                raise
            logger.info(
                f"Linking intent {intent.id} to already recorded payment {existing.id}",
                extra={"intent_id": str(intent.id), "payment_id": str(existing.id)},
            )
            return existing

    @staticmethod
    def _record_terminal(intent: PaymentIntent, from_status: str) -> None:
        record_audit(
            f"payment_intent.{intent.status}",
            "payment_intent",
            intent.id,
            institution_id=intent.institution_id,
            metadata={
                "from_status": from_status,
                "to_status": intent.status,
                "provider_reference": intent.provider_reference,
                "receipt_code": intent.receipt_code,
                "result_description": intent.result_description,
            },
        )
        event_type = (
            EventType.PAYMENT_COMPLETED
            if intent.status == PaymentIntentState.COMPLETED
            else EventType.PAYMENT_FAILED
        )
        publish(
            event_type,
            intent.institution_id,
            {
                "intent_id": intent.id,
                "student_id": intent.student_id,
                "amount_cents": intent.amount_cents,
                "receipt_code": intent.receipt_code,
                "payment_id": intent.payment_id,
                "result_description": intent.result_description,
            },
        )
