"""
Tests for PaymentConfirmationService.

Covers intent initiation through the gateway, callback processing with
replays and ledger rejections, and the read-only status query.
"""

import datetime
import uuid

import pytest
from freezegun import freeze_time

from core.exceptions import ExternalServiceError
from fees.events import EventType
from fees.exceptions import FeesNotFoundError, FeesValidationError
from fees.models import AuditRecord, Payment, PaymentIntent
from fees.services import LedgerService, PaymentConfirmationService
from fees.state_machines import CallbackOutcome, InvoiceStatus, PaymentIntentState, PaymentMethod
from fees.tests.factories import FinancialPeriodFactory, InvoiceFactory, PaymentFactory, PaymentIntentFactory

pytestmark = pytest.mark.django_db


class RefusingGateway:
    def request_prompt(self, request):
        raise ExternalServiceError("Provider rejected the request: invalid phone")


class UnreachableGateway:
    def request_prompt(self, request):
        raise ConnectionError("connection reset by peer")


def _intent_from_db(intent):
    return PaymentIntent.objects.get(pk=intent.pk)


class TestInitiate:
    """Tests for PaymentConfirmationService.initiate."""

    def test_creates_pending_intent_with_reference(self, institution_id, student_id, actor_id):
        intent = PaymentConfirmationService.initiate(
            institution_id=institution_id,
            student_id=student_id,
            amount_cents=1500_00,
            phone="254712345678",
            actor_id=actor_id,
        )

        stored = _intent_from_db(intent)
        assert stored.status == PaymentIntentState.PENDING
        assert stored.provider_reference.startswith("ws_CO_")
        assert stored.initiated_by == actor_id
        assert stored.metadata["customer_message"]
        assert AuditRecord.objects.filter(action="payment_intent.created", entity_id=intent.id).exists()

    def test_gateway_refusal_fails_intent_and_raises(
        self, settings, institution_id, student_id, captured_events, django_capture_on_commit_callbacks
    ):
        settings.MOBILE_MONEY_GATEWAY = "fees.tests.test_payment_confirmation.RefusingGateway"

        with django_capture_on_commit_callbacks(execute=True):
            with pytest.raises(ExternalServiceError):
                PaymentConfirmationService.initiate(institution_id, student_id, 1500_00, "254700000000")

        intent = PaymentIntent.objects.get()
        assert intent.status == PaymentIntentState.FAILED
        assert "invalid phone" in intent.result_description
        assert intent.provider_reference is None
        assert [e.type for e in captured_events] == [EventType.PAYMENT_FAILED]

    def test_unexpected_gateway_error_fails_intent_and_reraises(self, settings, institution_id, student_id, mocker):
        settings.MOBILE_MONEY_GATEWAY = "fees.tests.test_payment_confirmation.UnreachableGateway"
        mock_logger = mocker.patch("fees.services.payment_confirmation.logger")

        with pytest.raises(ConnectionError):
            PaymentConfirmationService.initiate(institution_id, student_id, 1500_00, "254700000000")

        intent = PaymentIntent.objects.get()
        assert intent.status == PaymentIntentState.FAILED
        assert "connection reset by peer" in intent.result_description
        assert AuditRecord.objects.filter(action="payment_intent.failed", entity_id=intent.id).exists()
        mock_logger.exception.assert_called_once()

    @pytest.mark.parametrize("amount,phone", [(0, "254712345678"), (-5, "254712345678"), (100, "")])
    def test_rejects_invalid_input(self, institution_id, student_id, amount, phone):
        with pytest.raises(FeesValidationError):
            PaymentConfirmationService.initiate(institution_id, student_id, amount, phone)

        assert not PaymentIntent.objects.exists()


class TestHandleCallback:
    """Tests for PaymentConfirmationService.handle_callback."""

    @freeze_time("2024-02-03 09:30:00")
    def test_success_posts_payment_and_completes(
        self, pending_intent, posted_invoice, institution_id, student_id,
        captured_events, django_capture_on_commit_callbacks,
    ):
        with django_capture_on_commit_callbacks(execute=True):
            result = PaymentConfirmationService.handle_callback(
                provider_reference=pending_intent.provider_reference,
                outcome=CallbackOutcome.SUCCESS,
                receipt_code="QX123ABC",
                description="The service request is processed successfully.",
            )

        assert result.processed is True
        intent = _intent_from_db(pending_intent)
        assert intent.status == PaymentIntentState.COMPLETED
        assert intent.receipt_code == "QX123ABC"
        assert intent.terminal_at is not None

        payment = Payment.objects.get(pk=result.payment.pk)
        assert intent.payment_id == payment.id
        assert payment.transaction_reference == pending_intent.provider_reference
        assert payment.method == PaymentMethod.MPESA
        assert payment.payment_date == datetime.date(2024, 2, 3)
        assert payment.amount_cents == 1500_00

        # Auto-allocated against the posted invoice, the rest left as credit
        assert LedgerService.invoice_outstanding_cents(posted_invoice.id) == 0
        assert LedgerService.student_balance(institution_id, student_id).balance_cents == -500_00

        assert [e.type for e in captured_events] == [EventType.PAYMENT_COMPLETED]
        assert captured_events[0].payload["receipt_code"] == "QX123ABC"
        assert captured_events[0].payload["payment_id"] == str(payment.id)

    def test_success_from_processing(self, institution_id):
        intent = PaymentIntentFactory(institution_id=institution_id, status=PaymentIntentState.PROCESSING)

        result = PaymentConfirmationService.handle_callback(intent.provider_reference, "success", "QX1")

        assert result.intent.status == PaymentIntentState.COMPLETED

    def test_failure_marks_failed_without_payment(
        self, pending_intent, captured_events, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            result = PaymentConfirmationService.handle_callback(
                pending_intent.provider_reference,
                outcome=CallbackOutcome.FAILURE,
                description="Request cancelled by user",
            )

        intent = _intent_from_db(pending_intent)
        assert result.processed is True
        assert result.payment is None
        assert intent.status == PaymentIntentState.FAILED
        assert intent.result_description == "Request cancelled by user"
        assert not Payment.objects.exists()
        assert [e.type for e in captured_events] == [EventType.PAYMENT_FAILED]

    def test_failure_without_description_gets_default(self, pending_intent):
        PaymentConfirmationService.handle_callback(pending_intent.provider_reference, CallbackOutcome.FAILURE)

        assert _intent_from_db(pending_intent).result_description == "Payment failed"

    def test_replayed_success_is_noop(self, pending_intent):
        """Should post exactly one payment however often the provider retries."""
        first = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")
        replay = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        assert first.processed is True
        assert replay.processed is False
        assert replay.payment.id == first.payment.id
        assert Payment.objects.count() == 1
        assert AuditRecord.objects.filter(action="payment_intent.completed").count() == 1

    def test_failure_after_completion_does_not_downgrade(self, pending_intent):
        PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        replay = PaymentConfirmationService.handle_callback(
            pending_intent.provider_reference, "failure", description="late failure"
        )

        assert replay.processed is False
        intent = _intent_from_db(pending_intent)
        assert intent.status == PaymentIntentState.COMPLETED
        assert intent.receipt_code == "QX1"

    def test_success_after_failure_is_ignored(self, pending_intent):
        PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "failure")

        replay = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        assert replay.processed is False
        assert _intent_from_db(pending_intent).status == PaymentIntentState.FAILED
        assert not Payment.objects.exists()

    @freeze_time("2024-01-20 12:00:00")
    def test_locked_period_fails_intent_with_cause(self, pending_intent, institution_id):
        """Should never leave a confirmed intent completed without a ledger posting."""
        FinancialPeriodFactory(institution_id=institution_id, is_locked=True)

        result = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        intent = _intent_from_db(pending_intent)
        assert result.processed is True
        assert result.payment is None
        assert intent.status == PaymentIntentState.FAILED
        assert "could not be posted" in intent.result_description
        assert "locked" in intent.result_description
        assert intent.payment_id is None
        assert not Payment.objects.exists()

    def test_links_existing_payment_with_same_reference(self, pending_intent):
        existing = PaymentFactory(
            institution_id=pending_intent.institution_id,
            student_id=pending_intent.student_id,
            amount_cents=pending_intent.amount_cents,
            transaction_reference=pending_intent.provider_reference,
        )

        result = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        assert result.payment.id == existing.id
        assert _intent_from_db(pending_intent).payment_id == existing.id
        assert Payment.objects.count() == 1

    def test_conflicting_payment_with_same_reference_fails_intent(self, pending_intent):
        PaymentFactory(transaction_reference=pending_intent.provider_reference, amount_cents=1_00)

        result = PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "success", "QX1")

        assert result.intent.status == PaymentIntentState.FAILED
        assert "already been recorded" in result.intent.result_description

    def test_unknown_reference(self):
        with pytest.raises(FeesNotFoundError) as exc_info:
            PaymentConfirmationService.handle_callback("ws_CO_UNKNOWN", "success", "QX1")

        assert exc_info.value.error_code == "PAYMENT_INTENT_NOT_FOUND"
        assert exc_info.value.http_status == 404

    def test_unknown_outcome(self, pending_intent):
        with pytest.raises(FeesValidationError):
            PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "pending")

        assert _intent_from_db(pending_intent).status == PaymentIntentState.PENDING


class TestMarkProcessing:
    """Tests for PaymentConfirmationService.mark_processing."""

    def test_pending_moves_to_processing(self, pending_intent):
        intent = PaymentConfirmationService.mark_processing(pending_intent.provider_reference)

        assert intent.status == PaymentIntentState.PROCESSING
        assert AuditRecord.objects.filter(action="payment_intent.processing").count() == 1

    @pytest.mark.parametrize(
        "status",
        [PaymentIntentState.PROCESSING, PaymentIntentState.COMPLETED, PaymentIntentState.FAILED],
    )
    def test_other_states_are_untouched(self, institution_id, status):
        intent = PaymentIntentFactory(institution_id=institution_id, status=status)

        PaymentConfirmationService.mark_processing(intent.provider_reference)

        assert _intent_from_db(intent).status == status
        assert not AuditRecord.objects.exists()


class TestGetStatus:
    """Tests for PaymentConfirmationService.get_status."""

    def test_pending_has_no_optionals(self, pending_intent):
        status = PaymentConfirmationService.get_status(pending_intent.id)

        assert status.status == PaymentIntentState.PENDING
        assert status.is_terminal is False
        assert status.to_dict() == {"status": "pending"}

    def test_completed_carries_receipt(self, pending_intent):
        PaymentConfirmationService.handle_callback(
            pending_intent.provider_reference, "success", "QX123ABC", description="Processed"
        )

        status = PaymentConfirmationService.get_status(pending_intent.id)

        assert status.is_terminal is True
        assert status.to_dict() == {
            "status": "completed",
            "receiptCode": "QX123ABC",
            "resultDescription": "Processed",
        }

    def test_failed_carries_description(self, pending_intent):
        PaymentConfirmationService.handle_callback(pending_intent.provider_reference, "failure", description="Timeout")

        assert PaymentConfirmationService.get_status(pending_intent.id).to_dict() == {
            "status": "failed",
            "resultDescription": "Timeout",
        }

    def test_read_does_not_write(self, pending_intent):
        before = _intent_from_db(pending_intent)

        PaymentConfirmationService.get_status(pending_intent.id)

        after = _intent_from_db(pending_intent)
        assert after.version == before.version
        assert after.updated_at == before.updated_at

    def test_unknown_intent(self):
        with pytest.raises(FeesNotFoundError):
            PaymentConfirmationService.get_status(uuid.uuid4())


def test_completed_intent_leaves_invoice_ledger_consistent(institution_id, student_id):
    """Balance after a mobile money payment equals invoiced minus paid."""
    InvoiceFactory(institution_id=institution_id, student_id=student_id, status=InvoiceStatus.POSTED, total_cents=900_00)
    intent = PaymentIntentFactory(institution_id=institution_id, student_id=student_id, amount_cents=400_00)

    PaymentConfirmationService.handle_callback(intent.provider_reference, "success", "QX9")

    snapshot = LedgerService.student_balance(institution_id, student_id)
    assert snapshot.paid_cents == 400_00
    assert snapshot.balance_cents == 500_00
