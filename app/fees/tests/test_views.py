"""
Tests for the payment intent API views.
"""

import uuid

import pytest
from django.urls import reverse
from rest_framework.test import APIClient

from core.exceptions import ExternalServiceError
from fees.models import PaymentIntent
from fees.services import PaymentConfirmationService
from fees.state_machines import PaymentIntentState

pytestmark = pytest.mark.django_db


class RefusingGateway:
    def request_prompt(self, request):
        raise ExternalServiceError("Provider unreachable")


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def staff_client(api_client, django_user_model):
    user = django_user_model.objects.create_user(username="bursar", password="testpass123")
    api_client.force_authenticate(user=user)
    return api_client


@pytest.fixture
def create_payload(institution_id, student_id):
    return {
        "institution_id": str(institution_id),
        "student_id": str(student_id),
        "amount_cents": 1500_00,
        "phone": "254712345678",
        "account_reference": "INV-0042",
    }


class TestPaymentIntentCreateView:
    """Tests for POST /api/v1/fees/payment-intents/."""

    def test_creates_pending_intent(self, staff_client, create_payload):
        response = staff_client.post(reverse("fees:payment_intent_create"), create_payload, format="json")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == PaymentIntentState.PENDING
        assert body["amount_cents"] == 1500_00
        assert body["provider_reference"].startswith("ws_CO_")
        assert PaymentIntent.objects.filter(pk=body["id"]).exists()

    def test_requires_authentication(self, api_client, create_payload):
        response = api_client.post(reverse("fees:payment_intent_create"), create_payload, format="json")

        assert response.status_code in (401, 403)
        assert not PaymentIntent.objects.exists()

    @pytest.mark.parametrize(
        "field,value",
        [("amount_cents", 0), ("phone", "not-a-phone"), ("student_id", "nope")],
    )
    def test_rejects_invalid_body(self, staff_client, create_payload, field, value):
        create_payload[field] = value

        response = staff_client.post(reverse("fees:payment_intent_create"), create_payload, format="json")

        assert response.status_code == 400
        assert field in response.json()

    def test_gateway_refusal_returns_502(self, staff_client, create_payload, settings):
        settings.MOBILE_MONEY_GATEWAY = "fees.tests.test_views.RefusingGateway"

        response = staff_client.post(reverse("fees:payment_intent_create"), create_payload, format="json")

        assert response.status_code == 502
        assert response.json()["error_code"] == "EXTERNAL_SERVICE_ERROR"
        assert PaymentIntent.objects.get().status == PaymentIntentState.FAILED


class TestPaymentIntentStatusView:
    """Tests for GET /api/v1/fees/payment-intents/{id}/."""

    def test_pending(self, staff_client, pending_intent):
        response = staff_client.get(reverse("fees:payment_intent_status", args=[pending_intent.id]))

        assert response.status_code == 200
        assert response.json() == {"status": "pending"}

    def test_completed(self, staff_client, pending_intent):
        PaymentConfirmationService.handle_callback(
            pending_intent.provider_reference, "success", "QX123ABC", description="Processed"
        )

        response = staff_client.get(reverse("fees:payment_intent_status", args=[pending_intent.id]))

        assert response.json() == {
            "status": "completed",
            "receiptCode": "QX123ABC",
            "resultDescription": "Processed",
        }

    def test_unknown_intent(self, staff_client):
        response = staff_client.get(reverse("fees:payment_intent_status", args=[uuid.uuid4()]))

        assert response.status_code == 404
        assert response.json()["error_code"] == "PAYMENT_INTENT_NOT_FOUND"

    def test_requires_authentication(self, api_client, pending_intent):
        response = api_client.get(reverse("fees:payment_intent_status", args=[pending_intent.id]))

        assert response.status_code in (401, 403)

    def test_polling_does_not_write(self, staff_client, pending_intent):
        before = PaymentIntent.objects.get(pk=pending_intent.pk)

        for _ in range(3):
            staff_client.get(reverse("fees:payment_intent_status", args=[pending_intent.id]))

        after = PaymentIntent.objects.get(pk=pending_intent.pk)
        assert (after.version, after.updated_at) == (before.version, before.updated_at)
