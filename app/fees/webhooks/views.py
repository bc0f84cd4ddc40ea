"""
Mobile money provider callback endpoint.

The provider delivers the outcome of a payment prompt at least once. The
view:
1. Verifies the HMAC-SHA256 signature in X-Provider-Signature
2. Validates the payload
3. Applies it to the intent synchronously under a row lock
4. Acknowledges with {"ResultCode": 0, "ResultDesc": "Accepted"}

Replays for an intent that is already terminal are acknowledged the same
way without writing. An unknown provider_reference returns 404 so the
provider retries; a callback can overtake the commit of the initiating
request that stores the reference.

Usage:
    # In fees/urls.py
    path("payment-callback/", PaymentCallbackView.as_view(), name="payment_callback")
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from django.conf import settings
from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError

from fees.exceptions import FeesNotFoundError
from fees.serializers import (
    CallbackAcceptedResponseSerializer,
    ErrorResponseSerializer,
    PaymentCallbackRequestSerializer,
)
from fees.services import PaymentConfirmationService

logger = logging.getLogger(__name__)

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        payload: Raw request body
        signature: Hex digest from the X-Provider-Signature header
        secret: Shared secret for HMAC

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Mobile money callback secret not configured, rejecting request")
        return False

    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


class PaymentCallbackView(APIView):
    """
    Mobile money payment callback webhook.

    Requires HMAC-SHA256 signature verification via X-Provider-Signature header.
    """

    permission_classes = [AllowAny]
    authentication_classes = []  # Signature-based validation

    @extend_schema(
        operation_id="mobile_money_payment_callback",
        summary="Mobile money payment callback",
        description=(
            "Endpoint for the mobile money provider to report the outcome of a payment "
            "prompt. Idempotent on provider_reference. Requires HMAC-SHA256 signature "
            "verification using the X-Provider-Signature header."
        ),
        request=PaymentCallbackRequestSerializer,
        responses={
            200: CallbackAcceptedResponseSerializer,
            400: OpenApiResponse(response=ErrorResponseSerializer, description="Invalid request payload"),
            401: OpenApiResponse(response=ErrorResponseSerializer, description="Invalid or missing signature"),
            404: OpenApiResponse(response=ErrorResponseSerializer, description="Unknown provider reference"),
        },
        tags=["Fees - Webhooks"],
    )
    def post(self, request):
        """Handle a mobile money payment callback."""
        signature = request.headers.get("X-Provider-Signature", "")
        secret = getattr(settings, "MOBILE_MONEY_CALLBACK_SECRET", "")

        if not _verify_signature(request.body, signature, secret):
            logger.warning("Mobile money callback signature verification failed")
            return Response({"error": "Invalid signature"}, status=status.HTTP_401_UNAUTHORIZED)

        serializer = PaymentCallbackRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {"error": "Invalid payload", "details": serializer.errors},
                status=status.HTTP_400_BAD_REQUEST,
            )

        data = serializer.validated_data
        try:
            result = PaymentConfirmationService.handle_callback(
                provider_reference=data["provider_reference"],
                outcome=data["outcome"],
                receipt_code=data["receipt_code"],
                description=data["description"],
            )
        except FeesNotFoundError as e:
            logger.warning(
                f"Callback for unknown provider reference {data['provider_reference']}",
                extra={"provider_reference": data["provider_reference"]},
            )
            return Response(e.to_dict(), status=status.HTTP_404_NOT_FOUND)
        except BaseApplicationError as e:
            return Response(e.to_dict(), status=e.http_status)

        logger.info(
            "Mobile money callback accepted",
            extra={
                "provider_reference": data["provider_reference"],
                "intent_id": str(result.intent.id),
                "status": result.intent.status,
                "replay": not result.processed,
            },
        )
        return Response(ACCEPTED)
