"""
Fees API views.

Endpoints:
    POST /api/v1/fees/payment-intents/ - Initiate a mobile money payment
    GET  /api/v1/fees/payment-intents/{id}/ - Poll a payment intent's status

The status endpoint is a pure read: it takes no locks and never writes,
so clients may poll it as often as they like while the provider callback
is being processed.
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError

from fees.serializers import (
    ErrorResponseSerializer,
    PaymentIntentCreateSerializer,
    PaymentIntentSerializer,
    PaymentIntentStatusSerializer,
)
from fees.services import PaymentConfirmationService

logger = logging.getLogger(__name__)


class PaymentIntentCreateView(APIView):
    """Initiate a mobile money payment for a student."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="payment_intent_create",
        summary="Initiate mobile money payment",
        description=(
            "Creates a pending payment intent and asks the provider to prompt the "
            "payer's phone. Poll the status endpoint for the outcome."
        ),
        request=PaymentIntentCreateSerializer,
        responses={
            201: PaymentIntentSerializer,
            400: OpenApiResponse(response=ErrorResponseSerializer, description="Invalid request"),
            502: OpenApiResponse(response=ErrorResponseSerializer, description="Provider refused the prompt"),
        },
        tags=["Fees - Payments"],
    )
    def post(self, request):
        serializer = PaymentIntentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            intent = PaymentConfirmationService.initiate(
                institution_id=data["institution_id"],
                student_id=data["student_id"],
                amount_cents=data["amount_cents"],
                phone=data["phone"],
                actor_id=data["actor_id"],
                account_reference=data["account_reference"],
            )
        except BaseApplicationError as e:
            return Response(e.to_dict(), status=e.http_status)

        return Response(PaymentIntentSerializer(intent).data, status=status.HTTP_201_CREATED)


class PaymentIntentStatusView(APIView):
    """Read-only status of a payment intent."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="payment_intent_status",
        summary="Get payment intent status",
        description=(
            "Returns the intent's status, plus receiptCode once completed and "
            "resultDescription once terminal. Safe to poll."
        ),
        responses={
            200: PaymentIntentStatusSerializer,
            404: OpenApiResponse(response=ErrorResponseSerializer, description="Intent not found"),
        },
        tags=["Fees - Payments"],
    )
    def get(self, request, intent_id):
        try:
            intent_status = PaymentConfirmationService.get_status(intent_id)
        except BaseApplicationError as e:
            return Response(e.to_dict(), status=e.http_status)

        return Response(intent_status.to_dict())
