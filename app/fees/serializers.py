"""
DRF serializers for the fees API.

Serializers:
    PaymentCallbackRequestSerializer: Provider callback payload
    CallbackAcceptedResponseSerializer: Acknowledgement returned to the provider
    PaymentIntentCreateSerializer: Request body for initiating a payment
    PaymentIntentSerializer: Payment intent details
    PaymentIntentStatusSerializer: Client-facing status (polled)
    ErrorResponseSerializer: Application error body

Usage:
    serializer = PaymentCallbackRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
"""

from __future__ import annotations

from rest_framework import serializers

from fees.models import PaymentIntent
from fees.state_machines import CallbackOutcome


class PaymentCallbackRequestSerializer(serializers.Serializer):
    """Provider callback body. outcome is success or failure."""

    provider_reference = serializers.CharField(max_length=100)
    outcome = serializers.ChoiceField(choices=CallbackOutcome.choices)
    receipt_code = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    description = serializers.CharField(required=False, allow_blank=True, default="")


class CallbackAcceptedResponseSerializer(serializers.Serializer):
    ResultCode = serializers.IntegerField()
    ResultDesc = serializers.CharField()


class ErrorResponseSerializer(serializers.Serializer):
    error = serializers.CharField()
    error_code = serializers.CharField(required=False)
    details = serializers.DictField(required=False)


class PaymentIntentCreateSerializer(serializers.Serializer):
    """
    Request body for initiating a mobile money payment.

    institution_id, student_id and actor_id come from the already
    authenticated caller's scope.
    """

    institution_id = serializers.UUIDField()
    student_id = serializers.UUIDField()
    amount_cents = serializers.IntegerField(min_value=1)
    phone = serializers.RegexField(r"^\+?\d{9,15}$", max_length=20)
    account_reference = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    actor_id = serializers.UUIDField(required=False, allow_null=True, default=None)


class PaymentIntentSerializer(serializers.ModelSerializer):
    """Read-only serializer for PaymentIntent details."""

    class Meta:
        model = PaymentIntent
        fields = [
            "id",
            "institution_id",
            "student_id",
            "amount_cents",
            "phone",
            "provider_reference",
            "status",
            "receipt_code",
            "result_description",
            "created_at",
            "terminal_at",
        ]
        read_only_fields = fields


class PaymentIntentStatusSerializer(serializers.Serializer):
    """Polled status; receiptCode and resultDescription appear only when set."""

    status = serializers.CharField()
    receiptCode = serializers.CharField(required=False)
    resultDescription = serializers.CharField(required=False)
