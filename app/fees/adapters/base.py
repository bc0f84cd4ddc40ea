"""
Mobile money gateway interface.

The payment confirmation service talks to the provider only through a
MobileMoneyGateway. The provider's own protocol (STK push, OAuth, result
codes) lives entirely inside a gateway implementation; the service sees
a prompt request and a reference back.

Configuration (via settings):
- MOBILE_MONEY_GATEWAY: Dotted path to the gateway class
  (default: fees.adapters.sandbox.SandboxGateway)

Usage:
    from fees.adapters import get_gateway, PromptRequest

    result = get_gateway().request_prompt(
        PromptRequest(
            intent_id=intent.id,
            phone="254712345678",
            amount_cents=1500_00,
            account_reference="INV-0042",
        )
    )
    intent.provider_reference = result.provider_reference
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from django.conf import settings
from django.utils.module_loading import import_string


@dataclass(frozen=True)
class PromptRequest:
    """
    Parameters for asking the provider to prompt the payer.

    Attributes:
        intent_id: Our PaymentIntent id, for provider-side correlation
        phone: Payer's mobile number
        amount_cents: Amount to request in minor units
        account_reference: Reference shown to the payer
    """

    intent_id: uuid.UUID
    phone: str
    amount_cents: int
    account_reference: str = ""

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.phone:
            raise ValueError("phone is required")


@dataclass(frozen=True)
class PromptResult:
    """
    Provider's acknowledgement of a prompt request.

    Attributes:
        provider_reference: Provider id for the request; callbacks carry it
        customer_message: Text the provider suggests showing the payer
    """

    provider_reference: str
    customer_message: str = ""


@runtime_checkable
class MobileMoneyGateway(Protocol):
    """Consumer-side view of a mobile money provider."""

    def request_prompt(self, request: PromptRequest) -> PromptResult:
        """
        Ask the provider to push a payment prompt to the payer's device.

        Raises:
            ExternalServiceError: If the provider refuses or is unreachable
        """
        ...


def get_gateway() -> MobileMoneyGateway:
    """Instantiate the gateway configured in MOBILE_MONEY_GATEWAY."""
    gateway_class = import_string(settings.MOBILE_MONEY_GATEWAY)
    return gateway_class()
