"""
Sandbox mobile money gateway for development and tests.

Issues provider references locally without contacting any provider. The
callback that completes the payment is delivered by hand (or by a test)
to the payment callback endpoint.
"""

from __future__ import annotations

import logging
import secrets

from fees.adapters.base import PromptRequest, PromptResult

logger = logging.getLogger(__name__)


class SandboxGateway:
    """Gateway that accepts every prompt request."""

    reference_prefix = "ws_CO_"

    def request_prompt(self, request: PromptRequest) -> PromptResult:
        reference = f"{self.reference_prefix}{secrets.token_hex(10).upper()}"
        logger.info(
            f"Sandbox prompt issued for intent {request.intent_id}",
            extra={
                "intent_id": str(request.intent_id),
                "provider_reference": reference,
                "amount_cents": request.amount_cents,
            },
        )
        return PromptResult(
            provider_reference=reference,
            customer_message="Sandbox prompt issued; deliver the callback manually",
        )
