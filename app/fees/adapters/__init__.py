"""
Adapters for services the fees ledger depends on.

- MobileMoneyGateway: issues payment prompts through the mobile money provider
- Grade change appliers: write approved scores to the grading service
"""

from fees.adapters.base import (
    MobileMoneyGateway,
    PromptRequest,
    PromptResult,
    get_gateway,
)
from fees.adapters.sandbox import SandboxGateway

__all__ = [
    "MobileMoneyGateway",
    "PromptRequest",
    "PromptResult",
    "SandboxGateway",
    "get_gateway",
]
