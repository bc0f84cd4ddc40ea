"""
State machine enums and helpers for fees models.

This module re-exports the state enums used by fees models with django-fsm.
"""

from fees.state_machines.states import (
    AppliedBy,
    ApprovalStatus,
    CallbackOutcome,
    InvoiceStatus,
    PaymentIntentState,
    PaymentMethod,
    PaymentStatus,
    PenaltyFrequency,
    PenaltyType,
    PeriodType,
    RequesterType,
)

__all__ = [
    "AppliedBy",
    "ApprovalStatus",
    "CallbackOutcome",
    "InvoiceStatus",
    "PaymentIntentState",
    "PaymentMethod",
    "PaymentStatus",
    "PenaltyFrequency",
    "PenaltyType",
    "PeriodType",
    "RequesterType",
]
