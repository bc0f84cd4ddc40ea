"""
Fees services.

- PeriodGuard: Accounting period lock queries and transitions
- LedgerService: Invoices, payments, allocations and balances
- PenaltyEngine: Late-payment penalty computation and the daily sweep
- ApprovalWorkflow: Generic two-party approval (waiver_workflow, grade_change_workflow)
- PaymentConfirmationService: Mobile money payment intent state machine
"""

from fees.services.approval_workflow import (
    ApprovalWorkflow,
    grade_change_workflow,
    waiver_workflow,
)
from fees.services.ledger_service import (
    NEWEST_DUE_FIRST,
    OLDEST_DUE_FIRST,
    AllocationRequest,
    BalanceSnapshot,
    LedgerService,
)
from fees.services.payment_confirmation import (
    CallbackResult,
    IntentStatus,
    PaymentConfirmationService,
)
from fees.services.penalty_engine import PenaltyEngine, SweepResult
from fees.services.period_guard import PeriodGuard

__all__ = [
    "AllocationRequest",
    "ApprovalWorkflow",
    "BalanceSnapshot",
    "CallbackResult",
    "IntentStatus",
    "LedgerService",
    "NEWEST_DUE_FIRST",
    "OLDEST_DUE_FIRST",
    "PaymentConfirmationService",
    "PenaltyEngine",
    "PeriodGuard",
    "SweepResult",
    "grade_change_workflow",
    "waiver_workflow",
]
