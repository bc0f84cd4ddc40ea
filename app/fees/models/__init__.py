"""
Fees domain models.

This module contains all fees-related models:
- FinancialPeriod: Lockable accounting periods per institution
- Invoice: Charges against a student
- Payment: Money received, keyed by a unique transaction reference
- Allocation: Assignment of part of a payment to an invoice
- PenaltyRule: Late-payment penalty configuration
- AppliedPenalty: One penalty charge on one invoice for one day
- WaiverRequest: Approval request to waive an applied penalty
- GradeChangeRequest: Approval request to correct a recorded score
- PaymentIntent: Mobile money payment awaiting provider confirmation
- AuditRecord: Append-only audit trail
"""

from fees.models.approval import ApprovalRequest, GradeChangeRequest, WaiverRequest
from fees.models.audit import AuditRecord
from fees.models.financial_period import FinancialPeriod
from fees.models.invoice import Invoice
from fees.models.payment import Allocation, Payment
from fees.models.payment_intent import PaymentIntent
from fees.models.penalty import AppliedPenalty, PenaltyRule

__all__ = [
    "Allocation",
    "AppliedPenalty",
    "ApprovalRequest",
    "AuditRecord",
    "FinancialPeriod",
    "GradeChangeRequest",
    "Invoice",
    "Payment",
    "PaymentIntent",
    "PenaltyRule",
    "WaiverRequest",
]
