"""
State enums for fees models.

This module defines all state and choice enums used by the fees models.
They are Django TextChoices for database storage and admin integration;
the lifecycle enums back django-fsm fields.

State Machines Overview:

Invoice States:
    draft → posted → cancelled
    draft → cancelled

Payment States:
    pending → confirmed → reversed

Approval (waiver / grade change) States:
    pending → approved
    pending → rejected

PaymentIntent States:
    pending → processing → completed
    pending → processing → failed
    pending → completed / failed (providers may skip processing)
"""

from django.db import models


class PeriodType(models.TextChoices):
    """Granularity of an accounting period."""

    MONTH = "month", "Month"
    TERM = "term", "Term"
    QUARTER = "quarter", "Quarter"
    YEAR = "year", "Year"
    CUSTOM = "custom", "Custom"


class InvoiceStatus(models.TextChoices):
    """
    States for the Invoice model lifecycle.

    Only POSTED invoices count toward a student's balance.

    State Flow:
        DRAFT → POSTED → CANCELLED
        DRAFT → CANCELLED
    """

    DRAFT = "draft", "Draft"
    POSTED = "posted", "Posted"
    CANCELLED = "cancelled", "Cancelled"


class PaymentStatus(models.TextChoices):
    """
    States for the Payment model lifecycle.

    Only CONFIRMED payments count toward a student's balance.

    State Flow:
        PENDING → CONFIRMED → REVERSED
    """

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    REVERSED = "reversed", "Reversed"


class PaymentMethod(models.TextChoices):
    """How a payment was made."""

    MPESA = "mpesa", "M-PESA"
    CASH = "cash", "Cash"
    BANK = "bank", "Bank Transfer"
    CHEQUE = "cheque", "Cheque"
    OTHER = "other", "Other"


class PenaltyType(models.TextChoices):
    """
    How a late-payment penalty amount is computed.

    - FLAT: rate is a fixed amount in cents per application
    - PER_DAY_PERCENTAGE: rate is a percentage of the outstanding balance
      per application
    """

    FLAT = "flat", "Flat Amount"
    PER_DAY_PERCENTAGE = "per_day_percentage", "Per-Day Percentage"


class PenaltyFrequency(models.TextChoices):
    """
    How often a rule may charge the same invoice.

    - DAILY: one row per invoice per day, stacking day-over-day
    - ONCE: a single non-waived row per invoice and rule
    """

    DAILY = "daily", "Daily"
    ONCE = "once", "Once"


class AppliedBy(models.TextChoices):
    """Origin of an applied penalty."""

    SYSTEM = "system", "System"
    ADMIN = "admin", "Admin"


class RequesterType(models.TextChoices):
    """Who opened an approval request."""

    PARENT = "parent", "Parent"
    STAFF = "staff", "Staff"


class ApprovalStatus(models.TextChoices):
    """
    States for approval requests (penalty waivers, grade changes).

    Terminal states: APPROVED, REJECTED

    State Flow:
        PENDING → APPROVED
        PENDING → REJECTED
    """

    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"


class PaymentIntentState(models.TextChoices):
    """
    States for the PaymentIntent model lifecycle.

    Terminal states: COMPLETED, FAILED

    State Flow:
        PENDING → PROCESSING → COMPLETED
        PENDING → PROCESSING → FAILED
        PENDING → COMPLETED / FAILED
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"

    @classmethod
    def terminal_states(cls) -> frozenset[str]:
        """States from which no further transition is accepted."""
        return frozenset({cls.COMPLETED, cls.FAILED})


class CallbackOutcome(models.TextChoices):
    """Outcome reported by the mobile money provider callback."""

    SUCCESS = "success", "Success"
    FAILURE = "failure", "Failure"


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
