"""
Fees admin configuration.

Ledger rows (invoices, payments, allocations, penalties, intents, audit
records) are read-only here: every write goes through the fees services so
that period locks, allocation bounds and audit records are enforced.
Penalty rules are plain configuration and stay editable.
"""

from django.contrib import admin

from fees.models import (
    Allocation,
    AppliedPenalty,
    AuditRecord,
    FinancialPeriod,
    GradeChangeRequest,
    Invoice,
    Payment,
    PaymentIntent,
    PenaltyRule,
    WaiverRequest,
)

__all__ = [
    "AllocationInline",
    "AppliedPenaltyAdmin",
    "AuditRecordAdmin",
    "FinancialPeriodAdmin",
    "GradeChangeRequestAdmin",
    "InvoiceAdmin",
    "PaymentAdmin",
    "PaymentIntentAdmin",
    "PenaltyRuleAdmin",
    "WaiverRequestAdmin",
]


class ReadOnlyAdmin(admin.ModelAdmin):
    """Base admin that only lists and displays rows."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(FinancialPeriod)
class FinancialPeriodAdmin(ReadOnlyAdmin):
    list_display = ["name", "institution_id", "period_type", "start_date", "end_date", "is_locked", "can_unlock"]
    list_filter = ["period_type", "is_locked", "can_unlock"]
    search_fields = ["name", "institution_id"]
    ordering = ["institution_id", "start_date"]


class AllocationInline(admin.TabularInline):
    model = Allocation
    fk_name = "invoice"
    extra = 0
    can_delete = False
    readonly_fields = ["payment", "amount_cents", "is_void", "voided_at", "created_at"]
    fields = readonly_fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(ReadOnlyAdmin):
    list_display = ["id", "invoice_number", "student_id", "total_cents", "status", "due_date", "posted_at"]
    list_filter = ["status"]
    search_fields = ["id", "invoice_number", "student_id"]
    ordering = ["-due_date"]
    inlines = [AllocationInline]


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdmin):
    """
    Admin view of payments.

    Reversals go through LedgerService.reverse_payment so allocations are
    voided in the same transaction.
    """

    list_display = ["id", "transaction_reference", "student_id", "amount_cents", "method", "status", "payment_date"]
    list_filter = ["status", "method"]
    search_fields = ["id", "transaction_reference", "student_id"]
    ordering = ["-payment_date"]


@admin.register(PenaltyRule)
class PenaltyRuleAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "institution_id",
        "penalty_type",
        "rate",
        "grace_days",
        "apply_per",
        "max_penalty_cents",
        "is_active",
        "auto_apply",
        "last_applied_at",
    ]
    list_filter = ["penalty_type", "apply_per", "is_active", "auto_apply"]
    search_fields = ["name", "institution_id"]
    readonly_fields = ["id", "last_applied_at", "created_at", "updated_at"]


@admin.register(AppliedPenalty)
class AppliedPenaltyAdmin(ReadOnlyAdmin):
    list_display = ["id", "invoice", "student_id", "amount_cents", "days_overdue", "applied_date", "applied_by", "waived"]
    list_filter = ["applied_by", "waived"]
    search_fields = ["id", "student_id", "invoice__invoice_number"]
    ordering = ["-applied_date"]


@admin.register(WaiverRequest)
class WaiverRequestAdmin(ReadOnlyAdmin):
    list_display = ["id", "applied_penalty", "requester_type", "status", "reviewed_by", "reviewed_at", "created_at"]
    list_filter = ["status", "requester_type"]
    search_fields = ["id", "requested_by"]


@admin.register(GradeChangeRequest)
class GradeChangeRequestAdmin(ReadOnlyAdmin):
    list_display = ["id", "target_id", "current_score", "proposed_score", "status", "reviewed_at", "created_at"]
    list_filter = ["status"]
    search_fields = ["id", "target_id", "requested_by"]


@admin.register(PaymentIntent)
class PaymentIntentAdmin(ReadOnlyAdmin):
    list_display = ["id", "provider_reference", "student_id", "amount_cents", "status", "receipt_code", "created_at"]
    list_filter = ["status"]
    search_fields = ["id", "provider_reference", "receipt_code", "phone"]


@admin.register(AuditRecord)
class AuditRecordAdmin(ReadOnlyAdmin):
    list_display = ["created_at", "action", "entity_type", "entity_id", "institution_id", "actor_id"]
    list_filter = ["action", "entity_type"]
    search_fields = ["entity_id", "institution_id", "actor_id"]
    ordering = ["-created_at"]
