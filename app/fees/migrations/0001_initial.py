"""
Create the fees ledger schema.

Changes:
    - FinancialPeriod, Invoice, Payment, Allocation
    - PenaltyRule, AppliedPenalty
    - WaiverRequest, GradeChangeRequest
    - PaymentIntent, AuditRecord
"""

import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django_fsm
from django.db import migrations, models


def _created_at():
    return models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this record was created",
    )


def _updated_at():
    return models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when this record was last modified",
    )


def _id():
    return models.UUIDField(
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
        primary_key=True,
        serialize=False,
    )


def _version():
    return models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )


APPROVAL_STATUS_CHOICES = [("pending", "Pending"), ("approved", "Approved"), ("rejected", "Rejected")]
REQUESTER_TYPE_CHOICES = [("parent", "Parent"), ("staff", "Staff")]


def _approval_fields():
    return [
        ("id", _id()),
        ("created_at", _created_at()),
        ("updated_at", _updated_at()),
        ("institution_id", models.UUIDField(db_index=True)),
        ("requested_by", models.UUIDField(help_text="Actor who opened the request")),
        ("requester_type", models.CharField(choices=REQUESTER_TYPE_CHOICES, default="parent", max_length=10)),
        ("reason", models.TextField()),
        (
            "status",
            django_fsm.FSMField(
                choices=APPROVAL_STATUS_CHOICES,
                db_index=True,
                default="pending",
                max_length=50,
                protected=True,
            ),
        ),
        ("reviewed_by", models.UUIDField(blank=True, null=True)),
        ("reviewed_at", models.DateTimeField(blank=True, null=True)),
        ("review_notes", models.TextField(blank=True, default="")),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="FinancialPeriod",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("institution_id", models.UUIDField(db_index=True, help_text="Institution this period belongs to")),
                ("name", models.CharField(help_text="Display name (e.g., 'Term 1 2024')", max_length=100)),
                (
                    "period_type",
                    models.CharField(
                        choices=[
                            ("month", "Month"),
                            ("term", "Term"),
                            ("quarter", "Quarter"),
                            ("year", "Year"),
                            ("custom", "Custom"),
                        ],
                        default="month",
                        help_text="Granularity of the period",
                        max_length=20,
                    ),
                ),
                ("start_date", models.DateField(help_text="First day of the period (inclusive)")),
                ("end_date", models.DateField(help_text="Last day of the period (inclusive)")),
                (
                    "is_locked",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Whether ledger mutations inside this period are rejected",
                    ),
                ),
                ("locked_at", models.DateTimeField(blank=True, null=True)),
                ("locked_by", models.UUIDField(blank=True, help_text="Actor who locked the period", null=True)),
                ("lock_reason", models.TextField(blank=True, default="")),
                ("can_unlock", models.BooleanField(default=True, help_text="Whether a locked period may be reopened")),
            ],
            options={
                "verbose_name": "Financial Period",
                "verbose_name_plural": "Financial Periods",
                "ordering": ["start_date"],
                "indexes": [
                    models.Index(
                        fields=["institution_id", "start_date", "end_date"],
                        name="fees_period_inst_range_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("start_date__lte", models.F("end_date"))),
                        name="financial_period_range_valid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("version", _version()),
                ("institution_id", models.UUIDField(db_index=True)),
                ("student_id", models.UUIDField(db_index=True)),
                (
                    "invoice_number",
                    models.CharField(blank=True, default="", help_text="Human-facing invoice number", max_length=50),
                ),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("total_cents", models.PositiveBigIntegerField(help_text="Invoice total in smallest currency unit")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("draft", "Draft"), ("posted", "Posted"), ("cancelled", "Cancelled")],
                        db_index=True,
                        default="draft",
                        help_text="Current state of the invoice (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("due_date", models.DateField(db_index=True)),
                ("created_by", models.UUIDField(blank=True, null=True)),
                ("posted_at", models.DateTimeField(blank=True, null=True)),
                ("posted_by", models.UUIDField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_by", models.UUIDField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "ordering": ["due_date", "created_at"],
                "indexes": [
                    models.Index(
                        fields=["institution_id", "student_id", "status"],
                        name="fees_invoice_inst_student_idx",
                    ),
                    models.Index(fields=["status", "due_date"], name="fees_invoice_status_due_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total_cents__gt", 0)),
                        name="invoice_total_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("version", _version()),
                ("institution_id", models.UUIDField(db_index=True)),
                ("student_id", models.UUIDField(db_index=True)),
                ("amount_cents", models.PositiveBigIntegerField(help_text="Payment amount in smallest currency unit")),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("mpesa", "M-PESA"),
                            ("cash", "Cash"),
                            ("bank", "Bank Transfer"),
                            ("cheque", "Cheque"),
                            ("other", "Other"),
                        ],
                        default="cash",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("confirmed", "Confirmed"), ("reversed", "Reversed")],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payment (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "transaction_reference",
                    models.CharField(
                        help_text="External transaction reference (idempotency key)",
                        max_length=100,
                        unique=True,
                    ),
                ),
                ("payment_date", models.DateField(db_index=True)),
                ("recorded_by", models.UUIDField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("reversed_at", models.DateTimeField(blank=True, null=True)),
                ("reversed_by", models.UUIDField(blank=True, null=True)),
                ("reversal_reason", models.TextField(blank=True, default="")),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-payment_date", "-created_at"],
                "indexes": [
                    models.Index(
                        fields=["institution_id", "student_id", "status"],
                        name="fees_payment_inst_student_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="payment_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Allocation",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("is_void", models.BooleanField(db_index=True, default=False)),
                ("voided_at", models.DateTimeField(blank=True, null=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="fees.invoice",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="fees.payment",
                    ),
                ),
            ],
            options={
                "verbose_name": "Allocation",
                "verbose_name_plural": "Allocations",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["invoice", "is_void"], name="fees_alloc_invoice_void_idx"),
                    models.Index(fields=["payment", "is_void"], name="fees_alloc_payment_void_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="allocation_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PenaltyRule",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("institution_id", models.UUIDField(db_index=True)),
                ("name", models.CharField(max_length=100)),
                (
                    "penalty_type",
                    models.CharField(
                        choices=[("flat", "Flat Amount"), ("per_day_percentage", "Per-Day Percentage")],
                        default="flat",
                        max_length=20,
                    ),
                ),
                (
                    "rate",
                    models.DecimalField(
                        decimal_places=4,
                        help_text="Cents for flat rules, percent of outstanding balance otherwise",
                        max_digits=14,
                        validators=[django.core.validators.MinValueValidator(Decimal("0"))],
                    ),
                ),
                ("grace_days", models.PositiveIntegerField(default=0)),
                (
                    "apply_per",
                    models.CharField(choices=[("daily", "Daily"), ("once", "Once")], default="daily", max_length=10),
                ),
                (
                    "max_penalty_cents",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Cap on this rule's unwaived penalties per invoice",
                        null=True,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("auto_apply", models.BooleanField(default=True)),
                ("last_applied_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Penalty Rule",
                "verbose_name_plural": "Penalty Rules",
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["is_active", "auto_apply"], name="fees_rule_active_auto_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AppliedPenalty",
            fields=[
                ("id", _id()),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("institution_id", models.UUIDField(db_index=True)),
                ("student_id", models.UUIDField(db_index=True)),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("days_overdue", models.PositiveIntegerField(default=0)),
                ("applied_date", models.DateField(db_index=True)),
                (
                    "applied_by",
                    models.CharField(choices=[("system", "System"), ("admin", "Admin")], default="system", max_length=10),
                ),
                (
                    "applied_by_actor",
                    models.UUIDField(blank=True, help_text="Admin who applied a manual penalty", null=True),
                ),
                ("waived", models.BooleanField(db_index=True, default=False)),
                ("waived_at", models.DateTimeField(blank=True, null=True)),
                ("waived_by", models.UUIDField(blank=True, null=True)),
                ("waiver_reason", models.TextField(blank=True, default="")),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="penalties",
                        to="fees.invoice",
                    ),
                ),
                (
                    "penalty_rule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="applied_penalties",
                        to="fees.penaltyrule",
                    ),
                ),
            ],
            options={
                "verbose_name": "Applied Penalty",
                "verbose_name_plural": "Applied Penalties",
                "ordering": ["-applied_date", "-created_at"],
                "indexes": [
                    models.Index(
                        fields=["institution_id", "student_id", "waived"],
                        name="fees_penalty_inst_student_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("waived", False)),
                        fields=("invoice", "applied_date"),
                        name="applied_penalty_one_unwaived_per_day",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="applied_penalty_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WaiverRequest",
            fields=[
                *_approval_fields(),
                (
                    "applied_penalty",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="waiver_requests",
                        to="fees.appliedpenalty",
                    ),
                ),
            ],
            options={
                "verbose_name": "Waiver Request",
                "verbose_name_plural": "Waiver Requests",
                "ordering": ["-created_at"],
                "abstract": False,
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("applied_penalty",),
                        name="waiver_request_one_pending_per_penalty",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="GradeChangeRequest",
            fields=[
                *_approval_fields(),
                ("target_id", models.UUIDField(db_index=True)),
                ("current_score", models.DecimalField(blank=True, decimal_places=2, max_digits=7, null=True)),
                ("proposed_score", models.DecimalField(decimal_places=2, max_digits=7)),
            ],
            options={
                "verbose_name": "Grade Change Request",
                "verbose_name_plural": "Grade Change Requests",
                "ordering": ["-created_at"],
                "abstract": False,
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("target_id",),
                        name="grade_change_one_pending_per_target",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentIntent",
            fields=[
                ("id", _id()),
                (
                    "metadata",
                    models.JSONField(blank=True, default=dict, help_text="Flexible key-value metadata storage"),
                ),
                ("created_at", _created_at()),
                ("updated_at", _updated_at()),
                ("version", _version()),
                ("institution_id", models.UUIDField(db_index=True)),
                ("student_id", models.UUIDField(db_index=True)),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("phone", models.CharField(max_length=20)),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        help_text="Provider request id, e.g. an STK push CheckoutRequestID",
                        max_length=100,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the intent (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("result_description", models.TextField(blank=True, default="")),
                ("receipt_code", models.CharField(blank=True, default="", max_length=100)),
                ("initiated_by", models.UUIDField(blank=True, null=True)),
                ("terminal_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="intent",
                        to="fees.payment",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Intent",
                "verbose_name_plural": "Payment Intents",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["institution_id", "student_id"], name="fees_intent_inst_student_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="payment_intent_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditRecord",
            fields=[
                ("id", _id()),
                ("action", models.CharField(db_index=True, max_length=64)),
                ("entity_type", models.CharField(max_length=64)),
                ("entity_id", models.UUIDField(db_index=True)),
                ("institution_id", models.UUIDField(db_index=True)),
                ("actor_id", models.UUIDField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "verbose_name": "Audit Record",
                "verbose_name_plural": "Audit Records",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["entity_type", "entity_id"], name="fees_audit_entity_idx"),
                ],
            },
        ),
    ]
