"""
Fees app configuration.

This app provides the institution fees ledger:
- Accounting period locks
- Invoices, payments and allocations
- Late-payment penalties and waiver approvals
- Mobile money payment confirmation
"""

from django.apps import AppConfig


class FeesConfig(AppConfig):
    """Configuration for the fees application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "fees"
    verbose_name = "Fees"

    def ready(self):
        from fees.signals import register_signals

        register_signals()
