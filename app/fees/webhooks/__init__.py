"""
Inbound webhooks for the fees app.

- PaymentCallbackView: mobile money provider payment callback
"""

from fees.webhooks.views import PaymentCallbackView

__all__ = ["PaymentCallbackView"]
