"""
URL configuration for the fees app.

Routes:
    - POST /payment-callback/ - Mobile money provider callback
    - POST /payment-intents/ - Initiate a mobile money payment
    - GET /payment-intents/<uuid>/ - Payment intent status

All routes are prefixed with /api/v1/fees/ when included in the main URLconf.
"""

from django.urls import path

from fees.views import PaymentIntentCreateView, PaymentIntentStatusView
from fees.webhooks.views import PaymentCallbackView

app_name = "fees"

urlpatterns = [
    path("payment-callback/", PaymentCallbackView.as_view(), name="payment_callback"),
    path("payment-intents/", PaymentIntentCreateView.as_view(), name="payment_intent_create"),
    path("payment-intents/<uuid:intent_id>/", PaymentIntentStatusView.as_view(), name="payment_intent_status"),
]
