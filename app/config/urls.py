"""
URL configuration for the fees ledger.

URL Structure:
    /                                      - ReDoc API documentation
    /admin/                                - Django admin interface
    /health/                               - Health check endpoint
    /schema/                               - OpenAPI schema (YAML)
    /api/v1/fees/                          - Fees endpoints
        payment-callback/                  - Provider payment callback (POST)
        payment-intents/                   - Initiate a mobile money payment (POST)
        payment-intents/{id}/              - Payment intent status (GET)
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

api_v1_patterns = [
    path("fees/", include("fees.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    path("admin/", admin.site.urls),
    path("health/", health_check, name="health_check"),
    path("api/v1/", include(api_v1_patterns)),
]

admin.site.site_header = "Fees Ledger Admin"
admin.site.site_title = "Fees Ledger"
admin.site.index_title = "Fees administration"
