"""
URL configuration for the Django application.

URL Structure:
    /admin/                        - Django admin interface
    /api/v1/billing/               - Billing endpoints
        webhooks/stripe/           - Stripe webhook endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("billing/", include("billing.urls")),
]

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Billing Admin"
admin.site.site_title = "Billing Admin Portal"
admin.site.index_title = "Payments, subscriptions and tax"
