"""
URL configuration for the billing app.

Routes:
    - POST /webhooks/stripe/ - Stripe webhook endpoint

All routes are prefixed with /api/v1/billing/ when included in the main URLconf.
"""

from django.urls import path

from billing.webhooks.views import stripe_webhook

app_name = "billing"

urlpatterns = [
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]
