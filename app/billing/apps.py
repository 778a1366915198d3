"""
Billing app configuration.

This app reconciles local orders, subscriptions and invoices with the
payment provider:
- Jurisdiction-aware tax engine
- Order and subscription state machines
- Dunning manager
- Webhook dispatcher
"""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Configuration for the billing application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"
