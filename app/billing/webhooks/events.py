"""
Webhook event types the billing app handles.
"""

from __future__ import annotations

import enum


class WebhookEventType(str, enum.Enum):
    """Closed set of routed provider event types."""

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value: str) -> WebhookEventType | None:
        """The member for ``value``, or None for types we do not route."""
        try:
            return cls(value)
        except ValueError:
            return None
