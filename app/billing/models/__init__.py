"""
Billing domain models.

This module contains all billing-related models:
- Order, OrderItem: One-time purchases and their priced lines
- Payment: Charge attempts against an order
- Refund: Provider refund objects (append-only)
- SubscriptionPlan, PromoCode: Recurring prices and signup discounts
- Subscription: Recurring billing relationships
- Invoice: Billing-cycle charges against a subscription
- DunningAttempt: Scheduled retries of unpaid invoices
- WebhookEvent: Provider webhook events for idempotent processing
"""

from billing.models.dunning import DunningAttempt
from billing.models.invoice import Invoice
from billing.models.order import Order, OrderItem, Payment, Refund
from billing.models.subscription import (
    PromoCode,
    Subscription,
    SubscriptionPlan,
    advance_period,
)
from billing.models.webhook_event import WebhookEvent

__all__ = [
    "DunningAttempt",
    "Invoice",
    "Order",
    "OrderItem",
    "Payment",
    "PromoCode",
    "Refund",
    "Subscription",
    "SubscriptionPlan",
    "WebhookEvent",
    "advance_period",
]
