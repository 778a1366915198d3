"""
State machine enums for billing models.

This module defines the state enums used by billing models with django-fsm.
"""

from billing.state_machines.states import (
    BillingCycleAnchor,
    BillingInterval,
    DunningOutcome,
    InvoiceStatus,
    OrderState,
    PaymentState,
    ProrationPolicy,
    RefundReason,
    RefundStatus,
    SubscriptionState,
    WebhookEventStatus,
)

__all__ = [
    "BillingCycleAnchor",
    "BillingInterval",
    "DunningOutcome",
    "InvoiceStatus",
    "OrderState",
    "PaymentState",
    "ProrationPolicy",
    "RefundReason",
    "RefundStatus",
    "SubscriptionState",
    "WebhookEventStatus",
]
