"""
Adapters for external billing services.

All payment-provider API calls go through these adapters to ensure
consistent error handling, timeouts, idempotency, and observability.
"""

from billing.adapters.stripe_adapter import (
    CreateSubscriptionParams,
    IdempotencyKeyGenerator,
    InvoicePaymentResult,
    RefundResult,
    StripeAdapter,
    SubscriptionResult,
    from_timestamp,
    subscription_period_bounds,
)

__all__ = [
    "CreateSubscriptionParams",
    "IdempotencyKeyGenerator",
    "InvoicePaymentResult",
    "RefundResult",
    "StripeAdapter",
    "SubscriptionResult",
    "from_timestamp",
    "subscription_period_bounds",
]
