"""
Billing services.

Business logic for orders and subscriptions. Services are stateless
classmethod collections returning ServiceResult.
"""

from billing.services.order_service import OrderLine, OrderService, RefundEligibility
from billing.services.subscription_service import (
    CancellationResult,
    ChangePreview,
    SubscriptionService,
)

__all__ = [
    "CancellationResult",
    "ChangePreview",
    "OrderLine",
    "OrderService",
    "RefundEligibility",
    "SubscriptionService",
]
