"""
Webhook event handlers.

One function per routed event type. Each receives the event's data
object, translates it into a service call and returns the service's
ServiceResult unchanged; the dispatcher decides what the result means
for the event record.
"""

from __future__ import annotations

import logging
from typing import Any

from core.services import ServiceResult
from billing.services import OrderService, SubscriptionService

logger = logging.getLogger(__name__)


def _missing(field: str, obj: dict[str, Any]) -> ServiceResult:
    logger.warning(
        f"Webhook object missing {field}",
        extra={"object_id": obj.get("id"), "object_type": obj.get("object")},
    )
    return ServiceResult.failure(f"Webhook object has no {field}", "INVALID_WEBHOOK_PAYLOAD")


# =============================================================================
# Payment Intent Handlers
# =============================================================================


def handle_payment_intent_succeeded(obj: dict[str, Any]) -> ServiceResult:
    """payment_intent.succeeded: complete the order, grant access."""
    if not obj.get("id"):
        return _missing("id", obj)
    return OrderService.apply_payment_succeeded(
        obj["id"],
        charge_ref=obj.get("latest_charge"),
        amount_cents=obj.get("amount_received"),
    )


def handle_payment_intent_failed(obj: dict[str, Any]) -> ServiceResult:
    """payment_intent.payment_failed: cancel the pending order."""
    if not obj.get("id"):
        return _missing("id", obj)
    error = obj.get("last_payment_error") or {}
    return OrderService.apply_payment_failed(
        obj["id"],
        failure_code=error.get("decline_code") or error.get("code"),
        failure_message=error.get("message"),
    )


# =============================================================================
# Charge Handlers
# =============================================================================


def handle_charge_refunded(obj: dict[str, Any]) -> ServiceResult:
    """
    charge.refunded: apply the charge's cumulative refunded amount.

    ``refunded`` is the provider's full-refund flag; the service
    cross-checks it against the amounts.
    """
    if not obj.get("payment_intent"):
        return _missing("payment_intent", obj)
    return OrderService.apply_refund(
        obj["payment_intent"],
        refunded_amount_cents=obj.get("amount_refunded", 0),
        is_full_refund=obj.get("refunded"),
        charge_ref=obj.get("id"),
        charge_amount_cents=obj.get("amount"),
        refunds=(obj.get("refunds") or {}).get("data") or [],
    )


# =============================================================================
# Subscription Handlers
# =============================================================================


def handle_subscription_changed(obj: dict[str, Any]) -> ServiceResult:
    """customer.subscription.created / updated: mirror status and period."""
    return SubscriptionService.sync_from_provider(obj)


def handle_subscription_deleted(obj: dict[str, Any]) -> ServiceResult:
    return SubscriptionService.on_provider_cancelled(obj)


# =============================================================================
# Invoice Handlers
# =============================================================================


def handle_invoice_payment_succeeded(obj: dict[str, Any]) -> ServiceResult:
    if not obj.get("id"):
        return _missing("id", obj)
    return SubscriptionService.on_invoice_payment_succeeded(obj)


def handle_invoice_payment_failed(obj: dict[str, Any]) -> ServiceResult:
    """invoice.payment_failed: PAST_DUE and the next dunning step."""
    if not obj.get("id"):
        return _missing("id", obj)
    return SubscriptionService.on_invoice_payment_failed(obj)
