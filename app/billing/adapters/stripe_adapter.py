"""
Stripe API adapter for billing operations.

All Stripe calls go through StripeAdapter so that timeouts, idempotency
keys, logging and error translation are applied the same way everywhere.
Stripe SDK exceptions never leave this module; callers see the
billing.exceptions Stripe family, whose ``is_retryable`` flag tells them
whether trying again can help.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: Network retries inside the SDK (default: 2)

Usage:
    from billing.adapters import CreateSubscriptionParams, StripeAdapter

    customer_ref = StripeAdapter.ensure_customer(user.id, user.email)
    StripeAdapter.attach_payment_method(customer_ref, "pm_card_visa")
    result = StripeAdapter.create_subscription(
        CreateSubscriptionParams(
            customer_ref=customer_ref,
            price_id=plan.provider_price_id,
            idempotency_key=IdempotencyKeyGenerator.generate("create_subscription", sub.id),
        )
    )
"""

from __future__ import annotations

import datetime
import hashlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import stripe
from django.conf import settings

from billing.exceptions import (
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

R = TypeVar("R")


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CreateSubscriptionParams:
    """
    Parameters for creating a Stripe Subscription.

    Attributes:
        customer_ref: Stripe Customer ID (cus_xxx)
        price_id: Stripe Price ID (price_xxx)
        idempotency_key: Unique key for idempotent creation
        quantity: Number of seats/units
        trial_days: Trial length, 0 for none
        coupon_id: Stripe Coupon ID from a promo code
        payment_method_id: Default payment method for the subscription
        metadata: Key-value pairs (tax breakdown, local ids)
    """

    customer_ref: str
    price_id: str
    idempotency_key: str
    quantity: int = 1
    trial_days: int = 0
    coupon_id: str | None = None
    payment_method_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")


@dataclass
class SubscriptionResult:
    """
    Result from Stripe Subscription operations.

    Attributes:
        id: Subscription ID (sub_xxx)
        status: Stripe status (trialing, active, past_due, ...)
        current_period_start/end: Period bounds as aware datetimes
        cancel_at_period_end: Whether cancellation is scheduled
        raw_response: Full Stripe response dict (for debugging)
    """

    id: str
    status: str
    current_period_start: datetime.datetime | None = None
    current_period_end: datetime.datetime | None = None
    cancel_at_period_end: bool = False
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvoicePaymentResult:
    """Result of asking Stripe to collect an open invoice."""

    id: str
    status: str
    paid: bool
    amount_paid_cents: int = 0


@dataclass
class RefundResult:
    """Result of a Stripe Refund; status is pending until the webhook lands."""

    id: str
    status: str
    amount_cents: int


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same inputs always give the same key, so a retried task hits
    Stripe's idempotency cache instead of creating a second object.

    Example:
        key = IdempotencyKeyGenerator.generate("retry_invoice", attempt.id)
    """

    @staticmethod
    def generate(operation: str, entity_id: uuid.UUID | str, attempt: int = 1) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


def from_timestamp(value: Any) -> datetime.datetime | None:
    if value in (None, ""):
        return None
    return datetime.datetime.fromtimestamp(int(value), tz=datetime.timezone.utc)


def subscription_period_bounds(obj: dict[str, Any]) -> tuple[datetime.datetime | None, datetime.datetime | None]:
    """
    Read current period bounds from a Stripe subscription dict.

    Newer API versions carry the bounds on the subscription items rather
    than the subscription itself; both shapes are accepted.
    """
    start, end = obj.get("current_period_start"), obj.get("current_period_end")
    if start is None or end is None:
        items = ((obj.get("items") or {}).get("data")) or []
        if items:
            start = items[0].get("current_period_start", start)
            end = items[0].get("current_period_end", end)
    return from_timestamp(start), from_timestamp(end)


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    All methods are classmethods - no instance state is maintained.
    Thread-safe for use from Celery workers.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key, timeout and network retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 2)
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _call(cls, operation: str, log_context: dict[str, Any], func: Callable[[], R]) -> R:
        """
        Run one Stripe call with timing logs and error translation.

        Raises:
            StripeError subclasses for every Stripe SDK failure
        """
        cls._configure_stripe()
        logger = cls.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)
        try:
            result = func()
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return result

    # =========================================================================
    # Customers & Payment Methods
    # =========================================================================

    @classmethod
    def ensure_customer(cls, customer_id: Any, email: str, name: str = "") -> str:
        """
        Create (idempotently) the Stripe Customer for a local user.

        Returns:
            Stripe Customer ID (cus_xxx)
        """
        idempotency_key = IdempotencyKeyGenerator.generate("create_customer", customer_id)
        customer = cls._call(
            "ensure_customer",
            {"customer_id": str(customer_id)},
            lambda: stripe.Customer.create(
                email=email,
                name=name or None,
                metadata={"customer_id": str(customer_id)},
                idempotency_key=idempotency_key,
            ),
        )
        return customer.id

    @classmethod
    def attach_payment_method(cls, customer_ref: str, payment_method_id: str) -> None:
        """
        Attach a payment method and make it the customer's default.

        Raises:
            StripeCardDeclinedError: Card rejected during attachment
            StripeInvalidRequestError: Unknown or unusable payment method
        """
        log_context = {"customer_ref": customer_ref, "payment_method_id": payment_method_id}
        cls._call(
            "attach_payment_method",
            log_context,
            lambda: stripe.PaymentMethod.attach(payment_method_id, customer=customer_ref),
        )
        cls._call(
            "set_default_payment_method",
            log_context,
            lambda: stripe.Customer.modify(
                customer_ref,
                invoice_settings={"default_payment_method": payment_method_id},
            ),
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @classmethod
    def _to_subscription_result(cls, subscription: Any) -> SubscriptionResult:
        raw = subscription.to_dict()
        start, end = subscription_period_bounds(raw)
        return SubscriptionResult(
            id=raw["id"],
            status=raw.get("status", ""),
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=bool(raw.get("cancel_at_period_end")),
            raw_response=raw,
        )

    @classmethod
    def create_subscription(cls, params: CreateSubscriptionParams) -> SubscriptionResult:
        """Create a Stripe Subscription for one price."""
        kwargs: dict[str, Any] = {
            "customer": params.customer_ref,
            "items": [{"price": params.price_id, "quantity": params.quantity}],
            "metadata": params.metadata,
            "idempotency_key": params.idempotency_key,
        }
        if params.trial_days:
            kwargs["trial_period_days"] = params.trial_days
        if params.coupon_id:
            kwargs["discounts"] = [{"coupon": params.coupon_id}]
        if params.payment_method_id:
            kwargs["default_payment_method"] = params.payment_method_id

        subscription = cls._call(
            "create_subscription",
            {"customer_ref": params.customer_ref, "price_id": params.price_id},
            lambda: stripe.Subscription.create(**kwargs),
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def update_subscription(
        cls,
        provider_subscription_id: str,
        price_id: str,
        quantity: int,
        proration_behavior: str,
        billing_cycle_anchor: str,
        idempotency_key: str,
    ) -> SubscriptionResult:
        """Swap the price/quantity of a subscription's single item."""
        log_context = {"provider_subscription_id": provider_subscription_id, "price_id": price_id}
        current = cls._call(
            "retrieve_subscription",
            log_context,
            lambda: stripe.Subscription.retrieve(provider_subscription_id),
        )
        item_id = current.to_dict()["items"]["data"][0]["id"]

        kwargs: dict[str, Any] = {
            "items": [{"id": item_id, "price": price_id, "quantity": quantity}],
            "proration_behavior": proration_behavior,
            "idempotency_key": idempotency_key,
        }
        if billing_cycle_anchor == "now":
            kwargs["billing_cycle_anchor"] = "now"

        subscription = cls._call(
            "update_subscription",
            log_context,
            lambda: stripe.Subscription.modify(provider_subscription_id, **kwargs),
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def set_cancel_at_period_end(
        cls,
        provider_subscription_id: str,
        cancel_at_period_end: bool,
    ) -> SubscriptionResult:
        subscription = cls._call(
            "set_cancel_at_period_end",
            {
                "provider_subscription_id": provider_subscription_id,
                "cancel_at_period_end": cancel_at_period_end,
            },
            lambda: stripe.Subscription.modify(
                provider_subscription_id,
                cancel_at_period_end=cancel_at_period_end,
            ),
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def cancel_subscription(
        cls,
        provider_subscription_id: str,
        idempotency_key: str | None = None,
    ) -> SubscriptionResult:
        """Cancel immediately. Refunds are issued separately."""
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        subscription = cls._call(
            "cancel_subscription",
            {"provider_subscription_id": provider_subscription_id, **options},
            lambda: stripe.Subscription.cancel(provider_subscription_id, **options),
        )
        return cls._to_subscription_result(subscription)

    # =========================================================================
    # Invoices
    # =========================================================================

    @classmethod
    def retry_invoice_payment(cls, invoice_id: str, idempotency_key: str) -> InvoicePaymentResult:
        """
        Ask Stripe to charge an open invoice again.

        A decline surfaces as StripeCardDeclinedError; the outcome is also
        delivered as an invoice webhook, which is what resolves the
        dunning attempt.
        """
        invoice = cls._call(
            "retry_invoice_payment",
            {"invoice_id": invoice_id, "idempotency_key": idempotency_key},
            lambda: stripe.Invoice.pay(invoice_id, idempotency_key=idempotency_key),
        )
        raw = invoice.to_dict()
        return InvoicePaymentResult(
            id=raw["id"],
            status=raw.get("status", ""),
            paid=raw.get("status") == "paid",
            amount_paid_cents=raw.get("amount_paid", 0),
        )

    @classmethod
    def refund_latest_invoice(
        cls,
        provider_subscription_id: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> str | None:
        """
        Refund part of the subscription's most recent paid invoice.

        Returns:
            Refund ID (re_xxx), or None when there is no paid invoice with a
            PaymentIntent to refund against
        """
        log_context = {
            "provider_subscription_id": provider_subscription_id,
            "amount_cents": amount_cents,
        }
        invoices = cls._call(
            "list_paid_invoices",
            log_context,
            lambda: stripe.Invoice.list(subscription=provider_subscription_id, status="paid", limit=1),
        )
        data = invoices.to_dict().get("data") or []
        payment_intent = data[0].get("payment_intent") if data else None
        if not payment_intent:
            cls.get_logger().warning("No paid invoice to refund", extra=log_context)
            return None

        return cls.create_refund(payment_intent, amount_cents, idempotency_key).id

    @classmethod
    def create_refund(
        cls,
        payment_intent: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund a PaymentIntent, fully or in part.

        The charge.refunded webhook reports the outcome; callers do not
        change local state from the response.
        """
        options = {"metadata": metadata} if metadata else {}
        refund = cls._call(
            "create_refund",
            {"payment_intent": payment_intent, "amount_cents": amount_cents},
            lambda: stripe.Refund.create(
                payment_intent=payment_intent,
                amount=amount_cents,
                reason=reason,
                idempotency_key=idempotency_key,
                **options,
            ),
        )
        raw = refund.to_dict()
        return RefundResult(
            id=raw["id"],
            status=raw.get("status", ""),
            amount_cents=raw.get("amount", amount_cents),
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Returns:
            Parsed event data dict

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                stripe_code="signature_verification_failed",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Malformed webhook payload",
                stripe_code="invalid_payload",
                details={"error": str(e)},
            ) from e
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to domain exceptions.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInvalidRequestError: Invalid parameters or credentials
            StripeRateLimitError: Rate limited
            StripeTimeoutError: Request timed out
            StripeAPIUnavailableError: Network or Stripe-side failure
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(str(error), stripe_code=error.code) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            if "timed out" in str(error).lower():
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                ) from error
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        logger.error(
            f"Stripe API error: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise StripeAPIUnavailableError(
            "Stripe service error. Please retry.",
            stripe_code="api_error",
        ) from error
