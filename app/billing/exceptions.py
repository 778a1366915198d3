"""
Billing-specific exceptions.

This module maps billing failures onto the shared taxonomy in
core.exceptions so the webhook dispatcher can decide, from the exception
class alone, whether to acknowledge an event or ask for redelivery.

Exception Hierarchy:
    ValidationError
    ├── UnknownJurisdictionError - Jurisdiction code not in the tax tables
    ├── InvalidAmountError - Non-integer or negative money amount
    ├── InvalidPaymentMethodError - Provider rejected the payment method
    ├── InvalidPromoCodeError - Promo code unknown, inactive or expired
    ├── InvalidWebhookPayloadError - Envelope missing required fields
    └── DataIntegrityError - Provider amounts disagree with local records

    NotFoundError
    ├── PlanNotFoundError - Plan absent or inactive
    ├── OrderNotFoundError - No order for the provider payment reference
    ├── PaymentNotFoundError - No payment for the provider charge reference
    └── SubscriptionNotFoundError - No subscription for the provider id

    ConflictError
    ├── InvalidStateTransitionError - FSM transition not allowed
    ├── ReactivationNotAllowedError - Reactivation outside the allowed paths
    ├── RefundNotAllowedError - Order outside the refund policy
    ├── StaleRecordError - Optimistic locking conflict
    └── LockAcquisitionError - Distributed lock timeout

    ExternalServiceError
    └── StripeError - Base for all Stripe errors
        ├── StripeCardDeclinedError - Card declined (permanent)
        ├── StripeInvalidRequestError - Invalid request params (permanent)
        ├── StripeRateLimitError - Rate limited (transient, retry)
        ├── StripeAPIUnavailableError - API unavailable (transient, retry)
        └── StripeTimeoutError - Request timeout (transient, retry)

Usage:
    from billing.exceptions import DataIntegrityError

    if refunded_cents > payment.amount_cents:
        raise DataIntegrityError(
            "Refund exceeds original charge",
            details={"refunded_cents": refunded_cents, "charged_cents": payment.amount_cents},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Validation
# =============================================================================


class UnknownJurisdictionError(ValidationError):
    """Jurisdiction code is not one of the supported Canadian jurisdictions."""

    default_error_code: str = "UNKNOWN_JURISDICTION"


class InvalidAmountError(ValidationError):
    """Money amount is not a non-negative integer number of cents."""

    default_error_code: str = "INVALID_AMOUNT"


class InvalidPaymentMethodError(ValidationError):
    """
    The payment method could not be attached or charged.

    Raised during subscription creation when the provider declines the
    card or rejects the payment method id. The customer must supply a
    different payment method; retrying will not help.
    """

    default_error_code: str = "INVALID_PAYMENT_METHOD"


class InvalidPromoCodeError(ValidationError):
    """Promo code is unknown, inactive or expired."""

    default_error_code: str = "INVALID_PROMO_CODE"


class InvalidWebhookPayloadError(ValidationError):
    """Webhook envelope or object is missing required fields."""

    default_error_code: str = "INVALID_WEBHOOK_PAYLOAD"


class DataIntegrityError(ValidationError):
    """
    Provider-reported amounts disagree with local records.

    Surfaced to operators and never retried: redelivering the same event
    would report the same mismatch.

    Example:
        raise DataIntegrityError(
            "Charge amount does not match original payment",
            details={"charge_amount": 12000, "payment_amount": 11300},
        )
    """

    default_error_code: str = "DATA_INTEGRITY_ERROR"


# =============================================================================
# Not Found
# =============================================================================


class PlanNotFoundError(NotFoundError):
    """Subscription plan does not exist or is not active."""

    default_error_code: str = "PLAN_NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    """No order matches the provider payment reference."""

    default_error_code: str = "ORDER_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    """No payment matches the provider charge reference."""

    default_error_code: str = "PAYMENT_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """No subscription matches the given identifier."""

    default_error_code: str = "SUBSCRIPTION_NOT_FOUND"


# =============================================================================
# Conflicts
# =============================================================================


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with our standard error format.

    Example:
        try:
            order.complete()
        except TransitionNotAllowed:
            raise InvalidStateTransitionError(
                f"Cannot complete order from '{order.state}' state",
                details={"current_state": order.state, "transition": "complete"},
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class ReactivationNotAllowedError(ConflictError):
    """Subscription is neither pending period-end cancellation nor inside the grace window."""

    default_error_code: str = "REACTIVATION_NOT_ALLOWED"


class RefundNotAllowedError(ConflictError):
    """Order state or payment age falls outside the refund policy."""

    default_error_code: str = "REFUND_NOT_ALLOWED"


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The record changed between preview and commit. The caller should
    fetch a fresh preview and confirm again.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ExternalServiceError):
    """
    Base exception for all Stripe-related errors.

    Provides common attributes for Stripe error handling:
    - stripe_code: Stripe's internal error code
    - decline_code: Card decline code (if applicable)
    - is_retryable: Whether the operation can be retried

    Example:
        try:
            StripeAdapter.attach_payment_method(customer_id, payment_method_id)
        except StripeError as e:
            if e.is_retryable:
                raise TransientError(str(e)) from e
            raise InvalidPaymentMethodError(e.message) from e
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(StripeError):
    """
    Card was declined by the issuing bank.

    Permanent for the same card. The decline_code attribute carries the
    specific reason (insufficient_funds, expired_card, ...).
    """

    default_error_code: str = "CARD_DECLINED"
    is_retryable: bool = False


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe.

    Includes unknown object ids and failed webhook signature checks.
    Usually indicates a bug or a tampered request, not a user error.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Rate limited by Stripe API; retry with exponential backoff."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """
    Stripe API is temporarily unavailable.

    Covers network connectivity issues and Stripe 5xx responses.
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe API call timed out.

    The operation may have succeeded on Stripe's side. Retries reuse the
    same idempotency key so Stripe returns the original response.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Validation
    "UnknownJurisdictionError",
    "InvalidAmountError",
    "InvalidPaymentMethodError",
    "InvalidPromoCodeError",
    "InvalidWebhookPayloadError",
    "DataIntegrityError",
    # Not found
    "PlanNotFoundError",
    "OrderNotFoundError",
    "PaymentNotFoundError",
    "SubscriptionNotFoundError",
    # Conflicts
    "InvalidStateTransitionError",
    "ReactivationNotAllowedError",
    "RefundNotAllowedError",
    "StaleRecordError",
    "LockAcquisitionError",
    # Stripe-specific
    "StripeError",
    "StripeCardDeclinedError",
    "StripeInvalidRequestError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
]
