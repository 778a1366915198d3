"""
State enums for billing models.

This module defines all state enums used by billing models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Order States:
    pending → completed → refunded / partially_refunded
    pending → cancelled
    partially_refunded → partially_refunded / refunded (further refunds)

Payment States:
    pending → succeeded
    pending → failed

Subscription States:
    trialing/active → past_due → active (recovered)
    past_due → unpaid
    active → paused → active
    any non-cancelled → cancelled
    cancelled → active (administrative reactivation within grace window)

Invoice Status:
    open → paid
    open → void / uncollectible

Dunning Attempt Outcome:
    pending → succeeded / failed / abandoned
"""

from django.db import models


class OrderState(models.TextChoices):
    """
    States for the Order model lifecycle.

    Terminal states: CANCELLED, REFUNDED

    State Flow:
        PENDING → COMPLETED (payment succeeded)
        PENDING → CANCELLED (payment failed)

    Refund Flow:
        COMPLETED → REFUNDED / PARTIALLY_REFUNDED
        PARTIALLY_REFUNDED → REFUNDED / PARTIALLY_REFUNDED
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"


class PaymentState(models.TextChoices):
    """
    States for a single charge attempt against an order.

    At most one SUCCEEDED payment exists per order.
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class RefundStatus(models.TextChoices):
    """Provider-reported status of a refund object."""

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


class RefundReason(models.TextChoices):
    """Refund reasons accepted by the provider."""

    DUPLICATE = "duplicate", "Duplicate"
    FRAUDULENT = "fraudulent", "Fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer", "Requested by customer"
    OTHER = "other", "Other"


class SubscriptionState(models.TextChoices):
    """
    States for the Subscription model lifecycle.

    Terminal state: CANCELLED (left only by administrative reactivation)

    State Flow:
        TRIALING → ACTIVE (trial ends, first invoice paid)
        ACTIVE → PAST_DUE (invoice payment failed)
        PAST_DUE → ACTIVE (invoice payment recovered)
        PAST_DUE → UNPAID (provider gave up collecting)
        ACTIVE ⇄ PAUSED

    Cancellation Flow:
        Any non-cancelled state → CANCELLED

    cancel_at_period_end is a separate flag on the model, not a state.
    """

    TRIALING = "trialing", "Trialing"
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past Due"
    CANCELLED = "cancelled", "Cancelled"
    UNPAID = "unpaid", "Unpaid"
    PAUSED = "paused", "Paused"


class InvoiceStatus(models.TextChoices):
    """
    Status of a billing-cycle invoice.

    A PAID invoice is never mutated again.
    """

    OPEN = "open", "Open"
    PAID = "paid", "Paid"
    VOID = "void", "Void"
    UNCOLLECTIBLE = "uncollectible", "Uncollectible"


class DunningOutcome(models.TextChoices):
    """
    Outcome of a scheduled payment retry.

    State Flow:
        PENDING → SUCCEEDED (invoice paid)
        PENDING → FAILED (invoice still unpaid after the retry)
        PENDING → ABANDONED (an earlier attempt succeeded or the
                             subscription was cancelled)
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    ABANDONED = "abandoned", "Abandoned"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    Tracks the lifecycle of webhook event processing for idempotency.
    Only PROCESSED stops further handling of the same event id.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (can retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class ProrationPolicy(models.TextChoices):
    """How the provider bills a mid-cycle subscription change."""

    CREATE_PRORATIONS = "create_prorations", "Create prorations"
    NONE = "none", "None"
    ALWAYS_INVOICE = "always_invoice", "Always invoice"


class BillingCycleAnchor(models.TextChoices):
    """Whether a subscription change resets the billing period."""

    UNCHANGED = "unchanged", "Unchanged"
    NOW = "now", "Now"


class BillingInterval(models.TextChoices):
    """Recurring interval of a subscription plan."""

    MONTH = "month", "Monthly"
    YEAR = "year", "Yearly"


__all__ = [
    "OrderState",
    "PaymentState",
    "RefundStatus",
    "RefundReason",
    "SubscriptionState",
    "InvoiceStatus",
    "DunningOutcome",
    "WebhookEventStatus",
    "ProrationPolicy",
    "BillingCycleAnchor",
    "BillingInterval",
]
