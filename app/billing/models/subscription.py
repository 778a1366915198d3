"""
Subscription models for recurring billing.

SubscriptionPlan is the catalog price a customer subscribes to, PromoCode
a discount applied at signup, and Subscription the recurring relationship
itself, kept in step with the provider's subscription object.

Usage:
    from billing.models import Subscription
    from billing.state_machines import SubscriptionState

    subscription = Subscription.objects.get(provider_subscription_id="sub_123")

    # State transitions using django-fsm
    subscription.mark_past_due()  # active -> past_due
    subscription.save()
"""

from __future__ import annotations

import calendar
import datetime
import math

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from billing.models.order import JURISDICTION_CHOICES
from billing.state_machines import BillingInterval, SubscriptionState


def advance_period(start: datetime.datetime, interval: str, count: int = 1) -> datetime.datetime:
    """
    Return the end of a billing period starting at ``start``.

    Calendar arithmetic: Jan 31 + 1 month is Feb 28/29, matching how the
    provider anchors monthly cycles.
    """
    months = count * (12 if interval == BillingInterval.YEAR else 1)
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionPlan(UUIDPrimaryKeyMixin, BaseModel):
    """
    A recurring price customers can subscribe to.

    Inactive plans stay in the table for existing subscriptions but
    cannot be used for new ones.
    """

    name = models.CharField(max_length=255)

    provider_price_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider Price ID (price_xxx)",
    )

    price_cents = models.PositiveBigIntegerField(
        help_text="Price per unit per interval, before tax",
    )

    currency = models.CharField(max_length=3, default="cad")

    interval = models.CharField(
        max_length=10,
        choices=BillingInterval.choices,
        default=BillingInterval.MONTH,
    )

    trial_days = models.PositiveSmallIntegerField(
        default=0,
        help_text="Default trial length for new subscriptions",
    )

    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        ordering = ["price_cents"]
        verbose_name = "Subscription Plan"
        verbose_name_plural = "Subscription Plans"

    def __str__(self) -> str:
        return f"{self.name} ({self.price_cents / 100:.2f} {self.currency.upper()}/{self.interval})"


class PromoCode(UUIDPrimaryKeyMixin, BaseModel):
    """
    Signup discount mirrored from a provider coupon.

    Exactly one of percent_off or amount_off_cents is set.
    """

    code = models.CharField(max_length=50, unique=True)

    provider_coupon_id = models.CharField(
        max_length=255,
        help_text="Provider Coupon ID",
    )

    percent_off = models.PositiveSmallIntegerField(null=True, blank=True)

    amount_off_cents = models.PositiveBigIntegerField(null=True, blank=True)

    expires_at = models.DateTimeField(null=True, blank=True)

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["code"]
        verbose_name = "Promo Code"
        verbose_name_plural = "Promo Codes"
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(percent_off__isnull=False, amount_off_cents__isnull=True)
                    | Q(percent_off__isnull=True, amount_off_cents__isnull=False)
                ),
                name="billing_promo_single_discount",
            ),
            models.CheckConstraint(
                condition=Q(percent_off__isnull=True) | Q(percent_off__lte=100),
                name="billing_promo_percent_within_range",
            ),
        ]

    def __str__(self) -> str:
        return self.code

    def is_redeemable(self, at: datetime.datetime | None = None) -> bool:
        at = at or timezone.now()
        return self.is_active and (self.expires_at is None or self.expires_at > at)

    def discount_for(self, amount_cents: int) -> int:
        """Discount in cents on ``amount_cents``, never more than the amount."""
        if self.percent_off is not None:
            return amount_cents * self.percent_off // 100
        return min(self.amount_off_cents or 0, amount_cents)


class Subscription(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    Tracks a recurring subscription relationship.

    Uses django-fsm for state machine management and optimistic
    locking via version field for concurrency control.

    State Flow:
        TRIALING -> ACTIVE (trial converted)
        ACTIVE/TRIALING -> PAST_DUE (invoice payment failed)
        PAST_DUE/UNPAID -> ACTIVE (invoice payment recovered)
        PAST_DUE -> UNPAID (provider stopped retrying)
        ACTIVE/TRIALING <-> PAUSED
        any non-cancelled -> CANCELLED
        CANCELLED -> ACTIVE (administrative reactivation)

    cancel_at_period_end is orthogonal to the state. A CANCELLED row never
    carries the flag (check constraint).

    Fields:
        customer: Subscribing user
        plan: Plan at signup or after the latest committed change
        price_cents/quantity: Snapshot used for proration and refunds
        jurisdiction: Tax jurisdiction of the billing address
        current_period_start/end: Current billing period, start < end
        trial_start/trial_end: Trial bounds when trialing
        version: Optimistic locking version
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="billing_subscriptions",
    )

    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )

    promo_code = models.ForeignKey(
        PromoCode,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
    )

    # ==========================================================================
    # Provider Integration
    # ==========================================================================

    provider_subscription_id = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Provider Subscription ID (sub_xxx)",
    )

    provider_customer_id = models.CharField(
        max_length=255,
        db_index=True,
        blank=True,
        default="",
        help_text="Provider Customer ID (cus_xxx)",
    )

    # ==========================================================================
    # Price Snapshot
    # ==========================================================================

    price_cents = models.PositiveBigIntegerField()

    quantity = models.PositiveIntegerField(default=1)

    currency = models.CharField(max_length=3, default="cad")

    jurisdiction = models.CharField(max_length=2, choices=JURISDICTION_CHOICES)

    # ==========================================================================
    # State & Period
    # ==========================================================================

    state = FSMField(
        default=SubscriptionState.ACTIVE,
        choices=SubscriptionState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the subscription (managed by FSM)",
    )

    current_period_start = models.DateTimeField()

    current_period_end = models.DateTimeField()

    trial_start = models.DateTimeField(null=True, blank=True)

    trial_end = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Cancellation
    # ==========================================================================

    cancel_at_period_end = models.BooleanField(
        default=False,
        help_text="Whether the subscription ends when the current period ends",
    )

    cancelled_at = models.DateTimeField(null=True, blank=True)

    ended_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.CharField(max_length=255, blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(fields=["customer", "state"], name="billing_sub_custome_8d2e4b_idx"),
            models.Index(fields=["state", "current_period_end"], name="billing_sub_state_5a7c91_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(current_period_start__lt=F("current_period_end")),
                name="billing_subscription_period_ordered",
            ),
            models.CheckConstraint(
                condition=~Q(state=SubscriptionState.CANCELLED, cancel_at_period_end=True),
                name="billing_subscription_cancel_modes_exclusive",
            ),
            models.CheckConstraint(
                condition=Q(quantity__gt=0),
                name="billing_subscription_quantity_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Subscription({self.id}, {self.state}, {self.plan_id})"

    @property
    def amount_cents(self) -> int:
        """Recurring amount before tax."""
        return self.price_cents * self.quantity

    @property
    def is_cancelled(self) -> bool:
        return self.state == SubscriptionState.CANCELLED

    def period_days(self, now: datetime.datetime | None = None) -> tuple[int, int]:
        """
        Return (remaining_days, total_days) of the current period.

        Partial days count as whole days; remaining is clamped to [0, total].
        """
        now = now or timezone.now()
        total_seconds = (self.current_period_end - self.current_period_start).total_seconds()
        remaining_seconds = (self.current_period_end - now).total_seconds()
        total_days = max(1, math.ceil(total_seconds / 86400))
        remaining_days = max(0, math.ceil(remaining_seconds / 86400))
        return min(remaining_days, total_days), total_days

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=SubscriptionState.TRIALING, target=SubscriptionState.ACTIVE)
    def activate(self):
        """Trial converted. Transition: TRIALING -> ACTIVE"""

    @transition(
        field=state,
        source=[SubscriptionState.ACTIVE, SubscriptionState.TRIALING],
        target=SubscriptionState.PAST_DUE,
    )
    def mark_past_due(self):
        """
        Invoice payment failed.

        Transition: ACTIVE/TRIALING -> PAST_DUE
        """

    @transition(
        field=state,
        source=[SubscriptionState.PAST_DUE, SubscriptionState.UNPAID],
        target=SubscriptionState.ACTIVE,
    )
    def recover(self):
        """
        Outstanding invoice paid.

        Transition: PAST_DUE/UNPAID -> ACTIVE
        """

    @transition(field=state, source=SubscriptionState.PAST_DUE, target=SubscriptionState.UNPAID)
    def mark_unpaid(self):
        """Provider stopped collecting. Transition: PAST_DUE -> UNPAID"""

    @transition(
        field=state,
        source=[SubscriptionState.ACTIVE, SubscriptionState.TRIALING],
        target=SubscriptionState.PAUSED,
    )
    def pause(self):
        """Transition: ACTIVE/TRIALING -> PAUSED"""

    @transition(field=state, source=SubscriptionState.PAUSED, target=SubscriptionState.ACTIVE)
    def resume(self):
        """Transition: PAUSED -> ACTIVE"""

    @transition(
        field=state,
        source=[
            SubscriptionState.TRIALING,
            SubscriptionState.ACTIVE,
            SubscriptionState.PAST_DUE,
            SubscriptionState.UNPAID,
            SubscriptionState.PAUSED,
        ],
        target=SubscriptionState.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        """
        End the subscription immediately.

        Transition: any non-cancelled -> CANCELLED

        Clears cancel_at_period_end so the two cancellation modes never
        coexist.
        """
        now = timezone.now()
        self.cancel_at_period_end = False
        self.cancelled_at = self.cancelled_at or now
        self.ended_at = now
        if reason:
            self.cancellation_reason = reason

    @transition(field=state, source=SubscriptionState.CANCELLED, target=SubscriptionState.ACTIVE)
    def reactivate(self):
        """
        Administrative reactivation inside the grace window.

        Transition: CANCELLED -> ACTIVE
        """
        self.cancelled_at = None
        self.ended_at = None
        self.cancellation_reason = ""
