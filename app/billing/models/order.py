"""
Order, OrderItem, Payment and Refund models for one-time purchases.

Order is the checkout aggregate: priced line items, a tax breakdown and
a total, moved through its lifecycle by provider webhooks. Payment is
one charge attempt against an order. Refund is one provider refund
object and is append-only.

Usage:
    from billing.models import Order, Payment
    from billing.state_machines import OrderState

    order = Order.objects.create(
        customer=user,
        jurisdiction="ON",
        subtotal_cents=10000,
        tax_cents=1300,
        total_cents=11300,
        provider_payment_ref="pi_123",
    )

    # State transitions using django-fsm
    order.complete()  # pending -> completed
    order.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from billing.state_machines import OrderState, PaymentState, RefundReason, RefundStatus
from billing.tax.rates import Jurisdiction

JURISDICTION_CHOICES = [(j.value, j.value) for j in Jurisdiction]


class Order(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A one-time purchase awaiting or holding a provider payment.

    Orders are never deleted. Status moves only through the transitions
    below; CANCELLED and REFUNDED are terminal.

    State Flow:
        PENDING -> COMPLETED (payment succeeded)
        PENDING -> CANCELLED (payment failed)

    Refund Flow:
        COMPLETED/PARTIALLY_REFUNDED -> REFUNDED/PARTIALLY_REFUNDED

    Fields:
        customer: Purchasing user
        jurisdiction: Tax jurisdiction the totals were computed for
        subtotal_cents/tax_cents/total_cents: Money, total = subtotal + tax
        tax_breakdown: Serialized TaxCalculation
        state: Current FSM state
        provider_payment_ref: Provider PaymentIntent id used to find the order
        amount_refunded_cents: Cumulative refunded amount
        version: Optimistic locking version
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="billing_orders",
        help_text="User placing the order",
    )

    # ==========================================================================
    # Amounts & Tax
    # ==========================================================================

    jurisdiction = models.CharField(
        max_length=2,
        choices=JURISDICTION_CHOICES,
        help_text="Canadian province or territory used for tax",
    )

    currency = models.CharField(
        max_length=3,
        default="cad",
        help_text="ISO 4217 currency code (lowercase)",
    )

    subtotal_cents = models.PositiveBigIntegerField(
        help_text="Sum of line items before tax",
    )

    tax_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Total tax across all components",
    )

    total_cents = models.PositiveBigIntegerField(
        help_text="subtotal_cents + tax_cents",
    )

    tax_breakdown = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-component tax breakdown at checkout",
    )

    # ==========================================================================
    # State & Provider Reference
    # ==========================================================================

    state = FSMField(
        default=OrderState.PENDING,
        choices=OrderState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the order (managed by FSM)",
    )

    provider_payment_ref = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Provider PaymentIntent ID (pi_xxx)",
    )

    amount_refunded_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Cumulative amount refunded to the customer",
    )

    # ==========================================================================
    # Timestamps & Failure Info
    # ==========================================================================

    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the first refund was applied",
    )

    failure_code = models.CharField(max_length=100, null=True, blank=True)
    failure_message = models.TextField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Order"
        verbose_name_plural = "Orders"
        indexes = [
            models.Index(fields=["customer", "state"], name="billing_ord_custome_3f1c2a_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_cents=F("subtotal_cents") + F("tax_cents")),
                name="billing_order_total_matches_parts",
            ),
            models.CheckConstraint(
                condition=Q(amount_refunded_cents__lte=F("total_cents")),
                name="billing_order_refund_within_total",
            ),
        ]

    def __str__(self) -> str:
        return f"Order({self.id}, {self.state}, {self.total_cents / 100:.2f} {self.currency.upper()})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=OrderState.PENDING, target=OrderState.COMPLETED)
    def complete(self):
        """Payment captured. Transition: PENDING -> COMPLETED"""
        self.completed_at = timezone.now()

    @transition(field=state, source=OrderState.PENDING, target=OrderState.CANCELLED)
    def cancel(self, failure_code: str | None = None, failure_message: str | None = None):
        """
        Cancel after a failed payment.

        Transition: PENDING -> CANCELLED

        Nothing leaves CANCELLED; a new checkout creates a new order.
        """
        self.cancelled_at = timezone.now()
        self.failure_code = failure_code
        self.failure_message = failure_message

    @transition(
        field=state,
        source=[OrderState.COMPLETED, OrderState.PARTIALLY_REFUNDED],
        target=OrderState.REFUNDED,
    )
    def refund_full(self):
        """Transition: COMPLETED/PARTIALLY_REFUNDED -> REFUNDED"""
        if self.refunded_at is None:
            self.refunded_at = timezone.now()

    @transition(
        field=state,
        source=[OrderState.COMPLETED, OrderState.PARTIALLY_REFUNDED],
        target=OrderState.PARTIALLY_REFUNDED,
    )
    def refund_partial(self):
        """
        Transition: COMPLETED/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED

        Subsequent partial refunds of the same charge stay here until the
        cumulative amount reaches the original charge.
        """
        if self.refunded_at is None:
            self.refunded_at = timezone.now()


class OrderItem(UUIDPrimaryKeyMixin, BaseModel):
    """A priced line on an order. Immutable after checkout."""

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name="items",
    )

    product_ref = models.CharField(
        max_length=255,
        help_text="Catalog reference of the purchased product",
    )

    description = models.CharField(max_length=255, blank=True, default="")

    quantity = models.PositiveIntegerField(default=1)

    unit_price_cents = models.PositiveBigIntegerField()

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Order Item"
        verbose_name_plural = "Order Items"
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity__gt=0),
                name="billing_order_item_quantity_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"OrderItem({self.product_ref} x{self.quantity})"

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class Payment(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    One attempted charge against an order.

    At most one SUCCEEDED payment exists per order, enforced by a partial
    unique constraint.

    State Flow:
        PENDING -> SUCCEEDED
        PENDING -> FAILED
    """

    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name="payments",
    )

    provider_payment_intent_ref = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Provider PaymentIntent ID (pi_xxx)",
    )

    provider_charge_ref = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Provider Charge ID (ch_xxx)",
    )

    amount_cents = models.PositiveBigIntegerField()

    currency = models.CharField(max_length=3, default="cad")

    state = FSMField(
        default=PaymentState.PENDING,
        choices=PaymentState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payment (managed by FSM)",
    )

    succeeded_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    failure_code = models.CharField(max_length=100, null=True, blank=True)
    failure_message = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(state=PaymentState.SUCCEEDED),
                name="billing_one_succeeded_payment_per_order",
            ),
        ]

    def __str__(self) -> str:
        return f"Payment({self.provider_payment_intent_ref}, {self.state})"

    @transition(field=state, source=PaymentState.PENDING, target=PaymentState.SUCCEEDED)
    def succeed(self, charge_ref: str | None = None):
        """Transition: PENDING -> SUCCEEDED"""
        self.succeeded_at = timezone.now()
        if charge_ref:
            self.provider_charge_ref = charge_ref

    @transition(field=state, source=PaymentState.PENDING, target=PaymentState.FAILED)
    def fail(self, failure_code: str | None = None, failure_message: str | None = None):
        """Transition: PENDING -> FAILED"""
        self.failed_at = timezone.now()
        self.failure_code = failure_code
        self.failure_message = failure_message


class Refund(UUIDPrimaryKeyMixin, BaseModel):
    """
    A provider refund object applied to a payment.

    Append-only: one row per provider refund id, created once and never
    updated or deleted.
    """

    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name="refunds",
    )

    provider_refund_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider Refund ID (re_xxx)",
    )

    amount_cents = models.PositiveBigIntegerField()

    reason = models.CharField(
        max_length=30,
        choices=RefundReason.choices,
        default=RefundReason.REQUESTED_BY_CUSTOMER,
    )

    status = models.CharField(
        max_length=20,
        choices=RefundStatus.choices,
        default=RefundStatus.SUCCEEDED,
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="billing_refund_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Refund({self.provider_refund_id}, {self.amount_cents})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Refund records are append-only")
        super().save(*args, **kwargs)
