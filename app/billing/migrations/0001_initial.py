import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models

JURISDICTIONS = [
    ("AB", "AB"),
    ("BC", "BC"),
    ("MB", "MB"),
    ("NB", "NB"),
    ("NL", "NL"),
    ("NS", "NS"),
    ("NT", "NT"),
    ("NU", "NU"),
    ("ON", "ON"),
    ("PE", "PE"),
    ("QC", "QC"),
    ("SK", "SK"),
    ("YT", "YT"),
]


def _id():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier for this record",
            primary_key=True,
            serialize=False,
        ),
    )


def _timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


def _version():
    return (
        "version",
        models.PositiveIntegerField(
            default=1,
            help_text="Version for optimistic locking - incremented on each save",
        ),
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        # ---------------------------------------------------------------------
        # Orders
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="Order",
            fields=[
                _id(),
                *_timestamps(),
                _version(),
                (
                    "jurisdiction",
                    models.CharField(
                        choices=JURISDICTIONS,
                        help_text="Canadian province or territory used for tax",
                        max_length=2,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="cad",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                ("subtotal_cents", models.PositiveBigIntegerField(help_text="Sum of line items before tax")),
                (
                    "tax_cents",
                    models.PositiveBigIntegerField(default=0, help_text="Total tax across all components"),
                ),
                ("total_cents", models.PositiveBigIntegerField(help_text="subtotal_cents + tax_cents")),
                (
                    "tax_breakdown",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Per-component tax breakdown at checkout",
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                            ("partially_refunded", "Partially Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the order (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "provider_payment_ref",
                    models.CharField(
                        blank=True,
                        help_text="Provider PaymentIntent ID (pi_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "amount_refunded_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Cumulative amount refunded to the customer",
                    ),
                ),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the first refund was applied",
                        null=True,
                    ),
                ),
                ("failure_code", models.CharField(blank=True, max_length=100, null=True)),
                ("failure_message", models.TextField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "customer",
                    models.ForeignKey(
                        help_text="User placing the order",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Order",
                "verbose_name_plural": "Orders",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["customer", "state"], name="billing_ord_custome_3f1c2a_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(total_cents=models.F("subtotal_cents") + models.F("tax_cents")),
                        name="billing_order_total_matches_parts",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(amount_refunded_cents__lte=models.F("total_cents")),
                        name="billing_order_refund_within_total",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "product_ref",
                    models.CharField(
                        help_text="Catalog reference of the purchased product",
                        max_length=255,
                    ),
                ),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("unit_price_cents", models.PositiveBigIntegerField()),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="billing.order",
                    ),
                ),
            ],
            options={
                "verbose_name": "Order Item",
                "verbose_name_plural": "Order Items",
                "ordering": ["created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(quantity__gt=0),
                        name="billing_order_item_quantity_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                _id(),
                *_timestamps(),
                _version(),
                (
                    "provider_payment_intent_ref",
                    models.CharField(
                        db_index=True,
                        help_text="Provider PaymentIntent ID (pi_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "provider_charge_ref",
                    models.CharField(
                        blank=True,
                        help_text="Provider Charge ID (ch_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="cad", max_length=3)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payment (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("succeeded_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_code", models.CharField(blank=True, max_length=100, null=True)),
                ("failure_message", models.TextField(blank=True, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.order",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(state="succeeded"),
                        fields=("order",),
                        name="billing_one_succeeded_payment_per_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Refund",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "provider_refund_id",
                    models.CharField(
                        help_text="Provider Refund ID (re_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("amount_cents", models.PositiveBigIntegerField()),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("duplicate", "Duplicate"),
                            ("fraudulent", "Fraudulent"),
                            ("requested_by_customer", "Requested by customer"),
                            ("other", "Other"),
                        ],
                        default="requested_by_customer",
                        max_length=30,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                        ],
                        default="succeeded",
                        max_length=20,
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="billing.payment",
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund",
                "verbose_name_plural": "Refunds",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="billing_refund_amount_positive",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Subscriptions
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=255)),
                (
                    "provider_price_id",
                    models.CharField(
                        help_text="Provider Price ID (price_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "price_cents",
                    models.PositiveBigIntegerField(help_text="Price per unit per interval, before tax"),
                ),
                ("currency", models.CharField(default="cad", max_length=3)),
                (
                    "interval",
                    models.CharField(
                        choices=[("month", "Monthly"), ("year", "Yearly")],
                        default="month",
                        max_length=10,
                    ),
                ),
                (
                    "trial_days",
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text="Default trial length for new subscriptions",
                    ),
                ),
                ("is_active", models.BooleanField(db_index=True, default=True)),
            ],
            options={
                "verbose_name": "Subscription Plan",
                "verbose_name_plural": "Subscription Plans",
                "ordering": ["price_cents"],
            },
        ),
        migrations.CreateModel(
            name="PromoCode",
            fields=[
                _id(),
                *_timestamps(),
                ("code", models.CharField(max_length=50, unique=True)),
                (
                    "provider_coupon_id",
                    models.CharField(help_text="Provider Coupon ID", max_length=255),
                ),
                ("percent_off", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("amount_off_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "verbose_name": "Promo Code",
                "verbose_name_plural": "Promo Codes",
                "ordering": ["code"],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(percent_off__isnull=False, amount_off_cents__isnull=True)
                            | models.Q(percent_off__isnull=True, amount_off_cents__isnull=False)
                        ),
                        name="billing_promo_single_discount",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(percent_off__isnull=True) | models.Q(percent_off__lte=100),
                        name="billing_promo_percent_within_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                _id(),
                *_timestamps(),
                _version(),
                (
                    "provider_subscription_id",
                    models.CharField(
                        blank=True,
                        help_text="Provider Subscription ID (sub_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "provider_customer_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Provider Customer ID (cus_xxx)",
                        max_length=255,
                    ),
                ),
                ("price_cents", models.PositiveBigIntegerField()),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("currency", models.CharField(default="cad", max_length=3)),
                ("jurisdiction", models.CharField(choices=JURISDICTIONS, max_length=2)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("cancelled", "Cancelled"),
                            ("unpaid", "Unpaid"),
                            ("paused", "Paused"),
                        ],
                        db_index=True,
                        default="active",
                        help_text="Current state of the subscription (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("trial_start", models.DateTimeField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                (
                    "cancel_at_period_end",
                    models.BooleanField(
                        default=False,
                        help_text="Whether the subscription ends when the current period ends",
                    ),
                ),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, default="", max_length=255)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.subscriptionplan",
                    ),
                ),
                (
                    "promo_code",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscriptions",
                        to="billing.promocode",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["customer", "state"], name="billing_sub_custome_8d2e4b_idx"),
                    models.Index(fields=["state", "current_period_end"], name="billing_sub_state_5a7c91_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(current_period_start__lt=models.F("current_period_end")),
                        name="billing_subscription_period_ordered",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("state", "cancelled"), ("cancel_at_period_end", True), _negated=True
                        ),
                        name="billing_subscription_cancel_modes_exclusive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(quantity__gt=0),
                        name="billing_subscription_quantity_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "provider_invoice_id",
                    models.CharField(
                        help_text="Provider Invoice ID (in_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("subtotal_cents", models.PositiveBigIntegerField(default=0)),
                ("tax_cents", models.PositiveBigIntegerField(default=0)),
                ("total_cents", models.PositiveBigIntegerField(default=0)),
                ("tax_breakdown", models.JSONField(blank=True, default=dict)),
                ("amount_paid_cents", models.PositiveBigIntegerField(default=0)),
                ("amount_due_cents", models.PositiveBigIntegerField(default=0)),
                ("currency", models.CharField(default="cad", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("open", "Open"),
                            ("paid", "Paid"),
                            ("void", "Void"),
                            ("uncollectible", "Uncollectible"),
                        ],
                        db_index=True,
                        default="open",
                        max_length=20,
                    ),
                ),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["subscription", "status"], name="billing_inv_subscri_6b0f3d_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(total_cents=models.F("subtotal_cents") + models.F("tax_cents")),
                        name="billing_invoice_total_matches_parts",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DunningAttempt",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "attempt_number",
                    models.PositiveSmallIntegerField(help_text="1-based position in the retry schedule"),
                ),
                ("scheduled_for", models.DateTimeField(db_index=True)),
                (
                    "executed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the retry was submitted to the provider",
                        null=True,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("abandoned", "Abandoned"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="dunning_attempts",
                        to="billing.invoice",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="dunning_attempts",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dunning Attempt",
                "verbose_name_plural": "Dunning Attempts",
                "ordering": ["subscription", "attempt_number"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("subscription", "invoice", "attempt_number"),
                        name="billing_unique_dunning_attempt",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Webhooks
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "provider_event_id",
                    models.CharField(
                        help_text="Provider Event ID (evt_xxx) - unique for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Provider event type (e.g., 'payment_intent.succeeded')",
                        max_length=100,
                    ),
                ),
                ("payload", models.JSONField(help_text="Full webhook envelope (JSON)")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("error_code", models.CharField(blank=True, max_length=100, null=True)),
                (
                    "failure_kind",
                    models.CharField(
                        blank=True,
                        help_text="validation / not_found / conflict / transient",
                        max_length=20,
                        null=True,
                    ),
                ),
                (
                    "attempts",
                    models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts"),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="billing_web_status_2c9e17_idx"),
                    models.Index(
                        fields=["status", "failure_kind", "attempts"],
                        name="billing_web_status_e41a08_idx",
                    ),
                ],
            },
        ),
    ]
