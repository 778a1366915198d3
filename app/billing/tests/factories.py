"""
Factory Boy factories for billing test data.

Usage:
    from billing.tests.factories import OrderFactory, SubscriptionFactory

    # A pending order for 100.00 + Ontario HST
    order = OrderFactory()

    # A subscription in a specific state
    subscription = SubscriptionFactory(state=SubscriptionState.PAST_DUE)
"""

import datetime
import uuid

import factory
from django.utils import timezone

from billing.models import (
    DunningAttempt,
    Invoice,
    Order,
    Payment,
    PromoCode,
    Subscription,
    SubscriptionPlan,
    WebhookEvent,
)
from billing.state_machines import (
    BillingInterval,
    DunningOutcome,
    InvoiceStatus,
    OrderState,
    PaymentState,
    SubscriptionState,
    WebhookEventStatus,
)


class UserFactory(factory.django.DjangoModelFactory):
    """Minimal customer account."""

    class Meta:
        model = "auth.User"
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"customer{n}")
    email = factory.Sequence(lambda n: f"customer{n}@example.com")
    first_name = "Test"
    last_name = "Customer"
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True


class SubscriptionPlanFactory(factory.django.DjangoModelFactory):
    """Monthly plan at 30.00 CAD."""

    class Meta:
        model = SubscriptionPlan

    name = factory.Sequence(lambda n: f"Plan {n}")
    provider_price_id = factory.Sequence(lambda n: f"price_test_{n}")
    price_cents = 3000
    currency = "cad"
    interval = BillingInterval.MONTH
    trial_days = 0
    is_active = True


class PromoCodeFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PromoCode

    code = factory.Sequence(lambda n: f"SAVE{n}")
    provider_coupon_id = factory.Sequence(lambda n: f"coupon_test_{n}")
    percent_off = 10
    is_active = True


class OrderFactory(factory.django.DjangoModelFactory):
    """
    PENDING order for 100.00 in Ontario (13% HST).

    Example:
        order = OrderFactory(state=OrderState.COMPLETED)
    """

    class Meta:
        model = Order

    customer = factory.SubFactory(UserFactory)
    jurisdiction = "ON"
    currency = "cad"
    subtotal_cents = 10000
    tax_cents = 1300
    total_cents = 11300
    tax_breakdown = factory.LazyFunction(
        lambda: {"jurisdiction": "ON", "subtotal_cents": 10000, "total_tax_cents": 1300}
    )
    state = OrderState.PENDING
    provider_payment_ref = factory.Sequence(lambda n: f"pi_test_{n}_{uuid.uuid4().hex[:8]}")
    metadata = factory.LazyFunction(dict)


class PaymentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Payment

    order = factory.SubFactory(OrderFactory)
    provider_payment_intent_ref = factory.LazyAttribute(lambda o: o.order.provider_payment_ref)
    provider_charge_ref = factory.Sequence(lambda n: f"ch_test_{n}")
    amount_cents = factory.LazyAttribute(lambda o: o.order.total_cents)
    currency = "cad"
    state = PaymentState.PENDING


class SubscriptionFactory(factory.django.DjangoModelFactory):
    """
    ACTIVE subscription, 10 days into a 30-day period.

    Example:
        subscription = SubscriptionFactory(state=SubscriptionState.TRIALING)
    """

    class Meta:
        model = Subscription

    customer = factory.SubFactory(UserFactory)
    plan = factory.SubFactory(SubscriptionPlanFactory)
    provider_subscription_id = factory.Sequence(lambda n: f"sub_test_{n}_{uuid.uuid4().hex[:8]}")
    provider_customer_id = factory.Sequence(lambda n: f"cus_test_{n}")
    price_cents = factory.LazyAttribute(lambda o: o.plan.price_cents)
    quantity = 1
    currency = "cad"
    jurisdiction = "ON"
    state = SubscriptionState.ACTIVE
    current_period_start = factory.LazyFunction(lambda: timezone.now() - datetime.timedelta(days=10))
    current_period_end = factory.LazyAttribute(
        lambda o: o.current_period_start + datetime.timedelta(days=30)
    )
    metadata = factory.LazyFunction(dict)


class InvoiceFactory(factory.django.DjangoModelFactory):
    """OPEN invoice for 30.00 + 13% HST."""

    class Meta:
        model = Invoice

    subscription = factory.SubFactory(SubscriptionFactory)
    provider_invoice_id = factory.Sequence(lambda n: f"in_test_{n}_{uuid.uuid4().hex[:8]}")
    subtotal_cents = 3000
    tax_cents = 390
    total_cents = 3390
    amount_due_cents = 3390
    currency = "cad"
    status = InvoiceStatus.OPEN


class DunningAttemptFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = DunningAttempt

    subscription = factory.SubFactory(SubscriptionFactory)
    invoice = factory.SubFactory(
        InvoiceFactory, subscription=factory.SelfAttribute("..subscription")
    )
    attempt_number = 1
    scheduled_for = factory.LazyFunction(lambda: timezone.now() + datetime.timedelta(days=3))
    outcome = DunningOutcome.PENDING


class WebhookEventFactory(factory.django.DjangoModelFactory):
    """Stored provider event, PENDING by default."""

    class Meta:
        model = WebhookEvent

    provider_event_id = factory.Sequence(lambda n: f"evt_test_{n}_{uuid.uuid4().hex[:8]}")
    event_type = "payment_intent.succeeded"
    payload = factory.LazyAttribute(
        lambda o: {"id": o.provider_event_id, "type": o.event_type, "data": {"object": {}}}
    )
    status = WebhookEventStatus.PENDING
    attempts = 0
