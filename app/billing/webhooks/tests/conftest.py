"""
Pytest fixtures for webhook tests.

Provides envelope builders, stored WebhookEvent records and the orders and
subscriptions the routed handlers act on.
"""

from unittest.mock import patch

import pytest

from billing.state_machines import OrderState, PaymentState, WebhookEventStatus
from billing.tests.factories import (
    OrderFactory,
    PaymentFactory,
    SubscriptionFactory,
    UserFactory,
    WebhookEventFactory,
)


def envelope(event_id: str, event_type: str, obj: dict) -> dict:
    """Stripe event envelope around a data object."""
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def published_effects(mocker):
    """Patch publish_effects; the mock records every committed batch."""
    return mocker.patch("billing.effects.publish_effects")


# =============================================================================
# Domain Objects
# =============================================================================


@pytest.fixture
def customer(db):
    return UserFactory()


@pytest.fixture
def pending_order(db, customer):
    return OrderFactory(customer=customer, provider_payment_ref="pi_webhook_123")


@pytest.fixture
def completed_order(db, customer):
    order = OrderFactory(
        customer=customer, provider_payment_ref="pi_webhook_done", state=OrderState.COMPLETED
    )
    PaymentFactory(order=order, state=PaymentState.SUCCEEDED, provider_charge_ref="ch_webhook_done")
    return order


@pytest.fixture
def active_subscription(db, customer):
    return SubscriptionFactory(customer=customer, provider_subscription_id="sub_webhook_123")


# =============================================================================
# Envelopes
# =============================================================================


@pytest.fixture
def payment_succeeded_event(pending_order):
    return envelope(
        "evt_pi_succeeded",
        "payment_intent.succeeded",
        {
            "id": pending_order.provider_payment_ref,
            "object": "payment_intent",
            "amount_received": pending_order.total_cents,
            "latest_charge": "ch_webhook_123",
        },
    )


@pytest.fixture
def invoice_failed_event(active_subscription):
    return envelope(
        "evt_invoice_failed",
        "invoice.payment_failed",
        {
            "id": "in_webhook_123",
            "object": "invoice",
            "subscription": active_subscription.provider_subscription_id,
            "subtotal": 3000,
            "amount_due": 3390,
        },
    )


@pytest.fixture
def unknown_event():
    return envelope("evt_unknown", "customer.created", {"id": "cus_123", "object": "customer"})


# =============================================================================
# Stored Events
# =============================================================================


@pytest.fixture
def processed_webhook_event(db):
    return WebhookEventFactory(
        provider_event_id="evt_processed",
        status=WebhookEventStatus.PROCESSED,
        attempts=1,
    )


@pytest.fixture
def transient_failed_webhook_event(db):
    return WebhookEventFactory(
        provider_event_id="evt_transient",
        event_type="customer.created",
        status=WebhookEventStatus.FAILED,
        failure_kind="transient",
        error_code="UNEXPECTED_ERROR",
        attempts=1,
    )


@pytest.fixture
def mock_verify_signature():
    """Patch signature verification to return the parsed body."""
    with patch("billing.webhooks.views.StripeAdapter.verify_webhook_signature") as mock:
        yield mock
