"""
Pytest fixtures for billing tests.

Side effects are published through transaction.on_commit. Tests that
assert on them patch publish_effects and run the callbacks with
django_capture_on_commit_callbacks(execute=True):

    def test_confirmation_sent(published_effects, pending_order, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            OrderService.apply_payment_succeeded(pending_order.provider_payment_ref)
        assert published_effects.templates() == ["order_confirmation"]
"""

from unittest.mock import MagicMock, patch

import pytest

from billing.effects import EffectKind
from billing.state_machines import OrderState, PaymentState, SubscriptionState
from billing.tests.factories import (
    OrderFactory,
    PaymentFactory,
    SubscriptionFactory,
    SubscriptionPlanFactory,
    UserFactory,
)


class PublishedEffects:
    """Side effects handed to the (patched) publisher, in publish order."""

    def __init__(self, mock):
        self.mock = mock

    @property
    def all(self):
        return [effect for call in self.mock.call_args_list for effect in call.args[0]]

    def kinds(self):
        return [effect.kind for effect in self.all]

    def of(self, kind: EffectKind):
        return [effect for effect in self.all if effect.kind == kind]

    def templates(self):
        return [effect.payload["template"] for effect in self.of(EffectKind.NOTIFY)]


@pytest.fixture
def published_effects(mocker):
    """Patch publish_effects and collect everything published on commit."""
    return PublishedEffects(mocker.patch("billing.effects.publish_effects"))


@pytest.fixture
def mock_redis():
    """Mock Redis connection for distributed locks."""
    redis = MagicMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    with patch("billing.locks.get_redis_connection", return_value=redis):
        yield redis


# =============================================================================
# Users & Plans
# =============================================================================


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def plan(db):
    """Monthly plan at 30.00."""
    return SubscriptionPlanFactory(price_cents=3000)


@pytest.fixture
def premium_plan(db):
    """Monthly plan at 60.00."""
    return SubscriptionPlanFactory(price_cents=6000)


# =============================================================================
# Orders
# =============================================================================


@pytest.fixture
def pending_order(db, user):
    """PENDING order for 100.00 + 13.00 HST."""
    return OrderFactory(customer=user)


@pytest.fixture
def completed_order(db, user):
    """COMPLETED order with a SUCCEEDED payment of 11300."""
    order = OrderFactory(customer=user, state=OrderState.COMPLETED)
    PaymentFactory(order=order, state=PaymentState.SUCCEEDED, provider_charge_ref="ch_completed")
    return order


# =============================================================================
# Subscriptions
# =============================================================================


@pytest.fixture
def active_subscription(db, user, plan):
    return SubscriptionFactory(customer=user, plan=plan)


@pytest.fixture
def trialing_subscription(db, user, plan):
    return SubscriptionFactory(customer=user, plan=plan, state=SubscriptionState.TRIALING)


@pytest.fixture
def past_due_subscription(db, user, plan):
    return SubscriptionFactory(customer=user, plan=plan, state=SubscriptionState.PAST_DUE)
