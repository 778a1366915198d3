"""
End-to-end billing workflows driven through the webhook dispatcher.

Tests cover:
- Checkout order paid, partially refunded, then fully refunded
- Subscription dunning: three failed retries end in cancellation
- Subscription recovering when a retry succeeds
"""

import pytest

from billing.dunning.service import DunningService
from billing.effects import EffectKind
from billing.models import DunningAttempt, Order
from billing.services import OrderService
from billing.state_machines import DunningOutcome, OrderState, SubscriptionState, WebhookEventStatus
from billing.webhooks import WebhookDispatcher


def envelope(event_id, event_type, obj):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


# =============================================================================
# Orders
# =============================================================================


class TestOrderLifecycle:
    def test_checkout_pay_and_refund(self, db, user, published_effects, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            result = OrderService.create_order(
                user,
                [{"product_ref": "course_101", "quantity": 2, "unit_price_cents": 5000}],
                jurisdiction="ON",
                provider_payment_ref="pi_flow",
            )
        assert result.success
        order = result.data
        assert (order.subtotal_cents, order.tax_cents, order.total_cents) == (10000, 1300, 11300)

        with django_capture_on_commit_callbacks(execute=True):
            paid = WebhookDispatcher.dispatch(
                envelope(
                    "evt_flow_paid",
                    "payment_intent.succeeded",
                    {"id": "pi_flow", "amount_received": 11300, "latest_charge": "ch_flow"},
                )
            )
        assert paid.status == WebhookEventStatus.PROCESSED
        assert Order.objects.get(pk=order.pk).state == OrderState.COMPLETED
        assert published_effects.templates() == ["order_confirmation"]
        assert len(published_effects.of(EffectKind.GRANT_ACCESS)) == 1

        charge = {"id": "ch_flow", "payment_intent": "pi_flow", "amount": 11300}
        WebhookDispatcher.dispatch(
            envelope(
                "evt_flow_refund_1",
                "charge.refunded",
                {
                    **charge,
                    "amount_refunded": 3000,
                    "refunded": False,
                    "refunds": {"data": [{"id": "re_flow_1", "amount": 3000}]},
                },
            )
        )
        order = Order.objects.get(pk=order.pk)
        assert order.state == OrderState.PARTIALLY_REFUNDED
        assert order.amount_refunded_cents == 3000

        WebhookDispatcher.dispatch(
            envelope(
                "evt_flow_refund_2",
                "charge.refunded",
                {
                    **charge,
                    "amount_refunded": 11300,
                    "refunded": True,
                    "refunds": {"data": [{"id": "re_flow_2", "amount": 8300}]},
                },
            )
        )
        order = Order.objects.get(pk=order.pk)
        assert order.state == OrderState.REFUNDED
        assert order.amount_refunded_cents == 11300

    def test_replayed_payment_is_duplicate(self, db, pending_order):
        event = envelope(
            "evt_replay",
            "payment_intent.succeeded",
            {"id": pending_order.provider_payment_ref, "amount_received": pending_order.total_cents},
        )

        first = WebhookDispatcher.dispatch(event)
        second = WebhookDispatcher.dispatch(event)

        assert first.duplicate is False
        assert second.duplicate is True
        assert Order.objects.get(pk=pending_order.pk).payments.count() == 1


# =============================================================================
# Subscriptions & Dunning
# =============================================================================


class TestDunningLifecycle:
    @pytest.fixture
    def invoice_event(self, active_subscription):
        def build(event_id, event_type="invoice.payment_failed", **extra):
            return envelope(
                event_id,
                event_type,
                {
                    "id": "in_flow",
                    "subscription": active_subscription.provider_subscription_id,
                    "subtotal": 3000,
                    "amount_due": 3390,
                    **extra,
                },
            )

        return build

    @staticmethod
    def execute_latest(subscription):
        attempt = (
            DunningAttempt.objects.filter(subscription=subscription, outcome=DunningOutcome.PENDING)
            .order_by("-attempt_number")
            .first()
        )
        assert DunningService.begin_attempt(attempt.id) is not None
        return attempt

    def test_exhausted_retries_cancel(
        self, db, active_subscription, invoice_event, published_effects, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            WebhookDispatcher.dispatch(invoice_event("evt_fail_0"))
            for n in range(1, 4):
                self.execute_latest(active_subscription)
                WebhookDispatcher.dispatch(invoice_event(f"evt_fail_{n}"))

        active_subscription.refresh_from_db()
        assert active_subscription.state == SubscriptionState.CANCELLED
        assert active_subscription.cancellation_reason == "payment_failed"

        attempts = DunningAttempt.objects.filter(subscription=active_subscription).order_by("attempt_number")
        assert [a.attempt_number for a in attempts] == [1, 2, 3]
        assert {a.outcome for a in attempts} == {DunningOutcome.FAILED}
        assert len(published_effects.of(EffectKind.SCHEDULE_RETRY)) == 3
        assert "subscription_cancelled_nonpayment" in published_effects.templates()

        late = WebhookDispatcher.dispatch(invoice_event("evt_fail_late"))
        assert late.acknowledged is True
        assert late.status == WebhookEventStatus.FAILED

    def test_successful_retry_recovers(
        self, db, active_subscription, invoice_event, published_effects, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            WebhookDispatcher.dispatch(invoice_event("evt_fail"))
            attempt = self.execute_latest(active_subscription)
            WebhookDispatcher.dispatch(
                invoice_event("evt_paid", event_type="invoice.payment_succeeded", amount_paid=3390)
            )

        active_subscription.refresh_from_db()
        assert active_subscription.state == SubscriptionState.ACTIVE
        assert DunningAttempt.objects.get(pk=attempt.pk).outcome == DunningOutcome.SUCCEEDED
        assert published_effects.templates() == ["payment_failed", "payment_recovered"]
