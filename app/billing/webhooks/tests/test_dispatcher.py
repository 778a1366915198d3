"""
Tests for WebhookDispatcher.

Tests cover:
- Exactly-once handling per provider event id
- Acknowledged failures (validation, not found, conflict)
- Transient failures recorded and re-raised for redelivery
- Side effects discarded with a failed handler's writes
"""

from unittest.mock import patch

import pytest

from core.exceptions import TransientError
from core.services import FailureKind, ServiceResult
from billing import effects
from billing.exceptions import InvalidWebhookPayloadError
from billing.models import DunningAttempt, Order, Payment, Subscription, WebhookEvent
from billing.state_machines import OrderState, SubscriptionState, WebhookEventStatus
from billing.tests.factories import OrderFactory
from billing.webhooks import WebhookDispatcher


def envelope(event_id, event_type, obj):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


# =============================================================================
# Processing & Idempotency
# =============================================================================


class TestDispatch:
    def test_processes_event(
        self, db, pending_order, payment_succeeded_event, published_effects, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            outcome = WebhookDispatcher.dispatch(payment_succeeded_event)

        assert outcome.status == WebhookEventStatus.PROCESSED
        assert outcome.duplicate is False
        assert outcome.acknowledged is True

        record = WebhookEvent.objects.get(provider_event_id="evt_pi_succeeded")
        assert record.event_type == "payment_intent.succeeded"
        assert record.attempts == 1
        assert record.processed_at is not None
        assert Order.objects.get(pk=pending_order.pk).state == OrderState.COMPLETED
        assert published_effects.call_count == 1

    def test_redelivery_is_noop(
        self, db, pending_order, payment_succeeded_event, published_effects, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            WebhookDispatcher.dispatch(payment_succeeded_event)
            outcome = WebhookDispatcher.dispatch(payment_succeeded_event)

        assert outcome.duplicate is True
        assert WebhookEvent.objects.filter(provider_event_id="evt_pi_succeeded").count() == 1
        assert WebhookEvent.objects.get(provider_event_id="evt_pi_succeeded").attempts == 1
        assert Payment.objects.filter(order=pending_order).count() == 1
        assert published_effects.call_count == 1

    def test_unknown_type_is_processed(self, db, unknown_event):
        outcome = WebhookDispatcher.dispatch(unknown_event)

        assert outcome.status == WebhookEventStatus.PROCESSED
        assert WebhookEvent.objects.get(provider_event_id="evt_unknown").is_processed

    def test_invoice_failure_starts_dunning(self, db, active_subscription, invoice_failed_event):
        WebhookDispatcher.dispatch(invoice_failed_event)

        assert Subscription.objects.get(pk=active_subscription.pk).state == SubscriptionState.PAST_DUE
        assert DunningAttempt.objects.filter(subscription=active_subscription).count() == 1

    def test_charge_refunded(self, db, completed_order):
        event = envelope(
            "evt_refund",
            "charge.refunded",
            {
                "id": "ch_webhook_done",
                "object": "charge",
                "payment_intent": completed_order.provider_payment_ref,
                "amount": 11300,
                "amount_refunded": 11300,
                "refunded": True,
                "refunds": {"data": [{"id": "re_1", "amount": 11300}]},
            },
        )

        WebhookDispatcher.dispatch(event)

        assert Order.objects.get(pk=completed_order.pk).state == OrderState.REFUNDED

    @pytest.mark.parametrize(
        "bad_envelope",
        [None, [], {"type": "invoice.payment_failed"}, {"id": "evt_no_type"}],
    )
    def test_invalid_envelope(self, db, bad_envelope):
        with pytest.raises(InvalidWebhookPayloadError):
            WebhookDispatcher.dispatch(bad_envelope)

        assert WebhookEvent.objects.count() == 0


# =============================================================================
# Acknowledged Failures
# =============================================================================


class TestAcknowledgedFailures:
    def test_validation_failure(self, db, pending_order, published_effects, django_capture_on_commit_callbacks):
        event = envelope(
            "evt_mismatch",
            "payment_intent.succeeded",
            {"id": pending_order.provider_payment_ref, "amount_received": 1},
        )

        with django_capture_on_commit_callbacks(execute=True):
            outcome = WebhookDispatcher.dispatch(event)

        assert outcome.acknowledged is True
        assert outcome.failure_kind == FailureKind.VALIDATION
        record = WebhookEvent.objects.get(provider_event_id="evt_mismatch")
        assert record.status == WebhookEventStatus.FAILED
        assert record.error_code == "DATA_INTEGRITY_ERROR"
        assert record.failure_kind == "validation"
        assert Order.objects.get(pk=pending_order.pk).state == OrderState.PENDING
        published_effects.assert_not_called()

    def test_not_found(self, db):
        event = envelope("evt_orphan", "payment_intent.succeeded", {"id": "pi_unknown"})

        outcome = WebhookDispatcher.dispatch(event)

        assert outcome.failure_kind == FailureKind.NOT_FOUND
        assert outcome.error_code == "ORDER_NOT_FOUND"
        assert WebhookEvent.objects.get(provider_event_id="evt_orphan").failure_kind == "not_found"

    def test_conflict(self, db, completed_order):
        event = envelope(
            "evt_late_failure",
            "payment_intent.payment_failed",
            {"id": completed_order.provider_payment_ref, "last_payment_error": {"code": "card_declined"}},
        )

        outcome = WebhookDispatcher.dispatch(event)

        assert outcome.failure_kind == FailureKind.CONFLICT
        assert outcome.error_code == "INVALID_STATE_TRANSITION"
        assert Order.objects.get(pk=completed_order.pk).state == OrderState.COMPLETED

    def test_failed_event_may_be_redelivered(self, db):
        """An order created after a not-found failure is picked up on redelivery."""
        event = envelope("evt_retry_ok", "payment_intent.succeeded", {"id": "pi_later"})
        WebhookDispatcher.dispatch(event)
        OrderFactory(provider_payment_ref="pi_later")

        outcome = WebhookDispatcher.dispatch(event)

        assert outcome.status == WebhookEventStatus.PROCESSED
        assert WebhookEvent.objects.get(provider_event_id="evt_retry_ok").attempts == 2


# =============================================================================
# Transient Failures
# =============================================================================


class TestTransientFailures:
    def test_unexpected_exception_recorded_and_raised(self, db, invoice_failed_event):
        with patch(
            "billing.webhooks.handlers.handle_invoice_payment_failed",
            side_effect=RuntimeError("database hiccup"),
        ):
            with pytest.raises(TransientError) as exc_info:
                WebhookDispatcher.dispatch(invoice_failed_event)

        assert exc_info.value.error_code == "UNEXPECTED_ERROR"
        record = WebhookEvent.objects.get(provider_event_id="evt_invoice_failed")
        assert record.status == WebhookEventStatus.FAILED
        assert record.failure_kind == "transient"
        assert record.attempts == 1
        assert "database hiccup" in record.error_message
        assert record.can_retry is True

    def test_transient_result_raises(self, db, invoice_failed_event):
        failure = ServiceResult.failure("Provider down", "STRIPE_UNAVAILABLE", kind=FailureKind.TRANSIENT)

        with patch("billing.webhooks.handlers.handle_invoice_payment_failed", return_value=failure):
            with pytest.raises(TransientError):
                WebhookDispatcher.dispatch(invoice_failed_event)

        assert WebhookEvent.objects.get(provider_event_id="evt_invoice_failed").error_code == "STRIPE_UNAVAILABLE"

    def test_redelivery_after_transient_failure(self, db, active_subscription, invoice_failed_event):
        with patch(
            "billing.webhooks.handlers.handle_invoice_payment_failed",
            side_effect=RuntimeError("boom"),
        ):
            with pytest.raises(TransientError):
                WebhookDispatcher.dispatch(invoice_failed_event)

        outcome = WebhookDispatcher.dispatch(invoice_failed_event)

        assert outcome.status == WebhookEventStatus.PROCESSED
        assert WebhookEvent.objects.get(provider_event_id="evt_invoice_failed").attempts == 2
        assert Subscription.objects.get(pk=active_subscription.pk).state == SubscriptionState.PAST_DUE


# =============================================================================
# Side Effects
# =============================================================================


class TestSideEffectsDiscardedOnFailure:
    def test_failed_handler_publishes_nothing(
        self, db, pending_order, published_effects, django_capture_on_commit_callbacks
    ):
        def grant_then_fail(obj):
            Order.objects.filter(pk=pending_order.pk).update(failure_code="half_done")
            effects.enqueue_on_commit([effects.grant_access(pending_order.customer_id, pending_order.id)])
            return ServiceResult.failure("Late conflict", "CONFLICT", kind=FailureKind.CONFLICT)

        event = envelope("evt_partial", "payment_intent.succeeded", {"id": pending_order.provider_payment_ref})

        with patch("billing.webhooks.handlers.handle_payment_intent_succeeded", side_effect=grant_then_fail):
            with django_capture_on_commit_callbacks(execute=True):
                outcome = WebhookDispatcher.dispatch(event)

        assert outcome.failure_kind == FailureKind.CONFLICT
        published_effects.assert_not_called()
        assert Order.objects.get(pk=pending_order.pk).failure_code != "half_done"


class TestDispatchStored:
    def test_dispatches_stored_payload(self, db, transient_failed_webhook_event):
        outcome = WebhookDispatcher.dispatch_stored(transient_failed_webhook_event.id)

        assert outcome.status == WebhookEventStatus.PROCESSED
        record = WebhookEvent.objects.get(pk=transient_failed_webhook_event.pk)
        assert record.attempts == 2
        assert record.error_code is None

    def test_processed_event_is_duplicate(self, db, processed_webhook_event):
        outcome = WebhookDispatcher.dispatch_stored(processed_webhook_event.id)

        assert outcome.duplicate is True
