"""
Tests for the default collaborator implementations and their lookup.
"""

import datetime
from unittest.mock import MagicMock, patch

import pytest

from billing.adapters import SubscriptionResult
from billing.collaborators import (
    AuditSink,
    CeleryRetryScheduler,
    LoggingAccessGrantor,
    LoggingAuditSink,
    LoggingNotificationSink,
    NotificationSink,
    StripeProviderSync,
    get_collaborator,
)
from billing.models import Subscription
from billing.tests.factories import SubscriptionFactory


class RecordingSink:
    def __init__(self):
        self.sent = []

    def send(self, template, recipient_id, context):
        self.sent.append((template, recipient_id, context))


class TestGetCollaborator:
    def test_defaults(self):
        assert isinstance(get_collaborator("notifications"), LoggingNotificationSink)
        assert isinstance(get_collaborator("access"), LoggingAccessGrantor)
        assert isinstance(get_collaborator("retries"), CeleryRetryScheduler)
        assert isinstance(get_collaborator("provider"), StripeProviderSync)

    def test_configured_implementation(self, settings):
        settings.BILLING_COLLABORATORS = {
            **settings.BILLING_COLLABORATORS,
            "notifications": "billing.tests.test_collaborators.RecordingSink",
        }

        sink = get_collaborator("notifications")

        assert isinstance(sink, RecordingSink)
        assert isinstance(sink, NotificationSink)

    def test_unknown_name(self):
        with pytest.raises(KeyError):
            get_collaborator("fax")


class TestLoggingAuditSink:
    def test_records_to_audit_logger(self):
        entry = {"entity": "order", "entity_id": "o1", "description": "Payment succeeded"}

        with patch("billing.collaborators.audit_logger") as audit_logger:
            LoggingAuditSink().record(entry)

        message = audit_logger.info.call_args.args[0]
        assert message == "order o1: Payment succeeded"
        assert audit_logger.info.call_args.kwargs["extra"] == {"audit": entry}
        assert isinstance(LoggingAuditSink(), AuditSink)


class TestCeleryRetryScheduler:
    def test_schedule_uses_eta_and_stable_task_id(self):
        run_at = datetime.datetime(2024, 3, 4, 12, 0, tzinfo=datetime.timezone.utc)

        with patch("billing.tasks.execute_dunning_attempt") as task:
            CeleryRetryScheduler().schedule("att_1", run_at)

        task.apply_async.assert_called_once_with(
            args=["att_1"], eta=run_at, task_id="dunning-attempt-att_1"
        )

    def test_cancel_revokes_task(self):
        with patch("celery.current_app") as app:
            CeleryRetryScheduler().cancel("att_1")

        app.control.revoke.assert_called_once_with("dunning-attempt-att_1")


class TestStripeProviderSync:
    @pytest.fixture
    def adapter(self):
        adapter = MagicMock()
        with patch.object(StripeProviderSync, "adapter", adapter):
            yield adapter

    def test_cancel_is_keyed(self, db, adapter):
        subscription = SubscriptionFactory()

        StripeProviderSync().apply("cancel", str(subscription.id), {"idempotency_key": "k1"})

        adapter.cancel_subscription.assert_called_once_with(
            subscription.provider_subscription_id, idempotency_key="k1"
        )
        adapter.refund_latest_invoice.assert_not_called()

    def test_refund_does_not_cancel(self, db, adapter):
        subscription = SubscriptionFactory()

        StripeProviderSync().apply(
            "refund", str(subscription.id), {"refund_cents": 2000, "idempotency_key": "k1"}
        )

        adapter.refund_latest_invoice.assert_called_once_with(
            subscription.provider_subscription_id, 2000, "k1"
        )
        adapter.cancel_subscription.assert_not_called()

    def test_uses_provider_id_pinned_in_params(self, db, adapter):
        subscription = SubscriptionFactory(provider_subscription_id="sub_after_reactivation")

        StripeProviderSync().apply(
            "refund",
            str(subscription.id),
            {"provider_subscription_id": "sub_original", "refund_cents": 500, "idempotency_key": "k1"},
        )

        adapter.refund_latest_invoice.assert_called_once_with("sub_original", 500, "k1")

    def test_set_cancel_at_period_end(self, db, adapter):
        subscription = SubscriptionFactory()

        StripeProviderSync().apply(
            "set_cancel_at_period_end", str(subscription.id), {"cancel_at_period_end": True}
        )

        adapter.set_cancel_at_period_end.assert_called_once_with(
            subscription.provider_subscription_id, True
        )

    def test_update(self, db, adapter):
        subscription = SubscriptionFactory()

        StripeProviderSync().apply(
            "update",
            str(subscription.id),
            {
                "price_id": "price_premium",
                "quantity": 2,
                "proration_behavior": "create_prorations",
                "billing_cycle_anchor": "unchanged",
                "idempotency_key": "k2",
            },
        )

        adapter.update_subscription.assert_called_once_with(
            subscription.provider_subscription_id,
            price_id="price_premium",
            quantity=2,
            proration_behavior="create_prorations",
            billing_cycle_anchor="unchanged",
            idempotency_key="k2",
        )

    def test_reactivate_creates_new_provider_subscription(self, db, adapter):
        subscription = SubscriptionFactory()
        adapter.create_subscription.return_value = SubscriptionResult(id="sub_fresh", status="active")

        StripeProviderSync().apply(
            "reactivate",
            str(subscription.id),
            {
                "customer_ref": "cus_1",
                "price_id": "price_basic",
                "quantity": 1,
                "idempotency_key": "k3",
            },
        )

        created = adapter.create_subscription.call_args.args[0]
        assert created.customer_ref == "cus_1"
        assert created.metadata == {"subscription_id": str(subscription.id)}
        assert Subscription.objects.get(pk=subscription.pk).provider_subscription_id == "sub_fresh"

    def test_unknown_operation(self, db, adapter):
        subscription = SubscriptionFactory()

        with pytest.raises(ValueError):
            StripeProviderSync().apply("teleport", str(subscription.id), {})

    def test_missing_subscription_skipped(self, db, adapter):
        StripeProviderSync().apply("cancel", "00000000-0000-0000-0000-000000000000", {})

        adapter.cancel_subscription.assert_not_called()
