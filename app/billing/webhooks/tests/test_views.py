"""
Tests for the Stripe webhook view.

Tests cover:
- Stripe signature verification
- Synchronous dispatch and idempotent acknowledgement
- Status codes for permanent and transient failures
"""

import json
from unittest.mock import patch

import pytest
from django.test import RequestFactory
from django.urls import reverse

from core.exceptions import TransientError
from billing.exceptions import StripeInvalidRequestError
from billing.models import Order, WebhookEvent
from billing.state_machines import OrderState, WebhookEventStatus
from billing.webhooks.views import stripe_webhook


@pytest.fixture
def rf():
    return RequestFactory()


def make_webhook_request(rf, payload: dict, signature: str | None = "t=1,v1=sig"):
    headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
    return rf.post(
        "/api/v1/billing/webhooks/stripe/",
        data=json.dumps(payload),
        content_type="application/json",
        **headers,
    )


# =============================================================================
# Signature Verification
# =============================================================================


class TestStripeWebhookSignature:
    def test_missing_signature_returns_400(self, rf, db, mock_verify_signature):
        response = stripe_webhook(make_webhook_request(rf, {"id": "evt_1"}, signature=None))

        assert response.status_code == 400
        mock_verify_signature.assert_not_called()

    def test_invalid_signature_returns_400(self, rf, db, mock_verify_signature):
        mock_verify_signature.side_effect = StripeInvalidRequestError("Invalid webhook signature")

        response = stripe_webhook(make_webhook_request(rf, {"id": "evt_1"}, signature="forged"))

        assert response.status_code == 400
        assert WebhookEvent.objects.count() == 0

    def test_verifies_raw_body(self, rf, db, mock_verify_signature, unknown_event):
        mock_verify_signature.return_value = unknown_event
        request = make_webhook_request(rf, unknown_event, signature="t=1,v1=abc")

        stripe_webhook(request)

        mock_verify_signature.assert_called_once_with(request.body, "t=1,v1=abc")

    def test_get_not_allowed(self, rf, db):
        response = stripe_webhook(rf.get("/api/v1/billing/webhooks/stripe/"))

        assert response.status_code == 405


# =============================================================================
# Dispatch
# =============================================================================


class TestStripeWebhookDispatch:
    def test_processes_event(self, rf, db, mock_verify_signature, pending_order, payment_succeeded_event):
        mock_verify_signature.return_value = payment_succeeded_event

        response = stripe_webhook(make_webhook_request(rf, payment_succeeded_event))

        assert response.status_code == 200
        body = json.loads(response.content)
        assert body == {
            "received": True,
            "event_id": "evt_pi_succeeded",
            "status": WebhookEventStatus.PROCESSED,
            "duplicate": False,
        }
        assert Order.objects.get(pk=pending_order.pk).state == OrderState.COMPLETED

    def test_duplicate_acknowledged(self, rf, db, mock_verify_signature, pending_order, payment_succeeded_event):
        mock_verify_signature.return_value = payment_succeeded_event
        stripe_webhook(make_webhook_request(rf, payment_succeeded_event))

        response = stripe_webhook(make_webhook_request(rf, payment_succeeded_event))

        assert response.status_code == 200
        assert json.loads(response.content)["duplicate"] is True

    def test_permanent_failure_acknowledged(self, rf, db, mock_verify_signature):
        event = {
            "id": "evt_orphan",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_nowhere"}},
        }
        mock_verify_signature.return_value = event

        response = stripe_webhook(make_webhook_request(rf, event))

        assert response.status_code == 200
        assert json.loads(response.content)["status"] == WebhookEventStatus.FAILED

    def test_transient_failure_returns_500(self, rf, db, mock_verify_signature, unknown_event):
        mock_verify_signature.return_value = unknown_event

        with patch(
            "billing.webhooks.views.WebhookDispatcher.dispatch",
            side_effect=TransientError("Provider down", error_code="STRIPE_UNAVAILABLE"),
        ):
            response = stripe_webhook(make_webhook_request(rf, unknown_event))

        assert response.status_code == 500
        assert json.loads(response.content) == {
            "received": False,
            "error_code": "STRIPE_UNAVAILABLE",
            "retry": True,
        }

    def test_malformed_event_returns_400(self, rf, db, mock_verify_signature):
        mock_verify_signature.return_value = {"id": "evt_no_type"}

        response = stripe_webhook(make_webhook_request(rf, {"id": "evt_no_type"}))

        assert response.status_code == 400

    def test_routed_through_urls(self, client, db, mock_verify_signature, unknown_event):
        mock_verify_signature.return_value = unknown_event

        response = client.post(
            reverse("billing:stripe_webhook"),
            data=json.dumps(unknown_event),
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=abc",
            secure=True,
        )

        assert response.status_code == 200
