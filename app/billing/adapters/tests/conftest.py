"""
Pytest fixtures for Stripe adapter tests.

Sections:
    - Mock Stripe Objects
    - Mock Stripe Errors
    - Mock Stripe Resources
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe


# =============================================================================
# Mock Stripe Objects
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@pytest.fixture
def mock_subscription():
    """Create a mock Subscription response (period bounds on the item)."""

    def _create(
        id: str = "sub_test123",
        status: str = "active",
        customer: str = "cus_test123",
        period_start: int = 1711929600,  # 2024-04-01 00:00 UTC
        period_end: int = 1714521600,  # 2024-05-01 00:00 UTC
        cancel_at_period_end: bool = False,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "subscription",
                "status": status,
                "customer": customer,
                "cancel_at_period_end": cancel_at_period_end,
                "items": {
                    "data": [
                        {
                            "id": "si_test123",
                            "current_period_start": period_start,
                            "current_period_end": period_end,
                        }
                    ]
                },
            }
        )

    return _create


@pytest.fixture
def mock_invoice():
    def _create(
        id: str = "in_test123",
        status: str = "paid",
        amount_paid: int = 3390,
        payment_intent: str | None = "pi_test123",
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "invoice",
                "status": status,
                "amount_paid": amount_paid,
                "payment_intent": payment_intent,
            }
        )

    return _create


# =============================================================================
# Mock Stripe Errors
# =============================================================================


@pytest.fixture
def card_error():
    """Create a Stripe CardError."""

    def _create(
        message: str = "Your card was declined.",
        code: str = "card_declined",
        decline_code: str | None = "generic_decline",
    ) -> stripe.CardError:
        error = stripe.CardError(message=message, param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    return stripe.InvalidRequestError(
        message="No such payment_method: 'pm_missing'",
        param="payment_method",
        code="resource_missing",
    )


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Could not connect to Stripe.")


@pytest.fixture
def timeout_error():
    return stripe.APIConnectionError(message="Request to Stripe timed out.")


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")


@pytest.fixture
def signature_verification_error():
    return stripe.SignatureVerificationError(
        message="Unable to verify webhook signature.",
        sig_header="bad_signature",
    )


# =============================================================================
# Mock Stripe Resources
# =============================================================================


@pytest.fixture(autouse=True)
def mock_stripe_http_client():
    """Never build a real HTTP client."""
    with patch("stripe.RequestsClient") as mock:
        yield mock


@pytest.fixture
def mock_stripe_customer():
    with patch("stripe.Customer") as mock:
        mock.create.return_value = MockStripeObject({"id": "cus_test123", "object": "customer"})
        mock.modify.return_value = MockStripeObject({"id": "cus_test123", "object": "customer"})
        yield mock


@pytest.fixture
def mock_stripe_payment_method():
    with patch("stripe.PaymentMethod") as mock:
        mock.attach.return_value = MockStripeObject({"id": "pm_test123", "object": "payment_method"})
        yield mock


@pytest.fixture
def mock_stripe_subscription(mock_subscription):
    with patch("stripe.Subscription") as mock:
        mock.create.return_value = mock_subscription()
        mock.retrieve.return_value = mock_subscription()
        mock.modify.return_value = mock_subscription()
        mock.cancel.return_value = mock_subscription(status="canceled")
        yield mock


@pytest.fixture
def mock_stripe_invoice(mock_invoice):
    with patch("stripe.Invoice") as mock:
        mock.pay.return_value = mock_invoice()
        mock.list.return_value = MockStripeObject({"data": [mock_invoice().to_dict()]})
        yield mock


@pytest.fixture
def mock_stripe_refund():
    with patch("stripe.Refund") as mock:
        mock.create.return_value = MockStripeObject({"id": "re_test123", "object": "refund"})
        yield mock


@pytest.fixture
def mock_stripe_webhook():
    """Mock stripe.Webhook API."""
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = MockStripeObject(
            {
                "id": "evt_test123",
                "type": "invoice.payment_failed",
                "data": {"object": {"id": "in_test123", "object": "invoice"}},
            }
        )
        yield mock
