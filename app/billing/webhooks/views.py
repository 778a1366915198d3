"""
Webhook endpoint view for Stripe.

The view:
1. Verifies the webhook signature
2. Dispatches the event synchronously (idempotent by event id)
3. Answers 200 for acknowledged events and 500 for transient failures,
   which makes Stripe redeliver the event later

Usage:
    # In urls.py
    from billing.webhooks.views import stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.exceptions import TransientError
from billing.adapters import StripeAdapter
from billing.exceptions import InvalidWebhookPayloadError, StripeInvalidRequestError
from billing.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and handle a Stripe webhook event.

    Security:
    - Signature verification prevents spoofed webhooks
    - CSRF exemption required for external webhooks
    - Only POST requests accepted

    Returns:
        HttpResponse with status:
        - 200: Event handled, duplicate, or failed permanently
        - 400: Missing/invalid signature or malformed event
        - 500: Transient failure, Stripe should retry
    """
    signature = request.headers.get("Stripe-Signature", "")
    if not signature:
        logger.warning("Webhook received without Stripe-Signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        event_data = StripeAdapter.verify_webhook_signature(request.body, signature)
    except StripeInvalidRequestError as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        return HttpResponse("Invalid signature", status=400)

    try:
        outcome = WebhookDispatcher.dispatch(event_data)
    except InvalidWebhookPayloadError as e:
        logger.warning("Malformed webhook event", extra={"error": e.message})
        return HttpResponse("Invalid event", status=400)
    except TransientError as e:
        return JsonResponse(
            {"received": False, "error_code": e.error_code, "retry": True},
            status=500,
        )

    return JsonResponse(
        {
            "received": True,
            "event_id": outcome.event_id,
            "status": outcome.status,
            "duplicate": outcome.duplicate,
        }
    )
