"""
Celery tasks for billing.

This module provides async tasks for:
- Delivering side effects queued by the services after commit
- Executing scheduled dunning retries
- Reprocessing stored webhook events
- Periodic retry of transiently failed webhook events

Usage:
    from billing.tasks import reprocess_webhook_event

    # Re-run a stored event by hand
    reprocess_webhook_event.delay(str(webhook_event.id))

    # Sweep transient failures (typically via celery-beat)
    from billing.tasks import retry_failed_webhooks
    retry_failed_webhooks.delay()
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

from celery import shared_task
from django.conf import settings

from core.exceptions import TransientError
from billing.adapters import IdempotencyKeyGenerator, StripeAdapter
from billing.collaborators import get_collaborator
from billing.dunning.service import DunningService
from billing.effects import EffectKind
from billing.exceptions import (
    LockAcquisitionError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeError,
    StripeRateLimitError,
    StripeTimeoutError,
)
from billing.locks import DistributedLock
from billing.models import WebhookEvent
from billing.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_EFFECT_RETRIES = 5
MAX_DUNNING_TASK_RETRIES = 3
WEBHOOK_RETRY_BATCH_SIZE = 100

RETRYABLE_STRIPE_ERRORS = (StripeRateLimitError, StripeAPIUnavailableError, StripeTimeoutError)


# =============================================================================
# Side Effects
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=RETRYABLE_STRIPE_ERRORS + (ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_EFFECT_RETRIES},
    acks_late=True,
)
def deliver_side_effect(self, kind: str, payload: dict[str, Any]) -> dict:
    """
    Hand one committed side effect to its collaborator.

    Args:
        kind: EffectKind value
        payload: JSON-safe effect payload
    """
    effect_kind = EffectKind(kind)
    try:
        match effect_kind:
            case EffectKind.NOTIFY:
                get_collaborator("notifications").send(
                    payload["template"], payload["recipient_id"], payload.get("context", {})
                )
            case EffectKind.GRANT_ACCESS:
                get_collaborator("access").grant(payload["customer_id"], payload["order_id"])
            case EffectKind.REVOKE_ACCESS:
                get_collaborator("access").revoke(payload["customer_id"], payload["order_id"])
            case EffectKind.AUDIT:
                get_collaborator("audit").record(payload)
            case EffectKind.SCHEDULE_RETRY:
                get_collaborator("retries").schedule(
                    payload["attempt_id"], datetime.datetime.fromisoformat(payload["run_at"])
                )
            case EffectKind.CANCEL_RETRY:
                get_collaborator("retries").cancel(payload["attempt_id"])
            case EffectKind.PROVIDER_SYNC:
                get_collaborator("provider").apply(
                    payload["operation"], payload["subscription_id"], payload.get("params", {})
                )
    except StripeError as e:
        if e.is_retryable:
            raise
        logger.error(
            "Side effect rejected by Stripe",
            extra={"effect_kind": kind, "error_code": e.error_code, "payload": payload},
        )
        return {"status": "rejected", "kind": kind, "error_code": e.error_code}

    return {"status": "delivered", "kind": kind}


# =============================================================================
# Dunning
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=RETRYABLE_STRIPE_ERRORS + (LockAcquisitionError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_DUNNING_TASK_RETRIES},
    acks_late=True,
)
def execute_dunning_attempt(self, attempt_id: str) -> dict:
    """
    Ask the provider to charge the invoice of a scheduled dunning attempt.

    The outcome arrives as an invoice webhook, which resolves the attempt
    and decides the next step. Runs outside any database transaction and
    holds a per-subscription Redis lock so two retries for the same
    subscription never overlap.
    """
    attempt = DunningService.begin_attempt(attempt_id)
    if attempt is None:
        logger.info("Dunning attempt no longer pending, skipping", extra={"attempt_id": attempt_id})
        return {"status": "skipped", "attempt_id": attempt_id}

    log_context = {
        "attempt_id": attempt_id,
        "subscription_id": str(attempt.subscription_id),
        "attempt_number": attempt.attempt_number,
        "invoice_id": attempt.invoice.provider_invoice_id,
    }
    logger.info("Executing dunning attempt", extra=log_context)

    try:
        with DistributedLock(f"dunning:{attempt.subscription_id}", ttl=60):
            result = StripeAdapter.retry_invoice_payment(
                attempt.invoice.provider_invoice_id,
                IdempotencyKeyGenerator.generate("retry_invoice", attempt.id, attempt.attempt_number),
            )
    except StripeCardDeclinedError as e:
        logger.info("Dunning retry declined", extra={**log_context, "decline_code": e.decline_code})
        return {"status": "declined", "attempt_id": attempt_id}

    logger.info("Dunning retry submitted", extra={**log_context, "invoice_status": result.status})
    return {"status": "paid" if result.paid else result.status, "attempt_id": attempt_id}


# =============================================================================
# Webhook Reprocessing
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def reprocess_webhook_event(self, webhook_event_id: str) -> dict:
    """Dispatch a stored event again. Processed events are reported as duplicates."""
    from billing.webhooks.dispatcher import WebhookDispatcher

    try:
        outcome = WebhookDispatcher.dispatch_stored(webhook_event_id)
    except WebhookEvent.DoesNotExist:
        logger.error("WebhookEvent not found", extra={"webhook_event_id": webhook_event_id})
        return {"status": "not_found", "webhook_event_id": webhook_event_id}

    return {
        "status": "already_processed" if outcome.duplicate else outcome.status,
        "webhook_event_id": webhook_event_id,
        "provider_event_id": outcome.event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Periodic task re-queueing transiently failed webhook events.

    Events that failed for validation, not-found or conflict reasons are
    final and left alone. Scheduled via celery-beat (billing migration 0002).
    """
    failed = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        failure_kind="transient",
        attempts__lt=settings.BILLING_WEBHOOK_MAX_ATTEMPTS,
    ).order_by("created_at")[:WEBHOOK_RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook in failed:
        reprocess_webhook_event.delay(str(webhook.id))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook.id),
                "provider_event_id": webhook.provider_event_id,
                "attempts": webhook.attempts,
            },
        )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}
