"""
Webhook dispatcher.

Turns one provider event envelope into exactly one handling of that
event, however often the provider delivers it:

1. Get or create the WebhookEvent record for the event id and lock it
2. Already PROCESSED -> acknowledge as duplicate, run nothing
3. Route the event type to its handler inside a savepoint
4. Persist PROCESSED, or FAILED with the error detail
5. Transient failures raise TransientError after the record is saved,
   so the provider redelivers; every other outcome is acknowledged

Handler writes and their queued side effects are discarded together when
the handler fails: effects are registered with transaction.on_commit and
Django drops callbacks registered inside a rolled-back savepoint.

Usage:
    from billing.webhooks import WebhookDispatcher

    outcome = WebhookDispatcher.dispatch(event_data)
    outcome.duplicate  # True on redelivery of a processed event
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from django.db import transaction

from core.exceptions import TransientError
from core.services import BaseService, FailureKind, ServiceResult
from billing.exceptions import InvalidWebhookPayloadError
from billing.models import WebhookEvent
from billing.webhooks import handlers
from billing.webhooks.events import WebhookEventType


@dataclass(frozen=True)
class DispatchOutcome:
    """
    Result of dispatching one envelope.

    Attributes:
        status: WebhookEvent status after dispatch
        duplicate: The event had already been processed
        error_code/failure_kind: Set when the handler failed
    """

    event_id: str
    event_type: str
    status: str
    duplicate: bool = False
    error_code: str | None = None
    failure_kind: FailureKind | None = None

    @property
    def acknowledged(self) -> bool:
        return self.failure_kind is None or not self.failure_kind.is_retryable


class WebhookDispatcher(BaseService):
    """Idempotent, transactional routing of provider events."""

    @staticmethod
    def parse_envelope(envelope: Any) -> tuple[str, str]:
        """
        Return (event_id, event_type) from an envelope.

        Raises:
            InvalidWebhookPayloadError: Not a mapping, or id/type missing
        """
        if not isinstance(envelope, dict):
            raise InvalidWebhookPayloadError("Webhook envelope must be an object")
        event_id, event_type = envelope.get("id"), envelope.get("type")
        if not event_id or not event_type:
            raise InvalidWebhookPayloadError(
                "Webhook envelope requires id and type",
                details={"id": event_id, "type": event_type},
            )
        return str(event_id), str(event_type)

    @classmethod
    def dispatch(cls, envelope: dict[str, Any]) -> DispatchOutcome:
        """
        Handle one event envelope.

        Returns:
            DispatchOutcome for acknowledged events (processed, duplicate,
            or failed with a validation / not-found / conflict kind)

        Raises:
            InvalidWebhookPayloadError: Envelope lacks id or type
            TransientError: Handler failed transiently; the failure is
                recorded and the provider should redeliver
        """
        event_id, event_type = cls.parse_envelope(envelope)
        logger = cls.get_logger()
        log_context = {"provider_event_id": event_id, "event_type": event_type}

        with transaction.atomic():
            record, created = WebhookEvent.objects.get_or_create(
                provider_event_id=event_id,
                defaults={"event_type": event_type, "payload": envelope},
            )
            record = WebhookEvent.objects.select_for_update().get(pk=record.pk)

            if record.is_processed:
                logger.info("Webhook already processed, skipping", extra=log_context)
                return DispatchOutcome(event_id, event_type, record.status, duplicate=True)

            record.mark_processing()
            record.save()
            logger.info(
                f"Dispatching webhook: {event_type}",
                extra={**log_context, "attempts": record.attempts, "created": created},
            )

            result = cls._run_handler(WebhookEventType.parse(event_type), record.get_object(), log_context)

            if result.success:
                record.mark_processed()
            else:
                record.mark_failed(
                    result.error or "Handler returned failure",
                    error_code=result.error_code,
                    failure_kind=result.failure_kind.value if result.failure_kind else None,
                )
            record.save()

        outcome = DispatchOutcome(
            event_id,
            event_type,
            record.status,
            error_code=result.error_code,
            failure_kind=result.failure_kind,
        )
        if result.success:
            logger.info("Webhook processed successfully", extra=log_context)
        elif outcome.acknowledged:
            logger.warning(
                "Webhook acknowledged without effect",
                extra={
                    **log_context,
                    "error_code": result.error_code,
                    "failure_kind": result.failure_kind.value,
                },
            )
        else:
            logger.error(
                "Webhook failed transiently, requesting redelivery",
                extra={**log_context, "error_code": result.error_code},
            )
            raise TransientError(
                result.error or "Webhook processing failed",
                error_code=result.error_code,
                details={"provider_event_id": event_id, "event_type": event_type},
            )
        return outcome

    @classmethod
    def dispatch_stored(cls, webhook_event_id) -> DispatchOutcome:
        """Re-dispatch a stored event by its record id (manual reprocessing)."""
        record = WebhookEvent.objects.get(pk=webhook_event_id)
        return cls.dispatch(record.payload)

    @classmethod
    def _run_handler(
        cls,
        event_type: WebhookEventType | None,
        obj: dict[str, Any],
        log_context: dict[str, Any],
    ) -> ServiceResult:
        try:
            with transaction.atomic():
                result = cls._route(event_type, obj, log_context)
                if not result.success:
                    transaction.set_rollback(True)
        except Exception as e:
            cls.get_logger().exception("Webhook handler raised", extra=log_context)
            return ServiceResult.failure(
                f"{type(e).__name__}: {e}",
                "UNEXPECTED_ERROR",
                kind=FailureKind.TRANSIENT,
            )
        return result

    @classmethod
    def _route(
        cls,
        event_type: WebhookEventType | None,
        obj: dict[str, Any],
        log_context: dict[str, Any],
    ) -> ServiceResult:
        match event_type:
            case WebhookEventType.PAYMENT_INTENT_SUCCEEDED:
                return handlers.handle_payment_intent_succeeded(obj)
            case WebhookEventType.PAYMENT_INTENT_FAILED:
                return handlers.handle_payment_intent_failed(obj)
            case WebhookEventType.CHARGE_REFUNDED:
                return handlers.handle_charge_refunded(obj)
            case WebhookEventType.SUBSCRIPTION_CREATED | WebhookEventType.SUBSCRIPTION_UPDATED:
                return handlers.handle_subscription_changed(obj)
            case WebhookEventType.SUBSCRIPTION_DELETED:
                return handlers.handle_subscription_deleted(obj)
            case WebhookEventType.INVOICE_PAYMENT_SUCCEEDED:
                return handlers.handle_invoice_payment_succeeded(obj)
            case WebhookEventType.INVOICE_PAYMENT_FAILED:
                return handlers.handle_invoice_payment_failed(obj)
            case None:
                cls.get_logger().info("No handler for webhook event type", extra=log_context)
                return ServiceResult.success(None)
