"""
External collaborators reached by queued side effects.

Each concern is a Protocol so deployments can swap implementations
through settings.BILLING_COLLABORATORS without touching the services:

    BILLING_COLLABORATORS = {
        "notifications": "myproject.email.BillingEmailSink",
        ...
    }

Available Protocols:
    NotificationSink: Customer-facing messages
    AccessGrantor: Grants/revokes what an order paid for
    AuditSink: Append-only audit trail
    RetryScheduler: Timed dunning retries
    ProviderSync: Pushes user-driven subscription changes to the provider

The defaults log (notifications, access, audit), schedule Celery tasks
(retries) or call the Stripe adapter (provider sync).
"""

from __future__ import annotations

import datetime
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from django.conf import settings
from django.utils.module_loading import import_string

from billing.adapters import CreateSubscriptionParams, StripeAdapter

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("billing.audit")


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class NotificationSink(Protocol):
    def send(self, template: str, recipient_id: Any, context: dict[str, Any]) -> None:
        """
        Deliver a templated message to a customer.

        Args:
            template: Template name (e.g. "payment_failed")
            recipient_id: Customer primary key
            context: Template variables
        """
        ...


@runtime_checkable
class AccessGrantor(Protocol):
    def grant(self, customer_id: Any, order_id: Any) -> None: ...

    def revoke(self, customer_id: Any, order_id: Any) -> None: ...


@runtime_checkable
class AuditSink(Protocol):
    def record(self, entry: dict[str, Any]) -> None:
        """Persist one audit entry (entity, entity_id, old/new value, description)."""
        ...


@runtime_checkable
class RetryScheduler(Protocol):
    def schedule(self, attempt_id: str, run_at: datetime.datetime) -> None: ...

    def cancel(self, attempt_id: str) -> None: ...


@runtime_checkable
class ProviderSync(Protocol):
    def apply(self, operation: str, subscription_id: str, params: dict[str, Any]) -> None:
        """Push a local subscription change to the payment provider."""
        ...


# =============================================================================
# Default Implementations
# =============================================================================


class LoggingNotificationSink:
    """Writes notifications to the log. Replace with a real sender in production."""

    def send(self, template: str, recipient_id: Any, context: dict[str, Any]) -> None:
        logger.info(
            f"Notification: {template}",
            extra={"template": template, "recipient_id": recipient_id, "context": context},
        )


class LoggingAccessGrantor:
    def grant(self, customer_id: Any, order_id: Any) -> None:
        logger.info("Access granted", extra={"customer_id": customer_id, "order_id": order_id})

    def revoke(self, customer_id: Any, order_id: Any) -> None:
        logger.info("Access revoked", extra={"customer_id": customer_id, "order_id": order_id})


class LoggingAuditSink:
    """Audit entries go to the ``billing.audit`` logger (own handler in settings)."""

    def record(self, entry: dict[str, Any]) -> None:
        audit_logger.info(
            f"{entry.get('entity')} {entry.get('entity_id')}: {entry.get('description')}",
            extra={"audit": entry},
        )


class CeleryRetryScheduler:
    """
    Schedules dunning retries as ETA Celery tasks.

    The task id is derived from the attempt id so a scheduled retry can be
    revoked without storing the Celery id.
    """

    @staticmethod
    def task_id(attempt_id: str) -> str:
        return f"dunning-attempt-{attempt_id}"

    def schedule(self, attempt_id: str, run_at: datetime.datetime) -> None:
        from billing.tasks import execute_dunning_attempt

        execute_dunning_attempt.apply_async(
            args=[str(attempt_id)],
            eta=run_at,
            task_id=self.task_id(attempt_id),
        )
        logger.info(
            "Dunning retry scheduled",
            extra={"attempt_id": str(attempt_id), "run_at": run_at.isoformat()},
        )

    def cancel(self, attempt_id: str) -> None:
        from celery import current_app

        current_app.control.revoke(self.task_id(attempt_id))
        logger.info("Dunning retry revoked", extra={"attempt_id": str(attempt_id)})


class StripeProviderSync:
    """Applies queued subscription changes through the Stripe adapter."""

    adapter = StripeAdapter

    def apply(self, operation: str, subscription_id: str, params: dict[str, Any]) -> None:
        from billing.models import Subscription

        subscription = Subscription.objects.filter(pk=subscription_id).first()
        # Effects pin the provider id they were queued for; a later
        # reactivation may have replaced it on the row.
        provider_id = params.get("provider_subscription_id") or (
            subscription.provider_subscription_id if subscription else ""
        )
        if subscription is None or not provider_id:
            logger.warning(
                "Provider sync skipped: no provider subscription",
                extra={"operation": operation, "subscription_id": subscription_id},
            )
            return

        match operation:
            case "cancel":
                self.adapter.cancel_subscription(
                    provider_id, idempotency_key=params.get("idempotency_key")
                )
            case "refund":
                self.adapter.refund_latest_invoice(
                    provider_id, params["refund_cents"], params["idempotency_key"]
                )
            case "set_cancel_at_period_end":
                self.adapter.set_cancel_at_period_end(provider_id, params["cancel_at_period_end"])
            case "update":
                self.adapter.update_subscription(
                    provider_id,
                    price_id=params["price_id"],
                    quantity=params["quantity"],
                    proration_behavior=params["proration_behavior"],
                    billing_cycle_anchor=params["billing_cycle_anchor"],
                    idempotency_key=params["idempotency_key"],
                )
            case "reactivate":
                # A cancelled provider subscription cannot be revived; start a new one.
                result = self.adapter.create_subscription(
                    CreateSubscriptionParams(
                        customer_ref=params["customer_ref"],
                        price_id=params["price_id"],
                        quantity=params["quantity"],
                        idempotency_key=params["idempotency_key"],
                        metadata={"subscription_id": str(subscription_id)},
                    )
                )
                Subscription.objects.filter(pk=subscription_id).update(
                    provider_subscription_id=result.id
                )
            case _:
                raise ValueError(f"Unknown provider sync operation: {operation}")

        logger.info(
            "Provider sync applied",
            extra={
                "operation": operation,
                "subscription_id": subscription_id,
                "provider_subscription_id": provider_id,
            },
        )


# =============================================================================
# Lookup
# =============================================================================


def get_collaborator(name: str) -> Any:
    """
    Instantiate the collaborator configured under ``name``.

    Raises:
        KeyError: If ``name`` is not configured
    """
    return import_string(settings.BILLING_COLLABORATORS[name])()


__all__ = [
    "AccessGrantor",
    "AuditSink",
    "CeleryRetryScheduler",
    "LoggingAccessGrantor",
    "LoggingAuditSink",
    "LoggingNotificationSink",
    "NotificationSink",
    "ProviderSync",
    "RetryScheduler",
    "StripeProviderSync",
    "get_collaborator",
]
