"""
Side effects produced by billing state changes.

Services never talk to notification, access, audit or scheduling
collaborators directly. They return SideEffect descriptors alongside
their state changes and hand them to enqueue_on_commit(), which
publishes them to Celery only after the surrounding transaction commits.
A rolled-back unit of work publishes nothing, so a redelivered webhook
cannot produce a second confirmation e-mail for a change that was never
persisted.

Effect Kinds:
    NOTIFY          - Customer-facing message (template + context)
    GRANT_ACCESS    - Give the customer access to what an order bought
    REVOKE_ACCESS   - Take it away again (full refund)
    AUDIT           - Append-only audit record
    SCHEDULE_RETRY  - Schedule a dunning attempt at a point in time
    CANCEL_RETRY    - Cancel a scheduled dunning attempt
    PROVIDER_SYNC   - Push a user-driven subscription change to the provider

Usage:
    from billing import effects

    with transaction.atomic():
        order.complete()
        order.save()
        effects.enqueue_on_commit([
            effects.grant_access(order.customer_id, order.id),
            effects.notify("order_confirmation", order.customer_id, order_id=str(order.id)),
        ])
"""

from __future__ import annotations

import datetime
import enum
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from django.db import transaction

logger = logging.getLogger(__name__)


class EffectKind(str, enum.Enum):
    NOTIFY = "notify"
    GRANT_ACCESS = "grant_access"
    REVOKE_ACCESS = "revoke_access"
    AUDIT = "audit"
    SCHEDULE_RETRY = "schedule_retry"
    CANCEL_RETRY = "cancel_retry"
    PROVIDER_SYNC = "provider_sync"


def _json_safe(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass(frozen=True)
class SideEffect:
    """
    A deferred action against an external collaborator.

    The payload is JSON-safe so it can travel through the Celery broker
    unchanged.
    """

    kind: EffectKind
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _json_safe(self.payload))


# =============================================================================
# Constructors
# =============================================================================


def notify(template: str, recipient_id: Any, **context: Any) -> SideEffect:
    return SideEffect(
        EffectKind.NOTIFY,
        {"template": template, "recipient_id": recipient_id, "context": context},
    )


def audit(
    entity: str,
    entity_id: Any,
    old_value: Any,
    new_value: Any,
    description: str,
) -> SideEffect:
    return SideEffect(
        EffectKind.AUDIT,
        {
            "entity": entity,
            "entity_id": entity_id,
            "old_value": old_value,
            "new_value": new_value,
            "description": description,
        },
    )


def grant_access(customer_id: Any, order_id: Any) -> SideEffect:
    return SideEffect(EffectKind.GRANT_ACCESS, {"customer_id": customer_id, "order_id": order_id})


def revoke_access(customer_id: Any, order_id: Any) -> SideEffect:
    return SideEffect(EffectKind.REVOKE_ACCESS, {"customer_id": customer_id, "order_id": order_id})


def schedule_retry(
    attempt_id: Any,
    subscription_id: Any,
    attempt_number: int,
    run_at: datetime.datetime,
) -> SideEffect:
    return SideEffect(
        EffectKind.SCHEDULE_RETRY,
        {
            "attempt_id": attempt_id,
            "subscription_id": subscription_id,
            "attempt_number": attempt_number,
            "run_at": run_at,
        },
    )


def cancel_retry(attempt_id: Any, subscription_id: Any, attempt_number: int) -> SideEffect:
    return SideEffect(
        EffectKind.CANCEL_RETRY,
        {
            "attempt_id": attempt_id,
            "subscription_id": subscription_id,
            "attempt_number": attempt_number,
        },
    )


def provider_sync(operation: str, subscription_id: Any, **params: Any) -> SideEffect:
    return SideEffect(
        EffectKind.PROVIDER_SYNC,
        {"operation": operation, "subscription_id": subscription_id, "params": params},
    )


# =============================================================================
# Publishing
# =============================================================================


def publish_effects(effects: Iterable[SideEffect]) -> None:
    """Queue each effect for delivery by the deliver_side_effect task."""
    # Import here to avoid circular imports
    from billing.tasks import deliver_side_effect

    for effect in effects:
        deliver_side_effect.delay(effect.kind.value, effect.payload)
        logger.debug("Side effect queued", extra={"effect_kind": effect.kind.value})


def enqueue_on_commit(effects: Iterable[SideEffect]) -> None:
    """
    Publish effects once the current transaction commits.

    Outside a transaction (autocommit) the callback runs immediately.
    """
    effects = list(effects)
    if not effects:
        return
    transaction.on_commit(lambda: publish_effects(effects))


__all__ = [
    "EffectKind",
    "SideEffect",
    "audit",
    "cancel_retry",
    "enqueue_on_commit",
    "grant_access",
    "notify",
    "provider_sync",
    "publish_effects",
    "revoke_access",
    "schedule_retry",
]
