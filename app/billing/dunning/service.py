"""
Dunning bookkeeping.

DunningService applies DunningManager decisions to the database inside
the caller's transaction and turns them into side effects. Callers hold
the subscription row lock, so attempts for one subscription are never
scheduled concurrently; the unique (subscription, invoice,
attempt_number) constraint backs that up.
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from core.services import BaseService
from billing import effects
from billing.adapters import IdempotencyKeyGenerator
from billing.dunning.policy import DunningAction, DunningActionKind, DunningManager, DunningPolicy
from billing.models import DunningAttempt
from billing.state_machines import DunningOutcome, SubscriptionState

if TYPE_CHECKING:
    from billing.effects import SideEffect
    from billing.models import Invoice, Subscription


class DunningService(BaseService):
    """
    Persist dunning attempts and derive their side effects.

    All methods expect to run inside transaction.atomic() with the
    subscription already locked, except begin_attempt which opens its own
    transaction.
    """

    @classmethod
    def manager(cls) -> DunningManager:
        return DunningManager(DunningPolicy.from_settings())

    # =========================================================================
    # Failure / Success
    # =========================================================================

    @classmethod
    def handle_failure(
        cls,
        subscription: Subscription,
        invoice: Invoice,
        now: datetime.datetime | None = None,
    ) -> list[SideEffect]:
        """
        Advance dunning after a failed charge of ``invoice``.

        - No attempts yet: the original charge failed, schedule attempt #1.
        - Latest attempt pending and executed: that retry failed, resolve it
          and schedule the next one (or cancel when the schedule is spent).
        - Anything else is a stray failure report and changes nothing.
        """
        logger = cls.get_logger()
        now = now or timezone.now()
        latest = (
            DunningAttempt.objects.select_for_update()
            .filter(subscription=subscription, invoice=invoice)
            .order_by("-attempt_number")
            .first()
        )

        if latest is None:
            failed_number, previous_time = 0, now
        elif latest.is_pending and latest.executed_at is not None:
            latest.resolve(DunningOutcome.FAILED)
            latest.save()
            failed_number, previous_time = latest.attempt_number, latest.scheduled_for
        else:
            logger.info(
                "Ignoring payment failure with no executed dunning attempt",
                extra={
                    "subscription_id": str(subscription.id),
                    "invoice_id": invoice.provider_invoice_id,
                    "latest_attempt": latest.attempt_number,
                    "latest_outcome": latest.outcome,
                },
            )
            return []

        actions = cls.manager().on_payment_failed(subscription.id, failed_number, previous_time)
        return cls._apply(subscription, invoice, actions)

    @classmethod
    def pending_attempts(cls, subscription: Subscription):
        """Pending attempts of a subscription, locked, in schedule order."""
        return (
            DunningAttempt.objects.select_for_update()
            .filter(subscription=subscription, outcome=DunningOutcome.PENDING)
            .order_by("attempt_number")
        )

    @classmethod
    def handle_success(cls, subscription: Subscription, invoice: Invoice) -> list[SideEffect]:
        """
        Stop dunning for ``invoice`` after it was paid.

        The executed pending attempt (if any) succeeded; every other
        pending attempt is abandoned and its scheduled retry cancelled.
        """
        pending = list(cls.pending_attempts(subscription).filter(invoice=invoice))
        side_effects: list[SideEffect] = []
        unexecuted = []
        for attempt in pending:
            if attempt.executed_at is not None:
                attempt.resolve(DunningOutcome.SUCCEEDED)
                attempt.save()
            else:
                unexecuted.append(attempt.attempt_number)

        actions = cls.manager().on_payment_succeeded(subscription.id, unexecuted)
        side_effects.extend(cls._apply(subscription, invoice, actions))
        return side_effects

    @classmethod
    def abandon_pending(cls, subscription: Subscription) -> list[SideEffect]:
        """Abandon every pending attempt of a subscription (cancellation)."""
        side_effects = []
        for attempt in cls.pending_attempts(subscription):
            attempt.resolve(DunningOutcome.ABANDONED)
            attempt.save()
            side_effects.append(
                effects.cancel_retry(attempt.id, subscription.id, attempt.attempt_number)
            )
        return side_effects

    # =========================================================================
    # Execution
    # =========================================================================

    @classmethod
    def begin_attempt(cls, attempt_id) -> DunningAttempt | None:
        """
        Mark a scheduled attempt as executing.

        Returns:
            The attempt, or None when it was resolved, abandoned or its
            subscription ended in the meantime.
        """
        with transaction.atomic():
            attempt = (
                DunningAttempt.objects.select_for_update()
                .select_related("subscription", "invoice")
                .filter(id=attempt_id)
                .first()
            )
            if attempt is None or not attempt.is_pending:
                return None
            if attempt.subscription.state == SubscriptionState.CANCELLED:
                return None
            if attempt.executed_at is None:
                attempt.executed_at = timezone.now()
                attempt.save()
            return attempt

    # =========================================================================
    # Applying decisions
    # =========================================================================

    @classmethod
    def _apply(
        cls,
        subscription: Subscription,
        invoice: Invoice,
        actions: list[DunningAction],
    ) -> list[SideEffect]:
        logger = cls.get_logger()
        side_effects: list[SideEffect] = []

        for action in actions:
            match action.kind:
                case DunningActionKind.NOTIFY:
                    side_effects.append(
                        effects.notify(
                            action.template,
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            invoice_id=invoice.provider_invoice_id,
                            **action.context,
                        )
                    )

                case DunningActionKind.SCHEDULE_RETRY:
                    attempt = DunningAttempt.objects.create(
                        subscription=subscription,
                        invoice=invoice,
                        attempt_number=action.attempt_number,
                        scheduled_for=action.run_at,
                    )
                    logger.info(
                        "Dunning attempt scheduled",
                        extra={
                            "subscription_id": str(subscription.id),
                            "attempt_number": attempt.attempt_number,
                            "scheduled_for": attempt.scheduled_for.isoformat(),
                        },
                    )
                    side_effects.append(
                        effects.schedule_retry(
                            attempt.id, subscription.id, attempt.attempt_number, attempt.scheduled_for
                        )
                    )

                case DunningActionKind.CANCEL_RETRY:
                    attempt = DunningAttempt.objects.get(
                        subscription=subscription,
                        invoice=invoice,
                        attempt_number=action.attempt_number,
                    )
                    attempt.resolve(DunningOutcome.ABANDONED)
                    attempt.save()
                    side_effects.append(
                        effects.cancel_retry(attempt.id, subscription.id, attempt.attempt_number)
                    )

                case DunningActionKind.CANCEL_SUBSCRIPTION:
                    old_state = subscription.state
                    side_effects.extend(cls.abandon_pending(subscription))
                    subscription.cancel(reason="payment_failed")
                    subscription.save()
                    logger.warning(
                        "Subscription cancelled after exhausting dunning",
                        extra={
                            "subscription_id": str(subscription.id),
                            "attempts_made": action.attempt_number,
                        },
                    )
                    side_effects.append(
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            subscription.state,
                            "Cancelled after final payment retry failed",
                        )
                    )
                    side_effects.append(
                        effects.provider_sync(
                            "cancel",
                            subscription.id,
                            provider_subscription_id=subscription.provider_subscription_id,
                            idempotency_key=IdempotencyKeyGenerator.generate(
                                "cancel_subscription", subscription.id, subscription.version
                            ),
                        )
                    )

        return side_effects


__all__ = ["DunningService"]
