"""
Dunning decisions.

DunningManager decides what happens after an invoice payment fails or
succeeds. It is a pure function of its inputs: it never touches the
database, the clock or the provider, and returns DunningAction
descriptors for the caller to apply.

Schedule:
    Each retry is offset from the previous attempt, not from the original
    failure. With the default (3, 5, 7) days a failure at T0 is retried at
    T0+3d, T0+8d and T0+15d. When the last retry fails the subscription is
    cancelled (not paused) and the customer gets a final notice.

Usage:
    from billing.dunning import DunningManager

    actions = DunningManager().on_payment_failed(subscription.id, 0, now)
    # [NOTIFY payment_failed, SCHEDULE_RETRY #1 at now+3d]
"""

from __future__ import annotations

import datetime
import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings

from core.exceptions import PolicyExhaustedError

DEFAULT_RETRY_DAYS = (3, 5, 7)

PAYMENT_FAILED_TEMPLATE = "payment_failed"
FINAL_NOTICE_TEMPLATE = "subscription_cancelled_nonpayment"


class DunningActionKind(str, enum.Enum):
    NOTIFY = "notify"
    SCHEDULE_RETRY = "schedule_retry"
    CANCEL_RETRY = "cancel_retry"
    CANCEL_SUBSCRIPTION = "cancel_subscription"


@dataclass(frozen=True)
class DunningAction:
    """A next step decided by the manager."""

    kind: DunningActionKind
    subscription_id: Any
    attempt_number: int | None = None
    run_at: datetime.datetime | None = None
    template: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DunningPolicy:
    """
    Retry offsets in days, one per attempt.

    Attempt numbers are 1-based. Asking for an attempt past the end of the
    schedule raises PolicyExhaustedError.
    """

    retry_days: tuple[int, ...] = DEFAULT_RETRY_DAYS

    def __post_init__(self) -> None:
        if not self.retry_days or any(days <= 0 for days in self.retry_days):
            raise ValueError("retry_days must be a non-empty sequence of positive day counts")

    @classmethod
    def from_settings(cls) -> DunningPolicy:
        days = getattr(settings, "BILLING_DUNNING_RETRY_DAYS", DEFAULT_RETRY_DAYS)
        return cls(retry_days=tuple(int(d) for d in days))

    @property
    def max_attempts(self) -> int:
        return len(self.retry_days)

    def offset_for(self, attempt_number: int) -> datetime.timedelta:
        if attempt_number < 1:
            raise ValueError("attempt_number is 1-based")
        if attempt_number > self.max_attempts:
            raise PolicyExhaustedError(
                f"Dunning schedule has {self.max_attempts} attempts; "
                f"attempt {attempt_number} does not exist",
                details={"attempt_number": attempt_number, "max_attempts": self.max_attempts},
            )
        return datetime.timedelta(days=self.retry_days[attempt_number - 1])

    def run_at(self, attempt_number: int, previous_time: datetime.datetime) -> datetime.datetime:
        """When attempt ``attempt_number`` runs, given when the previous one ran."""
        return previous_time + self.offset_for(attempt_number)


class DunningManager:
    """Pure dunning decision function."""

    def __init__(self, policy: DunningPolicy | None = None) -> None:
        self.policy = policy or DunningPolicy()

    def on_payment_failed(
        self,
        subscription_id: Any,
        attempt_number: int,
        previous_time: datetime.datetime,
    ) -> list[DunningAction]:
        """
        Decide what follows a failed charge.

        Args:
            subscription_id: Subscription the invoice belongs to
            attempt_number: Attempt that just failed; 0 for the original
                invoice charge
            previous_time: When that attempt ran

        Returns:
            [NOTIFY, SCHEDULE_RETRY] while retries remain, otherwise
            [CANCEL_SUBSCRIPTION, NOTIFY final notice]
        """
        next_attempt = attempt_number + 1
        try:
            run_at = self.policy.run_at(next_attempt, previous_time)
        except PolicyExhaustedError:
            return [
                DunningAction(
                    DunningActionKind.CANCEL_SUBSCRIPTION,
                    subscription_id,
                    attempt_number=attempt_number,
                ),
                DunningAction(
                    DunningActionKind.NOTIFY,
                    subscription_id,
                    attempt_number=attempt_number,
                    template=FINAL_NOTICE_TEMPLATE,
                    context={"attempts_made": attempt_number},
                ),
            ]

        return [
            DunningAction(
                DunningActionKind.NOTIFY,
                subscription_id,
                attempt_number=next_attempt,
                template=PAYMENT_FAILED_TEMPLATE,
                context={
                    "next_attempt": next_attempt,
                    "retry_at": run_at.isoformat(),
                    "attempts_remaining": self.policy.max_attempts - attempt_number,
                },
            ),
            DunningAction(
                DunningActionKind.SCHEDULE_RETRY,
                subscription_id,
                attempt_number=next_attempt,
                run_at=run_at,
            ),
        ]

    def on_payment_succeeded(
        self,
        subscription_id: Any,
        pending_attempt_numbers: Iterable[int],
    ) -> list[DunningAction]:
        """A successful charge cancels every attempt still scheduled."""
        return [
            DunningAction(DunningActionKind.CANCEL_RETRY, subscription_id, attempt_number=number)
            for number in sorted(set(pending_attempt_numbers))
        ]


__all__ = [
    "DEFAULT_RETRY_DAYS",
    "DunningAction",
    "DunningActionKind",
    "DunningManager",
    "DunningPolicy",
]
