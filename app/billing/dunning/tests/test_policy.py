"""
Tests for the pure dunning policy and decision function.

No database access: DunningManager returns descriptors only.
"""

import datetime
import uuid

import pytest

from core.exceptions import PolicyExhaustedError
from billing.dunning import (
    DunningActionKind,
    DunningManager,
    DunningPolicy,
)

T0 = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


@pytest.fixture
def subscription_id():
    return uuid.uuid4()


@pytest.fixture
def manager():
    return DunningManager(DunningPolicy(retry_days=(3, 5, 7)))


# =============================================================================
# DunningPolicy
# =============================================================================


class TestDunningPolicy:
    """Tests for retry offsets."""

    def test_default_schedule(self):
        """Should default to 3, 5 and 7 days."""
        policy = DunningPolicy()

        assert policy.retry_days == (3, 5, 7)
        assert policy.max_attempts == 3

    def test_offsets(self):
        """Should return the configured offset per attempt."""
        policy = DunningPolicy()

        assert policy.offset_for(1) == datetime.timedelta(days=3)
        assert policy.offset_for(2) == datetime.timedelta(days=5)
        assert policy.offset_for(3) == datetime.timedelta(days=7)

    def test_beyond_schedule_raises(self):
        """Should raise PolicyExhaustedError past the last attempt."""
        with pytest.raises(PolicyExhaustedError) as exc_info:
            DunningPolicy().offset_for(4)

        assert exc_info.value.details == {"attempt_number": 4, "max_attempts": 3}

    def test_attempt_numbers_are_one_based(self):
        """Should reject attempt 0."""
        with pytest.raises(ValueError):
            DunningPolicy().offset_for(0)

    def test_rejects_empty_schedule(self):
        """Should reject an empty or non-positive schedule."""
        with pytest.raises(ValueError):
            DunningPolicy(retry_days=())
        with pytest.raises(ValueError):
            DunningPolicy(retry_days=(3, 0))

    def test_from_settings(self, settings):
        """Should read the schedule from settings."""
        settings.BILLING_DUNNING_RETRY_DAYS = [1, 2]

        assert DunningPolicy.from_settings().retry_days == (1, 2)


# =============================================================================
# DunningManager
# =============================================================================


class TestDunningManagerFailure:
    """Tests for decisions after a failed charge."""

    def test_initial_failure_schedules_first_attempt(self, manager, subscription_id):
        """Should notify and schedule attempt #1 three days out."""
        actions = manager.on_payment_failed(subscription_id, 0, T0)

        assert [a.kind for a in actions] == [
            DunningActionKind.NOTIFY,
            DunningActionKind.SCHEDULE_RETRY,
        ]
        retry = actions[1]
        assert retry.attempt_number == 1
        assert retry.run_at == T0 + datetime.timedelta(days=3)
        assert retry.subscription_id == subscription_id
        assert actions[0].template == "payment_failed"
        assert actions[0].context["attempts_remaining"] == 3

    def test_offsets_are_cumulative(self, manager, subscription_id):
        """Should offset each attempt from the previous one."""
        first = manager.on_payment_failed(subscription_id, 0, T0)[1]
        second = manager.on_payment_failed(subscription_id, 1, first.run_at)[1]
        third = manager.on_payment_failed(subscription_id, 2, second.run_at)[1]

        assert second.attempt_number == 2
        assert second.run_at == T0 + datetime.timedelta(days=8)
        assert third.attempt_number == 3
        assert third.run_at == T0 + datetime.timedelta(days=15)

    def test_last_failure_cancels(self, manager, subscription_id):
        """Should cancel and send a final notice after the last attempt fails."""
        actions = manager.on_payment_failed(subscription_id, 3, T0)

        assert [a.kind for a in actions] == [
            DunningActionKind.CANCEL_SUBSCRIPTION,
            DunningActionKind.NOTIFY,
        ]
        assert actions[1].template == "subscription_cancelled_nonpayment"

    def test_never_schedules_beyond_policy(self, manager, subscription_id):
        """Should never produce a fourth attempt."""
        scheduled = []
        previous, number = T0, 0
        while True:
            actions = manager.on_payment_failed(subscription_id, number, previous)
            retries = [a for a in actions if a.kind == DunningActionKind.SCHEDULE_RETRY]
            if not retries:
                break
            scheduled.append(retries[0].attempt_number)
            previous, number = retries[0].run_at, retries[0].attempt_number

        assert scheduled == [1, 2, 3]

    def test_is_pure(self, manager, subscription_id):
        """Should return equal decisions for equal inputs."""
        assert manager.on_payment_failed(subscription_id, 1, T0) == manager.on_payment_failed(
            subscription_id, 1, T0
        )


class TestDunningManagerSuccess:
    """Tests for decisions after a successful charge."""

    def test_success_cancels_pending_attempts(self, manager, subscription_id):
        """Should cancel every later attempt."""
        actions = manager.on_payment_succeeded(subscription_id, [3, 2])

        assert [a.kind for a in actions] == [DunningActionKind.CANCEL_RETRY] * 2
        assert [a.attempt_number for a in actions] == [2, 3]

    def test_success_without_pending(self, manager, subscription_id):
        """Should decide nothing when no attempts are pending."""
        assert manager.on_payment_succeeded(subscription_id, []) == []
