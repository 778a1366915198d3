"""
Tests for billing concurrency control: row locks, version checks and the
Redis-based DistributedLock.
"""

import uuid

import pytest

from billing.exceptions import (
    LockAcquisitionError,
    OrderNotFoundError,
    StaleRecordError,
    SubscriptionNotFoundError,
)
from billing.locks import DistributedLock, check_version, locked_row
from billing.models import Order, Subscription
from billing.tests.factories import OrderFactory, SubscriptionFactory


class TestLockedRow:
    def test_returns_matching_row(self, db):
        order = OrderFactory()

        locked = locked_row(Order, OrderNotFoundError, provider_payment_ref=order.provider_payment_ref)

        assert locked.pk == order.pk

    def test_missing_row_raises_given_error(self, db):
        with pytest.raises(OrderNotFoundError) as exc_info:
            locked_row(Order, OrderNotFoundError, provider_payment_ref="pi_missing")

        assert exc_info.value.error_code == "ORDER_NOT_FOUND"


class TestCheckVersion:
    def test_matching_version(self, db):
        subscription = SubscriptionFactory()

        locked = check_version(Subscription, subscription.pk, 1)

        assert locked.pk == subscription.pk

    def test_stale_version(self, db):
        subscription = SubscriptionFactory()
        subscription.cancel_at_period_end = True
        subscription.save()

        with pytest.raises(StaleRecordError) as exc_info:
            check_version(Subscription, subscription.pk, 1)

        assert exc_info.value.details["expected_version"] == 1
        assert exc_info.value.details["current_version"] == 2

    def test_missing_record(self, db):
        with pytest.raises(SubscriptionNotFoundError):
            check_version(Subscription, uuid.uuid4(), 1, SubscriptionNotFoundError)


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_success(self, mock_redis):
        """Should acquire lock when available."""
        lock = DistributedLock("dunning:sub_1", ttl=60, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held is True
        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "billing:lock:dunning:sub_1"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 60

    def test_non_blocking_raises_when_held(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("dunning:sub_1", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details["key"] == "billing:lock:dunning:sub_1"
        assert lock.is_held is False

    def test_blocking_waits_and_acquires(self, mock_redis):
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("dunning:sub_1", blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_timeout(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("dunning:sub_1", blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details["timeout"] == 0.1

    def test_release_only_if_owned(self, mock_redis):
        mock_redis.eval.return_value = 0
        lock = DistributedLock("dunning:sub_1", blocking=False)
        lock.acquire()

        assert lock.release() is False
        assert lock.is_held is False

    def test_release_without_acquire(self, mock_redis):
        lock = DistributedLock("dunning:sub_1")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_extend(self, mock_redis):
        lock = DistributedLock("dunning:sub_1", ttl=30, blocking=False)
        lock.acquire()

        assert lock.extend(90) is True
        args = mock_redis.eval.call_args[0]
        assert args[2] == "billing:lock:dunning:sub_1"
        assert args[4] == 90

    def test_context_manager_releases_on_exception(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("dunning:sub_1"):
                raise RuntimeError("boom")

        mock_redis.eval.assert_called_once()
