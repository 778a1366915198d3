"""
Concurrency control for billing operations.

Three complementary mechanisms:

1. **Row locks** (locked_row)
   - select_for_update inside the caller's transaction
   - Serialises webhook handlers touching the same Order or Subscription
   - Use for: every state transition driven by an event

2. **Optimistic locking** (check_version)
   - Version-based conflict detection between a preview and its commit
   - Use for: user-confirmed subscription changes

3. **Distributed locks** (DistributedLock)
   - Redis-based mutual exclusion across worker processes
   - Use for: provider calls made outside any database transaction,
     such as executing a dunning retry

Usage:
    from billing.locks import DistributedLock, check_version, locked_row

    with transaction.atomic():
        order = locked_row(Order, OrderNotFoundError, provider_payment_ref="pi_123")
        order.complete()
        order.save()

    with transaction.atomic():
        subscription = check_version(Subscription, subscription_id, expected_version=3)

    with DistributedLock(f"dunning:{subscription_id}", ttl=60):
        StripeAdapter.retry_invoice_payment(invoice_id)
"""

from __future__ import annotations

import logging
import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from billing.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)

logger = logging.getLogger(__name__)


# =============================================================================
# Row Locks
# =============================================================================


def locked_row(
    model_class: type[T],
    not_found: type[NotFoundError] = NotFoundError,
    **lookup: Any,
) -> T:
    """
    Fetch a single row with SELECT ... FOR UPDATE.

    Must be called inside transaction.atomic(); the lock is held until the
    enclosing transaction ends.

    Args:
        model_class: Model to query
        not_found: NotFoundError subclass raised when no row matches
        **lookup: Filter kwargs identifying the row

    Raises:
        not_found: If no row matches the lookup
    """
    instance = model_class.objects.select_for_update().filter(**lookup).first()
    if instance is None:
        model_name = model_class.__name__
        raise not_found(
            f"{model_name} not found",
            details={key: str(value) for key, value in lookup.items()},
        )
    return instance


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
    not_found: type[NotFoundError] = NotFoundError,
) -> T:
    """
    Lock a record for update after verifying its version.

    Combines the optimistic check (the caller saw ``expected_version``)
    with a pessimistic row lock for the write that follows.

    Args:
        model_class: Model class with a ``version`` field
        pk: Primary key of the record
        expected_version: Version the caller based its decision on
        not_found: NotFoundError subclass raised when the row is missing

    Returns:
        The locked model instance

    Raises:
        StaleRecordError: If the version changed since the caller read it
        not_found: If the record doesn't exist

    Note:
        Must be called within a transaction. The lock is held until the
        transaction commits or rolls back.
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        current_version = (
            model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        )
        model_name = model_class.__name__
        if current_version is None:
            raise not_found(
                f"{model_name} {pk} not found",
                details={"pk": str(pk)},
            )
        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current_version})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Token ownership means only the holder can release or extend the lock;
    the TTL frees it if the holder crashes.

    Example:
        with DistributedLock(f"dunning:{subscription_id}", ttl=60):
            retry_invoice()

        lock = DistributedLock("dunning:sub_1", blocking=False)
        try:
            with lock:
                retry_invoice()
        except LockAcquisitionError:
            # Another worker is already retrying this subscription
            ...

    Args:
        key: Lock identifier (prefixed with "billing:lock:")
        ttl: Seconds until the lock expires on its own
        blocking: If True, acquire() waits up to ``timeout`` seconds
        timeout: Maximum wait time in blocking mode
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"billing:lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: If the lock is held elsewhere (non-blocking)
                or could not be obtained within ``timeout`` (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if not self.blocking:
            if self._try_acquire(redis):
                return True
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self._try_acquire(redis):
                return True
            time.sleep(self.POLL_INTERVAL)

        self._token = None
        logger.warning("Lock wait timed out", extra={"lock_key": self.key, "timeout": self.timeout})
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """Release the lock if held. Safe to call more than once."""
        if self._token is None:
            return False
        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the remaining TTL if the lock is still ours."""
        if self._token is None:
            return False
        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


__all__ = [
    "DistributedLock",
    "check_version",
    "locked_row",
]
