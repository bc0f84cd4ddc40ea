"""
Concurrency control utilities for fees operations.

Row-level pessimistic locks (select_for_update) serialize writers on a single
invoice, payment, period, request or intent. This module adds the two
complementary mechanisms used around them:

1. **Distributed Locks** (DistributedLock)
   - Redis-based mutual exclusion across processes/servers
   - TTL prevents deadlocks from crashed workers
   - Use for: the scheduled penalty sweep (one sweep per institution)

2. **Optimistic Locking** (check_version)
   - Version-based conflict detection for callers holding a version
   - Use for: posting or cancelling an invoice read earlier (LedgerService
     post_invoice / cancel_invoice with expected_version)

Usage:

    from fees.locks import DistributedLock, check_version

    with DistributedLock(f"penalty_sweep:{institution_id}", ttl=300, blocking=False):
        PenaltyEngine.sweep(institution_id=institution_id)

    with transaction.atomic():
        invoice = check_version(Invoice, invoice_id, expected_version=3)
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from fees.exceptions import FeesNotFoundError, LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Token-based ownership means a worker can only release a lock it
    acquired itself.

    Example:
        lock = DistributedLock("penalty_sweep:all", ttl=300, blocking=False)
        try:
            with lock:
                run_sweep()
        except LockAcquisitionError:
            logger.info("Sweep already running elsewhere")

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Lock TTL in seconds (auto-releases after this time)
        blocking: If True, acquire() waits until lock is available
        timeout: Maximum wait time in seconds (only if blocking=True)
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Attempt to acquire the lock.

        Returns:
            True if lock was acquired

        Raises:
            LockAcquisitionError: If lock couldn't be acquired
        """
        token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.monotonic() + self.timeout
            while time.monotonic() < end_time:
                if self._try_acquire(redis, token):
                    return True
                time.sleep(0.05)

            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis, token):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis, token: str) -> bool:
        acquired = bool(redis.set(self.key, token, nx=True, ex=self.ttl))
        if acquired:
            self._token = token
        return acquired

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Safe to call multiple times; the Lua script only deletes the key
        while it still carries our token.
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Atomically check version and lock a record for update.

    Args:
        model_class: Django model class (must have a 'version' field)
        pk: Primary key of the record
        expected_version: Version the caller read earlier

    Returns:
        The row-locked model instance

    Raises:
        StaleRecordError: If the version moved on (concurrent modification)
        FeesNotFoundError: If the record doesn't exist

    Note:
        Call inside a transaction; the row lock is held until it ends.
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )

        if instance is None:
            model_name = model_class.__name__
            current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
            if current is None:
                raise FeesNotFoundError(
                    f"{model_name} {pk} not found",
                    error_code=f"{model_name.upper()}_NOT_FOUND",
                    details={"pk": str(pk)},
                )

            raise StaleRecordError(
                f"{model_name} {pk} has been modified "
                f"(expected version {expected_version}, current {current})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": current,
                },
            )

        return instance


__all__ = [
    "DistributedLock",
    "check_version",
]
