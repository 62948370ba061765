"""
Distributed lock manager for exclusive jobs.

A lock is a single key written with create-if-absent semantics and a TTL.
The value is unique per acquisition, and release/extend only touch the key
while it still holds that exact value, so a holder whose lock expired can
never delete or prolong a lock another instance has since acquired.

Every successful acquisition also takes a fencing token from a per-job
counter that has no TTL. Tokens keep increasing across lock expiry and
across instances, so downstream writers can reject stale holders.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar
from uuid import uuid4

from jobrunner.config import LockConfig
from jobrunner.constants import (
    FENCING_KEY_PREFIX,
    LOCK_KEY_PREFIX,
    MAX_LOCK_RETRY_DELAY_MS,
    SPAN_ACQUIRE_LOCK,
)
from jobrunner.errors import LockError
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.observability.tracing import set_span_attributes, start_span
from jobrunner.store.base import KeyValueStore
from jobrunner.types.lock import LockInfo, WithLockResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def lock_key(job_id: str) -> str:
    """Store key holding the lock for a job."""
    return f"{LOCK_KEY_PREFIX}:{job_id}"


def fencing_key(job_id: str) -> str:
    """Store key holding the fencing counter for a job."""
    return f"{FENCING_KEY_PREFIX}:{job_id}"


class LockHandle:
    """
    A held lock.

    Owned by the lock manager between acquisition and release. The handle
    stops reporting ``is_held`` once released, or once an extension fails
    because the key expired or changed owner.
    """

    def __init__(
        self,
        manager: "JobLockManager",
        job_id: str,
        owner_value: str,
        fencing_token: int,
        ttl_ms: int,
    ):
        self.job_id = job_id
        self.lock_key = lock_key(job_id)
        self.owner_value = owner_value
        self.fencing_token = fencing_token
        self.ttl_ms = ttl_ms
        self.acquired = True
        self._manager = manager
        self._held = True
        self._extend_task: asyncio.Task | None = None

    @property
    def is_held(self) -> bool:
        """Whether this process still believes it owns the lock."""
        return self._held

    async def release(self) -> bool:
        """
        Release the lock if this handle still owns the key.

        Returns:
            True if the key was deleted by this call.
        """
        if not self._held:
            return False

        self._held = False
        self._stop_auto_extend()
        self._manager._forget(self)

        try:
            released = await self._manager.store.compare_and_delete(self.lock_key, self.owner_value)
        except Exception as e:
            logger.error(
                f"Lock release error: {e}",
                extra={"job_id": self.job_id, "fencing_token": self.fencing_token},
            )
            return False

        if released:
            self._manager.metrics.record_lock_released(self.job_id)
            logger.debug(
                "Lock released",
                extra={"job_id": self.job_id, "fencing_token": self.fencing_token},
            )
        else:
            logger.warning(
                "Lock was no longer owned at release (expired or reclaimed)",
                extra={"job_id": self.job_id, "fencing_token": self.fencing_token},
            )

        return released

    async def extend(self, ttl_ms: int | None = None) -> bool:
        """
        Reset the lock TTL if this handle still owns the key.

        Args:
            ttl_ms: New TTL. Defaults to the TTL used at acquisition.

        Returns:
            True if the TTL was updated.
        """
        if not self._held:
            return False

        ttl_ms = ttl_ms or self.ttl_ms

        try:
            extended = await self._manager.store.compare_and_expire(
                self.lock_key, self.owner_value, ttl_ms
            )
        except Exception as e:
            logger.error(f"Lock extension error: {e}", extra={"job_id": self.job_id})
            return False

        if extended:
            self.ttl_ms = ttl_ms
            self._manager.metrics.record_lock_extended(self.job_id)
            logger.debug(
                "Lock extended",
                extra={"job_id": self.job_id, "ttl_ms": ttl_ms, "fencing_token": self.fencing_token},
            )
        else:
            logger.warning(
                "Lock extension failed (expired or stolen?)",
                extra={"job_id": self.job_id, "fencing_token": self.fencing_token},
            )

        return extended

    def start_auto_extend(self, interval_ms: int) -> None:
        """Extend the TTL every ``interval_ms`` until released or lost."""
        if interval_ms <= 0 or self._extend_task is not None:
            return
        self._extend_task = asyncio.create_task(self._auto_extend_loop(interval_ms))

    async def _auto_extend_loop(self, interval_ms: int) -> None:
        while self._held:
            await asyncio.sleep(interval_ms / 1000)
            if not self._held:
                break
            if not await self.extend():
                logger.warning("Auto-extend failed, lock may be lost", extra={"job_id": self.job_id})
                self._held = False
                self._manager._forget(self)
                break

    def _stop_auto_extend(self) -> None:
        task = self._extend_task
        self._extend_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()


class JobLockManager:
    """
    Distributed lock manager for scheduled jobs.

    Provides exclusive execution across instances that share one store.
    Store failures during acquisition fail closed: the lock is reported as
    not acquired and the job is skipped rather than run twice.
    """

    def __init__(
        self,
        store: KeyValueStore,
        instance_id: str | None = None,
        config: LockConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the lock manager.

        Args:
            store: Shared key-value store.
            instance_id: Owner identity recorded in lock values.
            config: Lock settings.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self.store = store
        self.instance_id = instance_id or f"lock-manager-{uuid4().hex[:12]}"
        self.config = config or LockConfig()
        self.metrics = metrics or get_metrics()
        self._locks: dict[str, LockHandle] = {}

        logger.info(
            "JobLockManager initialized",
            extra={"instance_id": self.instance_id, "ttl_ms": self.config.ttl_ms},
        )

    async def acquire(self, job_id: str, ttl_ms: int | None = None) -> LockHandle | None:
        """
        Try to acquire the lock for a job.

        A lock already held by this manager is not handed out again, so two
        coroutines in the same process contend exactly like two processes.

        Args:
            job_id: Job to lock.
            ttl_ms: Lock expiry. Defaults to ``config.ttl_ms``.

        Returns:
            LockHandle on success, None if held elsewhere or the store failed.
        """
        ttl_ms = ttl_ms or self.config.ttl_ms
        key = lock_key(job_id)
        delay_ms = self.config.retry_delay_ms
        start = time.monotonic()

        with start_span(
            SPAN_ACQUIRE_LOCK, job_id=job_id, instance_id=self.instance_id, ttl_ms=ttl_ms
        ) as span:
            for attempt in range(1, self.config.retries + 2):
                owner_value = self._owner_value(ttl_ms)

                try:
                    created = await self.store.set_if_absent(key, owner_value, ttl_ms)
                except Exception as e:
                    logger.error(
                        f"Lock acquisition error, failing closed: {e}",
                        extra={"job_id": job_id, "attempt": attempt},
                    )
                    break

                if created:
                    handle = await self._issue_handle(job_id, owner_value, ttl_ms)
                    if handle is None:
                        break

                    duration = time.monotonic() - start
                    self.metrics.record_lock_acquired(job_id, duration)
                    set_span_attributes(span, fencing_token=handle.fencing_token, attempt=attempt)

                    logger.debug(
                        "Lock acquired",
                        extra={
                            "job_id": job_id,
                            "fencing_token": handle.fencing_token,
                            "attempt": attempt,
                            "duration_ms": round(duration * 1000, 2),
                        },
                    )
                    return handle

                if attempt <= self.config.retries:
                    logger.debug(
                        "Lock acquisition retry",
                        extra={"job_id": job_id, "attempt": attempt, "delay_ms": delay_ms},
                    )
                    await asyncio.sleep(delay_ms / 1000)
                    if self.config.exponential_backoff:
                        delay_ms = min(delay_ms * 2, MAX_LOCK_RETRY_DELAY_MS)

            set_span_attributes(span, acquired=False)

        self.metrics.record_lock_failed(job_id)
        logger.debug("Lock not acquired", extra={"job_id": job_id})
        return None

    async def with_lock(
        self,
        job_id: str,
        fn: Callable[[LockHandle], Awaitable[T]],
        ttl_ms: int | None = None,
    ) -> WithLockResult[T]:
        """
        Run ``fn`` while holding the job's lock.

        The lock is released when ``fn`` returns or raises. An exception
        from ``fn`` is returned in ``error`` rather than raised.

        Args:
            job_id: Job to lock.
            fn: Coroutine function receiving the handle.
            ttl_ms: Lock expiry.

        Returns:
            WithLockResult with ``acquired=False`` if the lock was unavailable.
        """
        handle = await self.acquire(job_id, ttl_ms)
        if handle is None:
            return WithLockResult(acquired=False)

        try:
            result = await fn(handle)
            return WithLockResult(acquired=True, result=result, fencing_token=handle.fencing_token)
        except Exception as e:
            return WithLockResult(acquired=True, error=e, fencing_token=handle.fencing_token)
        finally:
            await handle.release()

    async def is_locked(self, job_id: str) -> bool:
        """Check whether any instance currently holds the job's lock."""
        try:
            return await self.store.exists(lock_key(job_id))
        except Exception as e:
            logger.error(f"Lock check error: {e}", extra={"job_id": job_id})
            return False

    async def get_lock_info(self, job_id: str) -> LockInfo | None:
        """
        Describe the current holder of a job's lock.

        Returns:
            LockInfo, or None when unlocked or unreadable.
        """
        try:
            raw = await self.store.get(lock_key(job_id))
            if raw is None:
                return None
            token = await self.store.get(fencing_key(job_id))
        except Exception as e:
            logger.error(f"Lock info error: {e}", extra={"job_id": job_id})
            return None

        try:
            data = json.loads(raw)
            return LockInfo(
                job_id=job_id,
                owner=data["owner"],
                acquired_at=datetime.fromisoformat(data["acquired_at"]),
                ttl_ms=int(data["ttl_ms"]),
                fencing_token=int(token) if token is not None else None,
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable lock value: {e}", extra={"job_id": job_id})
            return None

    async def current_fencing_token(self, job_id: str) -> int:
        """
        Latest fencing token issued for a job (0 if none yet).

        Raises:
            LockError: If the store cannot be read.
        """
        try:
            raw = await self.store.get(fencing_key(job_id))
        except Exception as e:
            raise LockError(f"Cannot read fencing token for {job_id}: {e}") from e
        return int(raw) if raw is not None else 0

    async def force_release(self, job_id: str) -> bool:
        """
        Delete a job's lock regardless of owner.

        Only for operator recovery: a running holder is not notified.
        """
        handle = self._locks.pop(job_id, None)
        if handle is not None:
            handle._held = False
            handle._stop_auto_extend()

        try:
            deleted = await self.store.delete(lock_key(job_id))
        except Exception as e:
            logger.error(f"Force release error: {e}", extra={"job_id": job_id})
            return False

        if deleted:
            logger.warning("Lock force released", extra={"job_id": job_id})
        return deleted

    async def release_all(self) -> int:
        """
        Release every lock held by this manager.

        Best effort, used on shutdown. Locks held by other instances are
        untouched.

        Returns:
            Number of locks actually released.
        """
        handles = list(self._locks.values())
        released = 0

        for handle in handles:
            if await handle.release():
                released += 1

        logger.info(
            "All locks released",
            extra={"instance_id": self.instance_id, "count": released, "held": len(handles)},
        )
        return released

    @property
    def held_locks(self) -> list[str]:
        """Job ids this manager currently holds."""
        return list(self._locks)

    async def _issue_handle(self, job_id: str, owner_value: str, ttl_ms: int) -> LockHandle | None:
        """Take a fencing token for a freshly written lock key."""
        try:
            token = await self.store.incr(fencing_key(job_id))
        except Exception as e:
            logger.error(
                f"Fencing token error, releasing lock: {e}",
                extra={"job_id": job_id},
            )
            try:
                await self.store.compare_and_delete(lock_key(job_id), owner_value)
            except Exception as release_error:
                logger.error(
                    f"Lock cleanup failed, key will expire by TTL: {release_error}",
                    extra={"job_id": job_id},
                )
            return None

        handle = LockHandle(self, job_id, owner_value, token, ttl_ms)
        self._locks[job_id] = handle
        handle.start_auto_extend(self.config.auto_extend_ms)
        return handle

    def _forget(self, handle: LockHandle) -> None:
        if self._locks.get(handle.job_id) is handle:
            del self._locks[handle.job_id]

    def _owner_value(self, ttl_ms: int) -> str:
        return json.dumps(
            {
                "owner": self.instance_id,
                "nonce": uuid4().hex,
                "acquired_at": datetime.now(UTC).isoformat(),
                "ttl_ms": ttl_ms,
            }
        )
