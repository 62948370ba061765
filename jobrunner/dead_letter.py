"""
Dead letter queue for permanently failed job executions.

Entries are keyed by ``job_id:execution_id`` so writing the same execution
twice leaves exactly one entry. Entries are never modified after they are
written; they leave the queue through retention expiry, explicit removal,
or a successful replay.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from jobrunner.config import DeadLetterConfig
from jobrunner.constants import DLQ_INDEX_KEY, DLQ_KEY_PREFIX
from jobrunner.errors import DeadLetterError
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.store.base import KeyValueStore
from jobrunner.types.dead_letter import DeadLetterEntry, DeadLetterQuery, DeadLetterStats
from jobrunner.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

ReplayExecutor = Callable[[DeadLetterEntry], Awaitable[JobResult | None]]


def entry_key(entry_id: str) -> str:
    """Store key holding one entry."""
    return f"{DLQ_KEY_PREFIX}:entry:{entry_id}"


def job_index_key(job_id: str) -> str:
    """Store key of the per-job entry index."""
    return f"{DLQ_KEY_PREFIX}:job:{job_id}"


def job_id_of(entry_id: str) -> str:
    """Job id encoded in an entry id (``job_id:execution_id``)."""
    return entry_id.rsplit(":", 1)[0]


class DeadLetterQueue:
    """
    Durable record of executions that exhausted their retries.

    Stored in the shared key-value store, so entries written by any
    instance are visible to all of them.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: DeadLetterConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            store: Shared key-value store.
            config: Retention and size limits.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._store = store
        self._config = config or DeadLetterConfig()
        self._metrics = metrics or get_metrics()

        logger.info(
            "DeadLetterQueue initialized",
            extra={
                "retention_ms": self._config.retention_ms,
                "max_entries": self._config.max_entries,
            },
        )

    @property
    def retention_seconds(self) -> int:
        return max(1, -(-self._config.retention_ms // 1000))

    async def add(
        self,
        context: JobContext,
        errors: list[str],
        last_result: JobResult | None = None,
    ) -> DeadLetterEntry:
        """
        Record a failed execution.

        Idempotent per ``(job_id, execution_id)``: a repeated call overwrites
        the same entry (last write wins) and the indexes are sets.

        Args:
            context: Context of the final attempt.
            errors: Error messages of the final attempt.
            last_result: Final attempt result, if any.

        Returns:
            The stored entry.
        """
        entry = DeadLetterEntry(
            id=DeadLetterEntry.make_id(context.job_id, context.execution_id),
            job_id=context.job_id,
            execution_id=context.execution_id,
            attempts=context.attempt,
            errors=list(errors),
            last_result=last_result,
            dead_lettered_at=datetime.now(UTC),
        )

        await self._store.set(entry_key(entry.id), entry.model_dump_json(), self.retention_seconds)
        is_new = await self._store.sadd(DLQ_INDEX_KEY, entry.id) > 0
        await self._store.sadd(job_index_key(entry.job_id), entry.id)

        if is_new:
            self._metrics.record_dead_lettered(entry.job_id)
        self._metrics.update_dlq_size(await self._store.scard(DLQ_INDEX_KEY))

        logger.info(
            "Added to dead letter queue",
            extra={
                "entry_id": entry.id,
                "job_id": entry.job_id,
                "attempts": entry.attempts,
                "errors": len(entry.errors),
            },
        )

        return entry

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        """Get an entry by id, or None if missing, expired or unreadable."""
        raw = await self._store.get(entry_key(entry_id))
        if raw is None:
            return None

        try:
            return DeadLetterEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable dead letter entry", extra={"entry_id": entry_id})
            return None

    async def query(self, query: DeadLetterQuery | None = None) -> list[DeadLetterEntry]:
        """
        List entries, newest first.

        Args:
            query: Optional job filter, ``since`` cutoff and pagination.

        Returns:
            Matching entries.
        """
        query = query or DeadLetterQuery()
        index = job_index_key(query.job_id) if query.job_id else DLQ_INDEX_KEY

        entries: list[DeadLetterEntry] = []
        for entry_id in await self._store.smembers(index):
            entry = await self.get(entry_id)
            if entry is None:
                continue
            if query.since and entry.dead_lettered_at < query.since:
                continue
            entries.append(entry)

        entries.sort(key=lambda e: e.dead_lettered_at, reverse=True)
        return entries[query.offset : query.offset + query.limit]

    async def list_by_job(self, job_id: str, limit: int = 50) -> list[DeadLetterEntry]:
        """Get the newest entries for one job."""
        return await self.query(DeadLetterQuery(job_id=job_id, limit=limit))

    async def count(self) -> int:
        """Number of indexed entries (may include ones whose record expired)."""
        return await self._store.scard(DLQ_INDEX_KEY)

    async def get_stats(self) -> DeadLetterStats:
        """Summarize the queue."""
        by_job: dict[str, int] = {}
        oldest: datetime | None = None
        newest: datetime | None = None
        total = 0

        for entry_id in await self._store.smembers(DLQ_INDEX_KEY):
            entry = await self.get(entry_id)
            if entry is None:
                continue
            total += 1
            by_job[entry.job_id] = by_job.get(entry.job_id, 0) + 1
            if oldest is None or entry.dead_lettered_at < oldest:
                oldest = entry.dead_lettered_at
            if newest is None or entry.dead_lettered_at > newest:
                newest = entry.dead_lettered_at

        return DeadLetterStats(total=total, by_job=by_job, oldest_entry=oldest, newest_entry=newest)

    async def remove(self, entry_id: str) -> bool:
        """
        Purge an entry.

        Returns:
            True if the entry existed.
        """
        entry = await self.get(entry_id)
        if entry is None:
            await self._drop_index_members(entry_id)
            return False

        await self._store.delete(entry_key(entry_id))
        await self._store.srem(DLQ_INDEX_KEY, entry_id)
        await self._store.srem(job_index_key(entry.job_id), entry_id)
        self._metrics.update_dlq_size(await self._store.scard(DLQ_INDEX_KEY))

        logger.info("Entry removed from dead letter queue", extra={"entry_id": entry_id, "job_id": entry.job_id})
        return True

    async def remove_by_job(self, job_id: str) -> int:
        """Purge every entry of a job. Returns the number removed."""
        removed = 0
        for entry_id in await self._store.smembers(job_index_key(job_id)):
            if await self.remove(entry_id):
                removed += 1
            else:
                await self._store.srem(job_index_key(job_id), entry_id)

        logger.info("Removed entries by job", extra={"job_id": job_id, "count": removed})
        return removed

    async def replay(self, entry_id: str, executor: ReplayExecutor) -> JobResult | None:
        """
        Re-run a dead-lettered execution.

        The entry is removed only when the executor reports success; a
        failed or skipped replay leaves it in place.

        Args:
            entry_id: Entry to replay.
            executor: Coroutine that re-runs the job for the entry.

        Returns:
            The executor's result.

        Raises:
            DeadLetterError: If the entry does not exist.
        """
        entry = await self.get(entry_id)
        if entry is None:
            raise DeadLetterError(f"Dead letter entry not found: {entry_id}")

        logger.info("Replaying dead letter entry", extra={"entry_id": entry_id, "job_id": entry.job_id})

        result = await executor(entry)

        if result is not None and result.success:
            await self.remove(entry_id)
            logger.info("Replay succeeded", extra={"entry_id": entry_id, "job_id": entry.job_id})
        else:
            logger.warning("Replay did not succeed, entry kept", extra={"entry_id": entry_id, "job_id": entry.job_id})

        return result

    async def _drop_index_members(self, entry_id: str) -> None:
        await self._store.srem(DLQ_INDEX_KEY, entry_id)
        await self._store.srem(job_index_key(job_id_of(entry_id)), entry_id)

    async def cleanup(self) -> int:
        """
        Enforce retention and the size limit.

        Drops index members whose record already expired, removes entries
        older than the retention window, then trims the oldest entries
        beyond ``max_entries``.

        Returns:
            Number of entries removed.
        """
        cutoff = datetime.now(UTC) - timedelta(milliseconds=self._config.retention_ms)
        removed = 0
        live: list[DeadLetterEntry] = []

        for entry_id in await self._store.smembers(DLQ_INDEX_KEY):
            entry = await self.get(entry_id)
            if entry is None:
                await self._drop_index_members(entry_id)
                continue
            if entry.dead_lettered_at < cutoff:
                await self.remove(entry_id)
                removed += 1
                continue
            live.append(entry)

        excess = len(live) - self._config.max_entries
        if excess > 0:
            live.sort(key=lambda e: e.dead_lettered_at)
            for entry in live[:excess]:
                if await self.remove(entry.id):
                    removed += 1

        self._metrics.update_dlq_size(await self._store.scard(DLQ_INDEX_KEY))

        if removed > 0:
            logger.info("Dead letter queue cleanup", extra={"removed": removed})

        return removed
