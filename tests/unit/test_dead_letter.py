"""
Unit tests for the dead letter queue.
"""

from datetime import UTC, datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from jobrunner.config import DeadLetterConfig
from jobrunner.constants import DLQ_INDEX_KEY
from jobrunner.dead_letter import DeadLetterQueue, entry_key, job_id_of, job_index_key
from jobrunner.errors import DeadLetterError
from jobrunner.observability.metrics import MetricsCollector
from jobrunner.store import MemoryStore
from jobrunner.types.dead_letter import DeadLetterEntry, DeadLetterQuery
from jobrunner.types.job import JobContext, JobResult


def make_context(job_id: str = "sync", execution_id: str = "exec-1", attempt: int = 2) -> JobContext:
    return JobContext(
        job_id=job_id,
        execution_id=execution_id,
        started_at=datetime.now(UTC),
        attempt=attempt,
    )


class TestDeadLetterAdd:
    """Tests for adding entries."""

    @pytest.mark.asyncio
    async def test_add_stores_entry(self, dead_letter_queue: DeadLetterQueue):
        last = JobResult.failure("boom", 12.0)

        entry = await dead_letter_queue.add(make_context(), ["boom"], last)

        assert entry.id == "sync:exec-1"
        assert entry.attempts == 2
        assert entry.errors == ["boom"]

        stored = await dead_letter_queue.get("sync:exec-1")
        assert stored == entry
        assert stored.last_result.errors == ["boom"]

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, dead_letter_queue: DeadLetterQueue):
        """The same execution written twice yields one entry."""
        await dead_letter_queue.add(make_context(), ["first"])
        await dead_letter_queue.add(make_context(), ["second"])

        assert await dead_letter_queue.count() == 1
        entries = await dead_letter_queue.list_by_job("sync")
        assert len(entries) == 1
        assert entries[0].errors == ["second"]

    @pytest.mark.asyncio
    async def test_rewrite_counts_entry_once(
        self, dead_letter_queue: DeadLetterQueue, registry: CollectorRegistry
    ):
        await dead_letter_queue.add(make_context(), ["first"])
        await dead_letter_queue.add(make_context(), ["second"])
        await dead_letter_queue.add(make_context("sync", "exec-2"), ["third"])

        assert registry.get_sample_value("scheduler_dlq_entries_total", {"job_id": "sync"}) == 2.0

    @pytest.mark.asyncio
    async def test_entries_expire_after_retention(
        self, dead_letter_queue: DeadLetterQueue, clock
    ):
        await dead_letter_queue.add(make_context(), ["boom"])

        clock.advance(61)

        assert await dead_letter_queue.get("sync:exec-1") is None

    @pytest.mark.asyncio
    async def test_get_unreadable_entry(self, dead_letter_queue: DeadLetterQueue, store: MemoryStore):
        await store.set(entry_key("sync:bad"), "{not json")

        assert await dead_letter_queue.get("sync:bad") is None


class TestDeadLetterQuery:
    """Tests for listing and stats."""

    @pytest.mark.asyncio
    async def test_query_filters_and_orders(self, dead_letter_queue: DeadLetterQueue):
        for i in range(3):
            await dead_letter_queue.add(make_context("sync", f"exec-{i}"), [f"error {i}"])
        await dead_letter_queue.add(make_context("report", "exec-9"), ["other"])

        all_entries = await dead_letter_queue.query()
        sync_entries = await dead_letter_queue.query(DeadLetterQuery(job_id="sync"))

        assert len(all_entries) == 4
        assert {e.job_id for e in sync_entries} == {"sync"}
        assert len(sync_entries) == 3
        timestamps = [e.dead_lettered_at for e in all_entries]
        assert timestamps == sorted(timestamps, reverse=True)

    @pytest.mark.asyncio
    async def test_query_pagination_and_since(self, dead_letter_queue: DeadLetterQueue):
        for i in range(5):
            await dead_letter_queue.add(make_context("sync", f"exec-{i}"), ["boom"])

        page = await dead_letter_queue.query(DeadLetterQuery(limit=2, offset=1))
        future = await dead_letter_queue.query(
            DeadLetterQuery(since=datetime.now(UTC) + timedelta(minutes=1))
        )

        assert len(page) == 2
        assert future == []

    @pytest.mark.asyncio
    async def test_stats(self, dead_letter_queue: DeadLetterQueue):
        await dead_letter_queue.add(make_context("sync", "a"), ["boom"])
        await dead_letter_queue.add(make_context("sync", "b"), ["boom"])
        await dead_letter_queue.add(make_context("report", "c"), ["boom"])

        stats = await dead_letter_queue.get_stats()

        assert stats.total == 3
        assert stats.by_job == {"sync": 2, "report": 1}
        assert stats.oldest_entry <= stats.newest_entry

    @pytest.mark.asyncio
    async def test_empty_stats(self, dead_letter_queue: DeadLetterQueue):
        stats = await dead_letter_queue.get_stats()

        assert stats.total == 0
        assert stats.oldest_entry is None


class TestDeadLetterRemoval:
    """Tests for remove, replay and cleanup."""

    @pytest.mark.asyncio
    async def test_remove(self, dead_letter_queue: DeadLetterQueue, store: MemoryStore):
        await dead_letter_queue.add(make_context(), ["boom"])

        assert await dead_letter_queue.remove("sync:exec-1") is True
        assert await dead_letter_queue.remove("sync:exec-1") is False
        assert await store.scard(DLQ_INDEX_KEY) == 0

    @pytest.mark.asyncio
    async def test_remove_by_job(self, dead_letter_queue: DeadLetterQueue):
        await dead_letter_queue.add(make_context("sync", "a"), ["boom"])
        await dead_letter_queue.add(make_context("sync", "b"), ["boom"])
        await dead_letter_queue.add(make_context("report", "c"), ["boom"])

        assert await dead_letter_queue.remove_by_job("sync") == 2
        assert await dead_letter_queue.count() == 1

    @pytest.mark.asyncio
    async def test_replay_success_removes_entry(self, dead_letter_queue: DeadLetterQueue):
        await dead_letter_queue.add(make_context(), ["boom"])
        replayed: list[DeadLetterEntry] = []

        async def executor(entry: DeadLetterEntry) -> JobResult:
            replayed.append(entry)
            return JobResult(success=True)

        result = await dead_letter_queue.replay("sync:exec-1", executor)

        assert result.success is True
        assert replayed[0].execution_id == "exec-1"
        assert await dead_letter_queue.get("sync:exec-1") is None

    @pytest.mark.asyncio
    async def test_replay_failure_keeps_entry(self, dead_letter_queue: DeadLetterQueue):
        await dead_letter_queue.add(make_context(), ["boom"])

        async def executor(entry: DeadLetterEntry) -> JobResult:
            return JobResult.failure("still broken", 1.0)

        await dead_letter_queue.replay("sync:exec-1", executor)

        assert await dead_letter_queue.get("sync:exec-1") is not None

    @pytest.mark.asyncio
    async def test_replay_missing_entry(self, dead_letter_queue: DeadLetterQueue):
        async def executor(entry: DeadLetterEntry) -> JobResult:
            return JobResult(success=True)

        with pytest.raises(DeadLetterError):
            await dead_letter_queue.replay("sync:nope", executor)

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired_index_members(
        self, dead_letter_queue: DeadLetterQueue, store: MemoryStore, clock
    ):
        await dead_letter_queue.add(make_context(), ["boom"])
        clock.advance(61)

        await dead_letter_queue.cleanup()

        assert await store.scard(DLQ_INDEX_KEY) == 0
        assert await store.smembers(job_index_key("sync")) == set()

    @pytest.mark.asyncio
    async def test_cleanup_handles_job_ids_with_colons(
        self, dead_letter_queue: DeadLetterQueue, store: MemoryStore, clock
    ):
        await dead_letter_queue.add(make_context("reports:daily", "exec-1"), ["boom"])
        clock.advance(61)

        await dead_letter_queue.cleanup()

        assert job_id_of("reports:daily:exec-1") == "reports:daily"
        assert await store.scard(job_index_key("reports:daily")) == 0

    @pytest.mark.asyncio
    async def test_cleanup_enforces_max_entries(self, store: MemoryStore, metrics: MetricsCollector):
        queue = DeadLetterQueue(
            store,
            config=DeadLetterConfig(retention_ms=60_000, max_entries=2),
            metrics=metrics,
        )
        for i in range(4):
            await queue.add(make_context("sync", f"exec-{i}"), ["boom"])

        removed = await queue.cleanup()

        assert removed == 2
        assert await queue.count() == 2
