"""
Pytest configuration and shared fixtures.
"""

import random
import time
from collections.abc import Callable
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from jobrunner.config import DeadLetterConfig, LockConfig, RetryConfig, RunnerConfig
from jobrunner.dead_letter import DeadLetterQueue
from jobrunner.locking import JobLockManager
from jobrunner.observability.metrics import MetricsCollector
from jobrunner.runner import JobRunner
from jobrunner.store import MemoryStore
from jobrunner.types.job import JobDefinition


class FakeClock:
    """Controllable monotonic clock for the memory store."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(MemoryStore):
    """
    Memory store whose operations can be made to raise.

    ``failures[name] = n`` makes the next ``n`` calls of ``name`` raise;
    a negative count makes every call raise.
    """

    def __init__(self, clock: Callable[[], float] | None = None):
        super().__init__(clock=clock or time.monotonic)
        self.failures: dict[str, int] = {}
        self.calls: dict[str, int] = {}

    def _maybe_fail(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        remaining = self.failures.get(name, 0)
        if remaining == 0:
            return
        if remaining > 0:
            self.failures[name] = remaining - 1
        raise ConnectionError(f"store unavailable: {name}")

    async def get(self, key: str) -> str | None:
        self._maybe_fail("get")
        return await super().get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._maybe_fail("set")
        await super().set(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        self._maybe_fail("set_if_absent")
        return await super().set_if_absent(key, value, ttl_ms)

    async def incr(self, key: str) -> int:
        self._maybe_fail("incr")
        return await super().incr(key)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        self._maybe_fail("compare_and_delete")
        return await super().compare_and_delete(key, expected)

    async def scard(self, key: str) -> int:
        self._maybe_fail("scard")
        return await super().scard(key)


class RecordingAlertSink:
    """Alert sink that keeps every alert in memory."""

    def __init__(self, fail: bool = False):
        self.alerts: list[dict[str, Any]] = []
        self.fail = fail

    async def fire_warning(self, title: str, message: str, context: dict[str, Any]) -> None:
        self._record("warning", title, message, context)

    async def fire_critical(self, title: str, message: str, context: dict[str, Any]) -> None:
        self._record("critical", title, message, context)

    def _record(self, severity: str, title: str, message: str, context: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("alert endpoint down")
        self.alerts.append(
            {"severity": severity, "title": title, "message": message, "context": context}
        )

    @property
    def severities(self) -> list[str]:
        return [alert["severity"] for alert in self.alerts]


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock shared by the store under test."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    """Fresh in-memory store per test."""
    return MemoryStore(clock=clock)


@pytest.fixture
def failing_store(clock: FakeClock) -> FailingStore:
    """Memory store with injectable failures."""
    return FailingStore(clock=clock)


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on an isolated registry."""
    return MetricsCollector(registry=registry)


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    """Alert sink that records alerts."""
    return RecordingAlertSink()


@pytest.fixture
def runner_config() -> RunnerConfig:
    """Runner configuration with short, test-friendly values."""
    return RunnerConfig(
        instance_id="test-instance",
        max_consecutive_failures=3,
        lock=LockConfig(ttl_ms=5000),
        retry=RetryConfig(jitter_factor=0.1),
        dead_letter=DeadLetterConfig(retention_ms=60_000, max_entries=100),
    )


@pytest.fixture
def make_runner(
    store: MemoryStore,
    metrics: MetricsCollector,
    alert_sink: RecordingAlertSink,
    runner_config: RunnerConfig,
) -> Callable[..., JobRunner]:
    """Factory for runners sharing the test store, optionally as other instances."""

    def factory(
        instance_id: str | None = None,
        store_override: MemoryStore | None = None,
        **overrides: Any,
    ) -> JobRunner:
        config = runner_config.model_copy(
            update={"instance_id": instance_id or runner_config.instance_id, **overrides}
        )
        return JobRunner(
            store_override or store,
            config=config,
            alert_sink=alert_sink,
            metrics=metrics,
            rng=random.Random(7),
        )

    return factory


@pytest.fixture
def runner(make_runner: Callable[..., JobRunner]) -> JobRunner:
    """Job runner backed by the memory store."""
    return make_runner()


@pytest.fixture
def lock_manager(store: MemoryStore, metrics: MetricsCollector) -> JobLockManager:
    """Lock manager for instance A."""
    return JobLockManager(store, instance_id="instance-a", metrics=metrics)


@pytest.fixture
def dead_letter_queue(store: MemoryStore, metrics: MetricsCollector) -> DeadLetterQueue:
    """Dead letter queue backed by the memory store."""
    return DeadLetterQueue(
        store,
        config=DeadLetterConfig(retention_ms=60_000, max_entries=100),
        metrics=metrics,
    )


@pytest.fixture
def sync_job() -> JobDefinition:
    """Exclusive job that retries once and dead-letters on failure."""
    return JobDefinition(
        id="sync",
        exclusive=True,
        timeout_ms=1000,
        retry_attempts=1,
        retry_delay_ms=50,
        dead_letter_on_failure=True,
        alert_on_failure=True,
    )
