"""
Unit tests for the event emitter.
"""

import pytest

from jobrunner.constants import JobRunnerEventType
from jobrunner.events import EventEmitter
from jobrunner.types.events import JobRunnerEvent
from jobrunner.types.job import JobResult


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_emit_to_matching_listeners(self):
        emitter = EventEmitter()
        started: list[JobRunnerEvent] = []
        completed: list[JobRunnerEvent] = []
        emitter.on(JobRunnerEventType.JOB_STARTED, started.append)
        emitter.on("job_completed", completed.append)

        emitter.emit(JobRunnerEvent.job_started("sync", "exec-1"))

        assert len(started) == 1
        assert started[0].execution_id == "exec-1"
        assert completed == []

    def test_off_and_listener_count(self):
        emitter = EventEmitter()
        received: list[JobRunnerEvent] = []
        emitter.on("job_started", received.append)

        assert emitter.listener_count("job_started") == 1
        assert emitter.off("job_started", received.append) is True
        assert emitter.off("job_started", received.append) is False
        assert emitter.listener_count("job_started") == 0

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            EventEmitter().on("job_exploded", print)

    def test_failing_listener_is_isolated(self):
        emitter = EventEmitter()
        received: list[JobRunnerEvent] = []

        def broken(event: JobRunnerEvent) -> None:
            raise RuntimeError("listener bug")

        emitter.on("job_started", broken)
        emitter.on("job_started", received.append)

        emitter.emit(JobRunnerEvent.job_started("sync", "exec-1"))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self):
        emitter = EventEmitter()
        received: list[JobRunnerEvent] = []

        async def listener(event: JobRunnerEvent) -> None:
            received.append(event)

        async def broken(event: JobRunnerEvent) -> None:
            raise RuntimeError("async listener bug")

        emitter.on("job_failed", listener)
        emitter.on("job_failed", broken)

        emitter.emit(JobRunnerEvent.job_failed("sync", "exec-1", JobResult.failure("boom", 1.0), 2))
        await emitter.drain()

        assert len(received) == 1
        assert received[0].error == "boom"
        assert received[0].attempt == 2


class TestJobRunnerEvent:
    """Tests for event factories."""

    def test_lock_events_carry_token(self):
        acquired = JobRunnerEvent.lock_acquired("sync", "exec-1", 7)
        released = JobRunnerEvent.lock_released("sync", "exec-1", 7)

        assert acquired.event_type == JobRunnerEventType.LOCK_ACQUIRED
        assert acquired.fencing_token == 7
        assert released.event_type == JobRunnerEventType.LOCK_RELEASED

    def test_retry_event(self):
        event = JobRunnerEvent.job_retry("sync", "exec-1", 1, "boom")

        assert event.attempt == 1
        assert event.error == "boom"
        assert event.timestamp.tzinfo is not None
