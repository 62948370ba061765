"""
Job runner: orchestrates one execution of a job definition.

For each ``run`` the runner:
1. Skips disabled jobs and jobs without a registered handler
2. Acquires the distributed lock for exclusive jobs (skips if held elsewhere)
3. Runs the handler under a per-attempt timeout, retrying with backoff
4. On exhaustion, records the failure, dead-letters it and raises alerts
5. Releases the lock and emits lifecycle events throughout

Handler failures never escape ``run``; they are normalized into a failed
``JobResult``. Only errors in the runner itself propagate to the caller.
"""

import asyncio
import dataclasses
import inspect
import logging
import random
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import ValidationError

from jobrunner.backoff import calculate_retry_delay, with_retry
from jobrunner.config import RetryConfig, RunnerConfig
from jobrunner.constants import (
    SPAN_DEAD_LETTER,
    SPAN_EXECUTE_JOB,
    SPAN_RUN_JOB,
    AlertSeverity,
    BackoffStrategy,
    JobRunnerEventType,
    SkipReason,
)
from jobrunner.dead_letter import DeadLetterQueue
from jobrunner.errors import DeadLetterError
from jobrunner.events import EventEmitter, EventListener
from jobrunner.locking import JobLockManager, LockHandle
from jobrunner.observability.alerting import AlertSink, LoggingAlertSink
from jobrunner.observability.logging import execution_context
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.observability.tracing import set_span_attributes, start_span
from jobrunner.store.base import KeyValueStore
from jobrunner.types.dead_letter import DeadLetterEntry
from jobrunner.types.events import JobRunnerEvent
from jobrunner.types.job import (
    JobContext,
    JobDefinition,
    JobHandler,
    JobResult,
    RunnerStats,
)

logger = logging.getLogger(__name__)

# Delay between attempts to persist a dead letter entry
DEAD_LETTER_RETRY_DELAY_MS = 50


class _AttemptTimedOut(Exception):
    """Raised internally when a handler outlives the job timeout."""


class JobRunner:
    """
    Job runner with distributed locking, retries and dead-lettering.

    Each instance owns its handler registry, statistics, failure streaks
    and listeners; nothing is shared between instances except the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: RunnerConfig | None = None,
        alert_sink: AlertSink | None = None,
        metrics: MetricsCollector | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the runner.

        Args:
            store: Shared key-value store for locks and dead letters.
            config: Validated runner configuration.
            alert_sink: Destination for failure alerts. Logs when omitted.
            metrics: Metrics collector. Defaults to the process collector.
            rng: Random source for backoff jitter.
        """
        self.config = config or RunnerConfig()
        self._store = store
        self._metrics = metrics or get_metrics()
        self._alert_sink = alert_sink or LoggingAlertSink()
        self._rng = rng

        self._lock_manager = JobLockManager(
            store,
            instance_id=self.config.instance_id,
            config=self.config.lock,
            metrics=self._metrics,
        )
        self._dead_letter_queue = DeadLetterQueue(
            store,
            config=self.config.dead_letter,
            metrics=self._metrics,
        )

        self._handlers: dict[str, JobHandler] = {}
        self._stats = RunnerStats()
        self._consecutive_failures: dict[str, int] = {}
        self._events = EventEmitter()
        self._abandoned: set[asyncio.Task] = set()
        self._shutdown_requested = False

        logger.info(
            "JobRunner initialized",
            extra={
                "instance_id": self.config.instance_id,
                "alerting_enabled": self.config.alerting_enabled,
            },
        )

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def register_handler(self, job_id: str, handler: JobHandler) -> None:
        """Register the handler for a job id, replacing any previous one."""
        self._handlers[job_id] = handler
        logger.debug("Handler registered", extra={"job_id": job_id})

    def register_handlers(self, handlers: Mapping[str, JobHandler]) -> None:
        """Register several handlers at once."""
        for job_id, handler in handlers.items():
            self.register_handler(job_id, handler)

    def handler(self, job_id: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @runner.handler("sync")
            async def sync(context: JobContext) -> JobResult:
                ...
        """

        def decorator(fn: JobHandler) -> JobHandler:
            self.register_handler(job_id, fn)
            return fn

        return decorator

    def unregister_handler(self, job_id: str) -> bool:
        """Remove a handler. Returns True if one was registered."""
        return self._handlers.pop(job_id, None) is not None

    def get_handler(self, job_id: str) -> JobHandler | None:
        """Get the handler for a job id."""
        return self._handlers.get(job_id)

    def list_handlers(self) -> list[str]:
        """List job ids with a registered handler."""
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event_type: JobRunnerEventType | str, listener: EventListener) -> None:
        """Subscribe to a lifecycle event."""
        self._events.on(event_type, listener)

    def off(self, event_type: JobRunnerEventType | str, listener: EventListener) -> bool:
        """Unsubscribe from a lifecycle event."""
        return self._events.off(event_type, listener)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, job: JobDefinition) -> JobResult | None:
        """
        Run a job with full orchestration.

        Returns:
            The final JobResult, or None when the run was skipped (shutdown,
            disabled, no handler, or lock held elsewhere).
        """
        if self._shutdown_requested:
            logger.warning("Run rejected: shutdown in progress", extra={"job_id": job.id})
            self._metrics.record_job_skipped(job.id, SkipReason.SHUTDOWN)
            return None

        if not job.enabled:
            logger.debug("Job is disabled, skipping", extra={"job_id": job.id})
            self._skip(job.id, SkipReason.DISABLED)
            return None

        handler = self._handlers.get(job.id)
        if handler is None:
            logger.warning("No handler registered for job", extra={"job_id": job.id})
            self._skip(job.id, SkipReason.NO_HANDLER)
            return None

        execution_id = self._new_execution_id(job.id)
        started_at = datetime.now(UTC)

        with (
            execution_context(job.id, execution_id),
            start_span(SPAN_RUN_JOB, job_id=job.id, execution_id=execution_id, exclusive=job.exclusive),
        ):
            logger.info(
                "Starting job execution",
                extra={"job_id": job.id, "execution_id": execution_id, "exclusive": job.exclusive},
            )

            if job.exclusive:
                return await self._run_exclusive(job, handler, execution_id, started_at)

            return await self._execute_with_retry(job, handler, execution_id, started_at)

    async def _run_exclusive(
        self,
        job: JobDefinition,
        handler: JobHandler,
        execution_id: str,
        started_at: datetime,
    ) -> JobResult | None:
        """Run an exclusive job while holding its distributed lock."""

        async def locked(lock: LockHandle) -> JobResult:
            self._emit(JobRunnerEvent.lock_acquired(job.id, execution_id, lock.fencing_token))
            return await self._execute_with_retry(
                job, handler, execution_id, started_at, fencing_token=lock.fencing_token
            )

        ttl_ms = job.timeout_ms + self.config.lock_ttl_buffer_ms
        lock_result = await self._lock_manager.with_lock(job.id, locked, ttl_ms=ttl_ms)

        if not lock_result.acquired:
            logger.debug("Could not acquire lock, job already running", extra={"job_id": job.id})
            self._skip(job.id, SkipReason.LOCKED)
            return None

        self._emit(JobRunnerEvent.lock_released(job.id, execution_id, lock_result.fencing_token))

        if lock_result.error is not None:
            raise lock_result.error

        return lock_result.result

    async def _execute_with_retry(
        self,
        job: JobDefinition,
        handler: JobHandler,
        execution_id: str,
        started_at: datetime,
        fencing_token: int | None = None,
    ) -> JobResult:
        """Run the attempt loop until success or exhaustion."""
        max_attempts = job.max_attempts
        last_result: JobResult | None = None
        attempt = 0

        self._stats.total_runs += 1
        self._emit(JobRunnerEvent.job_started(job.id, execution_id))

        while attempt < max_attempts:
            attempt += 1

            context = JobContext(
                job_id=job.id,
                execution_id=execution_id,
                started_at=started_at,
                attempt=attempt,
                previous_result=last_result,
                locked_by=self.config.instance_id,
                fencing_token=fencing_token,
            )

            last_result = await self._execute_attempt(job, handler, context)

            if last_result.success:
                self._handle_success(job, execution_id, last_result, attempt)
                return last_result

            logger.warning(
                "Job attempt failed",
                extra={
                    "job_id": job.id,
                    "execution_id": execution_id,
                    "attempt": attempt,
                    "errors": last_result.errors,
                },
            )

            if attempt < max_attempts:
                delay_ms = self._retry_delay(job, attempt)

                self._stats.retried_runs += 1
                self._emit(
                    JobRunnerEvent.job_retry(job.id, execution_id, attempt, _join_errors(last_result))
                )
                self._metrics.record_job_retry(job.id)

                logger.info(
                    "Retrying job",
                    extra={
                        "job_id": job.id,
                        "execution_id": execution_id,
                        "attempt": attempt,
                        "next_attempt": attempt + 1,
                        "delay_ms": delay_ms,
                    },
                )

                await asyncio.sleep(delay_ms / 1000)

        await self._handle_failure(job, execution_id, last_result, attempt, fencing_token)
        return last_result

    async def _execute_attempt(
        self,
        job: JobDefinition,
        handler: JobHandler,
        context: JobContext,
    ) -> JobResult:
        """
        Run one attempt under the job timeout.

        Coroutine handlers run on the loop, plain callables in a worker
        thread. A timed-out handler is not cancelled; it keeps running
        detached and its eventual outcome is ignored.
        """
        start = time.monotonic()

        with start_span(
            SPAN_EXECUTE_JOB,
            job_id=context.job_id,
            execution_id=context.execution_id,
            attempt=context.attempt,
            fencing_token=context.fencing_token,
        ) as span:
            deadline = start + job.timeout_ms / 1000
            try:
                if inspect.iscoroutinefunction(handler):
                    work = handler(context)
                else:
                    work = asyncio.to_thread(handler, context)
                outcome = await self._await_with_timeout(work, job, deadline)
                # A plain callable may still return a coroutine
                if inspect.isawaitable(outcome):
                    outcome = await self._await_with_timeout(outcome, job, deadline)
            except _AttemptTimedOut:
                elapsed = _elapsed_ms(start)
                message = f"Job {job.id} timed out after {job.timeout_ms}ms"
                logger.error(message, extra={"job_id": job.id, "attempt": context.attempt})
                set_span_attributes(span, success=False, timed_out=True)
                return JobResult.failure(message, elapsed)
            except Exception as e:
                logger.exception(
                    "Job execution error",
                    extra={"job_id": job.id, "execution_id": context.execution_id, "attempt": context.attempt},
                )
                set_span_attributes(span, success=False)
                return JobResult.failure(str(e) or type(e).__name__, _elapsed_ms(start))

            result = self._normalize_result(outcome, _elapsed_ms(start))
            set_span_attributes(span, success=result.success)
            return result

    async def _await_with_timeout(self, awaitable, job: JobDefinition, deadline: float):
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=max(0.0, deadline - time.monotonic()))
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            self._abandon(task, job.id)
            raise _AttemptTimedOut

        return task.result()

    def _normalize_result(self, outcome: object, elapsed_ms: float) -> JobResult:
        if isinstance(outcome, JobResult):
            result = outcome
        elif outcome is None:
            return JobResult.failure("Handler returned no result", elapsed_ms)
        else:
            try:
                result = JobResult.model_validate(outcome)
            except ValidationError as e:
                return JobResult.failure(f"Handler returned an invalid result: {e}", elapsed_ms)

        if result.duration_ms is None:
            result = result.model_copy(update={"duration_ms": elapsed_ms})
        return result

    def _abandon(self, task: asyncio.Task, job_id: str) -> None:
        """Keep a timed-out handler referenced until it finishes on its own."""
        self._abandoned.add(task)

        def finished(t: asyncio.Task) -> None:
            self._abandoned.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.debug(
                    f"Timed-out handler finished with error: {t.exception()}",
                    extra={"job_id": job_id},
                )

        task.add_done_callback(finished)

    def _retry_delay(self, job: JobDefinition, attempt: int) -> int:
        if not job.exponential_backoff:
            return job.retry_delay_ms

        policy = RetryConfig(
            max_attempts=job.max_attempts,
            initial_delay_ms=job.retry_delay_ms,
            max_delay_ms=(
                job.max_retry_delay_ms
                if job.max_retry_delay_ms is not None
                else job.retry_delay_ms * 4
            ),
            backoff_multiplier=self.config.retry.backoff_multiplier,
            jitter_factor=self.config.retry.jitter_factor,
        )
        return calculate_retry_delay(attempt, policy, exponential=True, rng=self._rng)

    # ------------------------------------------------------------------
    # Outcome handling
    # ------------------------------------------------------------------

    def _handle_success(
        self,
        job: JobDefinition,
        execution_id: str,
        result: JobResult,
        attempt: int,
    ) -> None:
        duration_ms = result.duration_ms or 0.0

        self._stats.successful_runs += 1
        self._update_average_duration(duration_ms)
        self._consecutive_failures[job.id] = 0

        self._emit(JobRunnerEvent.job_completed(job.id, execution_id, result, attempt))

        self._metrics.record_job_success(job.id, duration_ms / 1000)
        self._metrics.set_consecutive_failures(job.id, 0)

        logger.info(
            "Job completed successfully",
            extra={
                "job_id": job.id,
                "execution_id": execution_id,
                "attempt": attempt,
                "duration_ms": duration_ms,
                "items_processed": result.items_processed,
            },
        )

    async def _handle_failure(
        self,
        job: JobDefinition,
        execution_id: str,
        result: JobResult | None,
        attempts: int,
        fencing_token: int | None,
    ) -> None:
        self._stats.failed_runs += 1

        consecutive = self._consecutive_failures.get(job.id, 0) + 1
        self._consecutive_failures[job.id] = consecutive

        self._emit(JobRunnerEvent.job_failed(job.id, execution_id, result, attempts))

        self._metrics.record_job_failure(job.id, (result.duration_ms or 0.0) / 1000 if result else 0.0)
        self._metrics.set_consecutive_failures(job.id, consecutive)

        logger.error(
            "Job failed after all retries",
            extra={
                "job_id": job.id,
                "execution_id": execution_id,
                "attempts": attempts,
                "consecutive_failures": consecutive,
                "errors": result.errors if result else None,
            },
        )

        if job.dead_letter_on_failure:
            await self._add_to_dead_letter(job, execution_id, result, attempts, fencing_token)

        if job.alert_on_failure and self.config.alerting_enabled:
            await self._send_alert(job, execution_id, result, consecutive)

    async def _add_to_dead_letter(
        self,
        job: JobDefinition,
        execution_id: str,
        result: JobResult | None,
        attempts: int,
        fencing_token: int | None,
    ) -> None:
        """Persist the failed execution. Failures here are logged only."""
        context = JobContext(
            job_id=job.id,
            execution_id=execution_id,
            started_at=datetime.now(UTC),
            attempt=attempts,
            previous_result=result,
            locked_by=self.config.instance_id,
            fencing_token=fencing_token,
        )
        errors = (result.errors if result else None) or ["Unknown error"]

        persist_policy = RetryConfig(
            max_attempts=self.config.dead_letter.persist_attempts,
            initial_delay_ms=DEAD_LETTER_RETRY_DELAY_MS,
            jitter_factor=0.0,
        )

        with start_span(SPAN_DEAD_LETTER, job_id=job.id, execution_id=execution_id):
            outcome = await with_retry(
                lambda: self._dead_letter_queue.add(context, errors, result),
                config=persist_policy,
                strategy=BackoffStrategy.FIXED,
                operation_name="dead_letter_add",
            )

        if not outcome.success:
            logger.error(
                f"Failed to add to dead letter queue: {outcome.error}",
                extra={"job_id": job.id, "execution_id": execution_id, "attempts": outcome.attempts},
            )
            return

        self._stats.dead_lettered_runs += 1
        self._emit(JobRunnerEvent.job_dead_lettered(job.id, execution_id, attempts))

        logger.info(
            "Job added to dead letter queue",
            extra={"job_id": job.id, "execution_id": execution_id},
        )

    async def _send_alert(
        self,
        job: JobDefinition,
        execution_id: str,
        result: JobResult | None,
        consecutive_failures: int,
    ) -> None:
        message = f"Job {job.id} failed: {_join_errors(result) or 'Unknown error'}"
        details = {
            "job_id": job.id,
            "execution_id": execution_id,
            "consecutive_failures": consecutive_failures,
            "errors": result.errors if result else None,
        }

        try:
            if consecutive_failures >= self.config.max_consecutive_failures:
                await self._alert_sink.fire_critical(f"scheduler_job_{job.id}_critical", message, details)
                self._metrics.record_alert(AlertSeverity.CRITICAL)
            else:
                await self._alert_sink.fire_warning(f"scheduler_job_{job.id}_failed", message, details)
                self._metrics.record_alert(AlertSeverity.WARNING)
        except Exception as e:
            logger.error(f"Failed to send alert: {e}", extra={"job_id": job.id})

    # ------------------------------------------------------------------
    # Dead letter replay
    # ------------------------------------------------------------------

    async def replay_dead_letter(self, job: JobDefinition, entry_id: str) -> JobResult | None:
        """
        Re-run a dead-lettered execution of ``job``.

        The entry is removed if the new run succeeds.

        Raises:
            DeadLetterError: If the entry is missing or belongs to another job.
        """

        async def execute(entry: DeadLetterEntry) -> JobResult | None:
            if entry.job_id != job.id:
                raise DeadLetterError(f"Entry {entry_id} belongs to job {entry.job_id}, not {job.id}")
            return await self.run(job)

        return await self._dead_letter_queue.replay(entry_id, execute)

    # ------------------------------------------------------------------
    # State & stats
    # ------------------------------------------------------------------

    def get_stats(self) -> RunnerStats:
        """Get a copy of the runner statistics."""
        return dataclasses.replace(self._stats)

    def get_consecutive_failures(self, job_id: str) -> int:
        """Current failure streak of a job in this process."""
        return self._consecutive_failures.get(job_id, 0)

    @property
    def lock_manager(self) -> JobLockManager:
        return self._lock_manager

    @property
    def dead_letter_queue(self) -> DeadLetterQueue:
        return self._dead_letter_queue

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_requested

    async def shutdown(self) -> None:
        """
        Stop accepting runs and release held locks.

        In-flight attempts are not aborted.
        """
        logger.info("JobRunner shutting down", extra={"instance_id": self.config.instance_id})
        self._shutdown_requested = True

        await self._lock_manager.release_all()
        await self._events.drain()

        logger.info("JobRunner shutdown complete", extra={"instance_id": self.config.instance_id})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _skip(self, job_id: str, reason: SkipReason) -> None:
        self._stats.skipped_runs += 1
        self._metrics.record_job_skipped(job_id, reason)

    def _emit(self, event: JobRunnerEvent) -> None:
        self._events.emit(event)

    def _update_average_duration(self, duration_ms: float) -> None:
        n = self._stats.successful_runs
        self._stats.average_duration_ms = (self._stats.average_duration_ms * (n - 1) + duration_ms) / n

    @staticmethod
    def _new_execution_id(job_id: str) -> str:
        return f"{job_id}-{int(time.time() * 1000):x}-{uuid4().hex[:8]}"


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


def _join_errors(result: JobResult | None) -> str | None:
    if result is None or not result.errors:
        return None
    return "; ".join(result.errors)


def create_job_runner(
    store: KeyValueStore,
    config: RunnerConfig | None = None,
    alert_sink: AlertSink | None = None,
    metrics: MetricsCollector | None = None,
) -> JobRunner:
    """Create a new job runner."""
    return JobRunner(store, config=config, alert_sink=alert_sink, metrics=metrics)
