"""
Application constants.
Centralized location for all constant values used across the runner.
"""

from enum import StrEnum


class JobRunnerEventType(StrEnum):
    """
    Lifecycle events emitted by the job runner.

    Emission order for one execution:
    - lock_acquired (exclusive jobs only)
    - job_started
    - job_retry (zero or more times)
    - job_completed | job_failed
    - job_dead_lettered (failed executions with dead-lettering enabled)
    - lock_released (exclusive jobs only)
    """

    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_RETRY = "job_retry"
    JOB_DEAD_LETTERED = "job_dead_lettered"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"


class SkipReason(StrEnum):
    """Reasons a run is skipped without counting as a failure."""

    DISABLED = "disabled"
    NO_HANDLER = "no_handler"
    LOCKED = "locked"
    SHUTDOWN = "shutdown"


class AlertSeverity(StrEnum):
    """Alert levels raised on exhausted retries."""

    WARNING = "warning"
    CRITICAL = "critical"


class BackoffStrategy(StrEnum):
    """Delay strategies understood by the backoff calculator."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    NONE = "none"


# Default values
DEFAULT_LOCK_TTL_MS = 60_000
LOCK_TTL_BUFFER_MS = 30_000
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_DEAD_LETTER_RETENTION_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_DEAD_LETTER_MAX_ENTRIES = 10_000
MAX_LOCK_RETRY_DELAY_MS = 30_000

# Store key prefixes
LOCK_KEY_PREFIX = "scheduler:lock"
FENCING_KEY_PREFIX = "scheduler:fencing"
DLQ_KEY_PREFIX = "scheduler:dlq"
DLQ_INDEX_KEY = f"{DLQ_KEY_PREFIX}:index"

# Metrics names
METRIC_JOB_SUCCESS = "scheduler_job_success_total"
METRIC_JOB_FAILURE = "scheduler_job_failure_total"
METRIC_JOB_RETRY = "scheduler_job_retry_total"
METRIC_JOB_SKIPPED = "scheduler_job_skipped_total"
METRIC_JOB_DURATION = "scheduler_job_duration_seconds"
METRIC_JOB_CONSECUTIVE_FAILURES = "scheduler_job_consecutive_failures"
METRIC_LOCK_ACQUIRED = "scheduler_lock_acquired_total"
METRIC_LOCK_RELEASED = "scheduler_lock_released_total"
METRIC_LOCK_FAILED = "scheduler_lock_failed_total"
METRIC_LOCK_EXTENDED = "scheduler_lock_extended_total"
METRIC_LOCK_ACQUIRE_DURATION = "scheduler_lock_acquire_duration_seconds"
METRIC_DLQ_ENTRIES = "scheduler_dlq_entries_total"
METRIC_DLQ_SIZE = "scheduler_dlq_size"
METRIC_ALERTS = "scheduler_alerts_total"

# Trace span names
SPAN_RUN_JOB = "run_job"
SPAN_ACQUIRE_LOCK = "acquire_lock"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_DEAD_LETTER = "dead_letter"
