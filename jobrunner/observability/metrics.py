"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobrunner.constants import (
    METRIC_ALERTS,
    METRIC_DLQ_ENTRIES,
    METRIC_DLQ_SIZE,
    METRIC_JOB_CONSECUTIVE_FAILURES,
    METRIC_JOB_DURATION,
    METRIC_JOB_FAILURE,
    METRIC_JOB_RETRY,
    METRIC_JOB_SKIPPED,
    METRIC_JOB_SUCCESS,
    METRIC_LOCK_ACQUIRE_DURATION,
    METRIC_LOCK_ACQUIRED,
    METRIC_LOCK_EXTENDED,
    METRIC_LOCK_FAILED,
    METRIC_LOCK_RELEASED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job runner.

    Collects metrics for:
    - Job outcomes (success, failure, retry, skip) per job id
    - Job execution duration
    - Consecutive failure streaks
    - Lock operations
    - Dead letter queue activity
    - Alerts fired
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.job_success = Counter(
            METRIC_JOB_SUCCESS,
            "Total number of successful job executions",
            ["job_id"],
            registry=self._registry,
        )

        self.job_failure = Counter(
            METRIC_JOB_FAILURE,
            "Total number of job executions that exhausted their retries",
            ["job_id"],
            registry=self._registry,
        )

        self.job_retry = Counter(
            METRIC_JOB_RETRY,
            "Total number of job retries",
            ["job_id"],
            registry=self._registry,
        )

        self.job_skipped = Counter(
            METRIC_JOB_SKIPPED,
            "Total number of skipped job runs",
            ["job_id", "reason"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_id", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.consecutive_failures = Gauge(
            METRIC_JOB_CONSECUTIVE_FAILURES,
            "Consecutive failed executions of a job",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_acquired = Counter(
            METRIC_LOCK_ACQUIRED,
            "Total number of locks acquired",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_released = Counter(
            METRIC_LOCK_RELEASED,
            "Total number of locks released",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_failed = Counter(
            METRIC_LOCK_FAILED,
            "Total number of failed lock acquisitions",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_extended = Counter(
            METRIC_LOCK_EXTENDED,
            "Total number of lock TTL extensions",
            ["job_id"],
            registry=self._registry,
        )

        self.lock_acquire_duration = Histogram(
            METRIC_LOCK_ACQUIRE_DURATION,
            "Lock acquisition latency in seconds",
            ["job_id"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
            registry=self._registry,
        )

        self.dlq_entries = Counter(
            METRIC_DLQ_ENTRIES,
            "Total number of dead letter entries written",
            ["job_id"],
            registry=self._registry,
        )

        self.dlq_size = Gauge(
            METRIC_DLQ_SIZE,
            "Number of entries in the dead letter queue",
            registry=self._registry,
        )

        self.alerts = Counter(
            METRIC_ALERTS,
            "Total number of alerts fired",
            ["severity"],
            registry=self._registry,
        )

    def record_job_success(self, job_id: str, duration_seconds: float) -> None:
        """Record a successful execution."""
        self.job_success.labels(job_id=job_id).inc()
        self.job_duration.labels(job_id=job_id, status="succeeded").observe(duration_seconds)

    def record_job_failure(self, job_id: str, duration_seconds: float) -> None:
        """Record an execution that exhausted its retries."""
        self.job_failure.labels(job_id=job_id).inc()
        self.job_duration.labels(job_id=job_id, status="failed").observe(duration_seconds)

    def record_job_retry(self, job_id: str) -> None:
        """Record a retry."""
        self.job_retry.labels(job_id=job_id).inc()

    def record_job_skipped(self, job_id: str, reason: str) -> None:
        """Record a skipped run."""
        self.job_skipped.labels(job_id=job_id, reason=reason).inc()

    def set_consecutive_failures(self, job_id: str, count: int) -> None:
        """Update the failure streak gauge for a job."""
        self.consecutive_failures.labels(job_id=job_id).set(count)

    def record_lock_acquired(self, job_id: str, duration_seconds: float) -> None:
        """Record a lock acquisition and its latency."""
        self.lock_acquired.labels(job_id=job_id).inc()
        self.lock_acquire_duration.labels(job_id=job_id).observe(duration_seconds)

    def record_lock_released(self, job_id: str) -> None:
        """Record a lock release."""
        self.lock_released.labels(job_id=job_id).inc()

    def record_lock_failed(self, job_id: str) -> None:
        """Record a failed lock acquisition."""
        self.lock_failed.labels(job_id=job_id).inc()

    def record_lock_extended(self, job_id: str) -> None:
        """Record a lock extension."""
        self.lock_extended.labels(job_id=job_id).inc()

    def record_dead_lettered(self, job_id: str) -> None:
        """Record a newly dead-lettered execution."""
        self.dlq_entries.labels(job_id=job_id).inc()

    def update_dlq_size(self, size: int) -> None:
        """Update the dead letter queue size gauge."""
        self.dlq_size.set(size)

    def record_alert(self, severity: str) -> None:
        """Record a fired alert."""
        self.alerts.labels(severity=severity).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
