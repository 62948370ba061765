"""
Event type definitions for runner lifecycle notifications.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from jobrunner.constants import JobRunnerEventType
from jobrunner.types.job import JobResult


class JobRunnerEvent(BaseModel):
    """
    Event emitted at each lifecycle step of a job execution.
    Delivered to listeners registered on the runner.
    """

    event_type: JobRunnerEventType
    job_id: str
    execution_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    result: JobResult | None = None
    error: str | None = None
    attempt: int | None = None
    fencing_token: int | None = None

    @classmethod
    def job_started(cls, job_id: str, execution_id: str) -> "JobRunnerEvent":
        """Create a job started event."""
        return cls(
            event_type=JobRunnerEventType.JOB_STARTED,
            job_id=job_id,
            execution_id=execution_id,
        )

    @classmethod
    def job_completed(
        cls,
        job_id: str,
        execution_id: str,
        result: JobResult,
        attempt: int,
    ) -> "JobRunnerEvent":
        """Create a job completed event."""
        return cls(
            event_type=JobRunnerEventType.JOB_COMPLETED,
            job_id=job_id,
            execution_id=execution_id,
            result=result,
            attempt=attempt,
        )

    @classmethod
    def job_retry(
        cls,
        job_id: str,
        execution_id: str,
        attempt: int,
        error: str | None,
    ) -> "JobRunnerEvent":
        """Create a job retry event for the attempt that just failed."""
        return cls(
            event_type=JobRunnerEventType.JOB_RETRY,
            job_id=job_id,
            execution_id=execution_id,
            attempt=attempt,
            error=error,
        )

    @classmethod
    def job_failed(
        cls,
        job_id: str,
        execution_id: str,
        result: JobResult | None,
        attempt: int,
    ) -> "JobRunnerEvent":
        """Create a job failed event after retries are exhausted."""
        errors = result.errors if result and result.errors else None
        return cls(
            event_type=JobRunnerEventType.JOB_FAILED,
            job_id=job_id,
            execution_id=execution_id,
            result=result,
            error="; ".join(errors) if errors else None,
            attempt=attempt,
        )

    @classmethod
    def job_dead_lettered(
        cls,
        job_id: str,
        execution_id: str,
        attempt: int,
    ) -> "JobRunnerEvent":
        """Create a job moved to the dead letter queue event."""
        return cls(
            event_type=JobRunnerEventType.JOB_DEAD_LETTERED,
            job_id=job_id,
            execution_id=execution_id,
            attempt=attempt,
        )

    @classmethod
    def lock_acquired(
        cls,
        job_id: str,
        execution_id: str,
        fencing_token: int,
    ) -> "JobRunnerEvent":
        """Create a lock acquired event."""
        return cls(
            event_type=JobRunnerEventType.LOCK_ACQUIRED,
            job_id=job_id,
            execution_id=execution_id,
            fencing_token=fencing_token,
        )

    @classmethod
    def lock_released(
        cls,
        job_id: str,
        execution_id: str,
        fencing_token: int | None,
    ) -> "JobRunnerEvent":
        """Create a lock released event."""
        return cls(
            event_type=JobRunnerEventType.LOCK_RELEASED,
            job_id=job_id,
            execution_id=execution_id,
            fencing_token=fencing_token,
        )
