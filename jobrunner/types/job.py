"""
Job-related type definitions.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobDefinition(BaseModel):
    """
    Declarative description of a job.

    Supplied by the caller on every ``run``; never persisted by the runner.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    enabled: bool = True
    exclusive: bool = False
    timeout_ms: int = Field(default=60_000, gt=0)
    retry_attempts: int = Field(default=0, ge=0, description="Additional attempts after the first")
    retry_delay_ms: int = Field(default=1000, ge=0)
    exponential_backoff: bool = False
    max_retry_delay_ms: int | None = Field(default=None, ge=0)
    dead_letter_on_failure: bool = False
    alert_on_failure: bool = False

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first."""
        return self.retry_attempts + 1


class JobResult(BaseModel):
    """
    Result of a job attempt.
    Returned by handlers, or synthesized by the runner on timeout/exception.
    """

    success: bool
    duration_ms: float | None = None
    items_processed: int | None = None
    errors: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, message: str, duration_ms: float) -> "JobResult":
        """Build a failed result carrying a single error message."""
        return cls(success=False, duration_ms=duration_ms, errors=[message])


@dataclass(frozen=True)
class JobContext:
    """
    Context passed to job handlers for one attempt.

    The execution id is shared by every attempt of one ``run``; the context
    itself is rebuilt for each attempt.
    """

    job_id: str
    execution_id: str
    started_at: datetime
    attempt: int
    previous_result: JobResult | None = None
    locked_by: str | None = None
    fencing_token: int | None = None

    @property
    def is_retry(self) -> bool:
        """Check whether a previous attempt already ran."""
        return self.attempt > 1


# Type alias for job handler functions; plain functions run in a worker thread
JobHandler = Callable[[JobContext], Awaitable[JobResult] | JobResult]


@dataclass
class RunnerStats:
    """
    Process-local aggregate of runner outcomes.
    Reset only on process restart.
    """

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    retried_runs: int = 0
    skipped_runs: int = 0
    dead_lettered_runs: int = 0
    average_duration_ms: float = 0.0
