"""
Dead letter queue type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from jobrunner.types.job import JobResult


class DeadLetterEntry(BaseModel):
    """
    A permanently failed job execution.
    Immutable once written; keyed by ``job_id:execution_id``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    job_id: str
    execution_id: str
    attempts: int
    errors: list[str]
    last_result: JobResult | None = None
    dead_lettered_at: datetime

    @staticmethod
    def make_id(job_id: str, execution_id: str) -> str:
        """Build the idempotency key for an execution."""
        return f"{job_id}:{execution_id}"


class DeadLetterQuery(BaseModel):
    """Filters and pagination for listing dead letter entries."""

    job_id: str | None = None
    since: datetime | None = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)


class DeadLetterStats(BaseModel):
    """Summary of dead letter queue contents."""

    total: int
    by_job: dict[str, int]
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
