"""
Type definitions for the job runner.
Contains input/output type definitions grouped by module.
"""

from jobrunner.types.dead_letter import (
    DeadLetterEntry,
    DeadLetterQuery,
    DeadLetterStats,
)
from jobrunner.types.events import JobRunnerEvent
from jobrunner.types.job import (
    JobContext,
    JobDefinition,
    JobHandler,
    JobResult,
    RunnerStats,
)
from jobrunner.types.lock import LockInfo, WithLockResult

__all__ = [
    # Job types
    "JobDefinition",
    "JobContext",
    "JobResult",
    "JobHandler",
    "RunnerStats",
    # Lock types
    "LockInfo",
    "WithLockResult",
    # Dead letter types
    "DeadLetterEntry",
    "DeadLetterQuery",
    "DeadLetterStats",
    # Event types
    "JobRunnerEvent",
]
