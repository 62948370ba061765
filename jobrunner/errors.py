"""
Exception hierarchy for the job runner.
"""


class JobRunnerError(Exception):
    """Base class for runner errors."""


class StoreError(JobRunnerError):
    """The key-value store could not complete an operation."""


class LockError(JobRunnerError):
    """A lock operation failed against the store."""


class DeadLetterError(JobRunnerError):
    """A dead letter entry could not be found or processed."""
