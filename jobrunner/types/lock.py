"""
Lock-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class LockInfo:
    """
    Information about a lock as seen in the store.
    Used for inspection; never for making ownership decisions.
    """

    job_id: str
    owner: str
    acquired_at: datetime
    ttl_ms: int
    fencing_token: int | None = None


@dataclass
class WithLockResult(Generic[T]):
    """
    Outcome of ``JobLockManager.with_lock``.

    ``acquired`` is False when another holder owns the key or the store was
    unreachable. ``error`` holds an exception raised by the wrapped function.
    """

    acquired: bool
    result: T | None = None
    error: BaseException | None = None
    fencing_token: int | None = None
