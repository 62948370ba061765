"""
Key-value store contract shared by the lock manager and dead letter queue.
"""

import builtins
from typing import Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """
    Narrow async key-value interface.

    Every implementation must make ``set_if_absent``, ``incr``,
    ``compare_and_delete`` and ``compare_and_expire`` atomic with respect to
    all other clients of the same backing store.
    """

    async def get(self, key: str) -> str | None:
        """Return the value for ``key`` or None if missing/expired."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store ``value`` unconditionally, optionally expiring it."""
        ...

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Create ``key`` only if it does not exist. Returns True when written."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if it existed."""
        ...

    async def exists(self, key: str) -> bool:
        """Check whether ``key`` exists and has not expired."""
        ...

    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter and return the new value."""
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected``."""
        ...

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        """Reset the TTL of ``key`` only if it currently holds ``expected``."""
        ...

    async def sadd(self, key: str, member: str) -> int:
        """Add ``member`` to a set. Returns the number of new members."""
        ...

    async def srem(self, key: str, member: str) -> int:
        """Remove ``member`` from a set. Returns the number removed."""
        ...

    async def smembers(self, key: str) -> builtins.set[str]:
        """Return all members of a set."""
        ...

    async def scard(self, key: str) -> int:
        """Return the size of a set."""
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        ...
