"""
In-process key-value store.

Suitable for tests and single-process deployments. Every operation runs
without yielding to the event loop, so each call is atomic with respect to
other coroutines sharing the same instance.
"""

import builtins
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class _Entry:
    value: str
    expires_at: float | None = None


class MemoryStore:
    """
    Dictionary-backed store with lazy TTL expiry.

    Args:
        clock: Monotonic time source in seconds. Tests inject a controllable
            clock to expire keys without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._sets: dict[str, set[str]] = {}

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_ms: int | None) -> float | None:
        if not ttl_ms:
            return None
        return self._clock() + ttl_ms / 1000.0

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ttl_ms = ttl_seconds * 1000 if ttl_seconds else None
        self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl_ms))

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl_ms))
        return True

    async def delete(self, key: str) -> bool:
        existed = self._live(key) is not None
        self._data.pop(key, None)
        return existed

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def incr(self, key: str) -> int:
        entry = self._live(key)
        value = int(entry.value) + 1 if entry else 1
        expires_at = entry.expires_at if entry else None
        self._data[key] = _Entry(value=str(value), expires_at=expires_at)
        return value

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        entry = self._live(key)
        if entry is None or entry.value != expected:
            return False
        del self._data[key]
        return True

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        entry = self._live(key)
        if entry is None or entry.value != expected:
            return False
        entry.expires_at = self._expiry(ttl_ms)
        return True

    async def sadd(self, key: str, member: str) -> int:
        members = self._sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def srem(self, key: str, member: str) -> int:
        members = self._sets.get(key)
        if not members or member not in members:
            return 0
        members.discard(member)
        return 1

    async def smembers(self, key: str) -> builtins.set[str]:
        return set(self._sets.get(key, set()))

    async def scard(self, key: str) -> int:
        return len(self._sets.get(key, set()))

    async def close(self) -> None:
        self._data.clear()
        self._sets.clear()
