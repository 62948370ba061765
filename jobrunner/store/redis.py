"""
Redis-backed key-value store.

Conditional operations run as Lua scripts so the ownership check and the
mutation happen in one atomic step on the server.
"""

import builtins
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from jobrunner.errors import StoreError

logger = logging.getLogger(__name__)

COMPARE_AND_DELETE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

COMPARE_AND_EXPIRE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisStore:
    """
    Key-value store backed by a shared Redis server.

    All instances pointing at the same Redis database cooperate: locks,
    fencing counters and dead letter entries are visible to every process.
    """

    def __init__(self, client: aioredis.Redis):
        """
        Initialize the store with a connected client.

        Args:
            client: A ``redis.asyncio`` client created with
                ``decode_responses=True``.
        """
        self._client = client
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE_SCRIPT)
        self._compare_and_expire = client.register_script(COMPARE_AND_EXPIRE_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        """Create a store from a ``redis://`` URL."""
        return cls(aioredis.from_url(url, decode_responses=True))

    async def ping(self) -> bool:
        """Check connectivity to the server."""
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise StoreError(f"Redis ping failed: {e}") from e

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise StoreError(f"GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds or None)
        except RedisError as e:
            raise StoreError(f"SET {key} failed: {e}") from e

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        try:
            return bool(await self._client.set(key, value, nx=True, px=ttl_ms))
        except RedisError as e:
            raise StoreError(f"SET NX {key} failed: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except RedisError as e:
            raise StoreError(f"DEL {key} failed: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as e:
            raise StoreError(f"EXISTS {key} failed: {e}") from e

    async def incr(self, key: str) -> int:
        try:
            return int(await self._client.incr(key))
        except RedisError as e:
            raise StoreError(f"INCR {key} failed: {e}") from e

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            result = await self._compare_and_delete(keys=[key], args=[expected])
        except RedisError as e:
            raise StoreError(f"compare-and-delete {key} failed: {e}") from e
        return int(result) == 1

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        try:
            result = await self._compare_and_expire(keys=[key], args=[expected, ttl_ms])
        except RedisError as e:
            raise StoreError(f"compare-and-expire {key} failed: {e}") from e
        return int(result) == 1

    async def sadd(self, key: str, member: str) -> int:
        try:
            return int(await self._client.sadd(key, member))
        except RedisError as e:
            raise StoreError(f"SADD {key} failed: {e}") from e

    async def srem(self, key: str, member: str) -> int:
        try:
            return int(await self._client.srem(key, member))
        except RedisError as e:
            raise StoreError(f"SREM {key} failed: {e}") from e

    async def smembers(self, key: str) -> builtins.set[str]:
        try:
            return set(await self._client.smembers(key))
        except RedisError as e:
            raise StoreError(f"SMEMBERS {key} failed: {e}") from e

    async def scard(self, key: str) -> int:
        try:
            return int(await self._client.scard(key))
        except RedisError as e:
            raise StoreError(f"SCARD {key} failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis store closed")
