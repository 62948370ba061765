"""
Key-value store backends.
"""

from jobrunner.store.base import KeyValueStore
from jobrunner.store.memory import MemoryStore
from jobrunner.store.redis import RedisStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
]
