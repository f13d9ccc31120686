"""
Shared Counter Store

Atomic primitives on a store shared by every process:
- increment_and_get_ttl: INCR + TTL in one transaction (rate limiting)
- set_if_absent: SET NX EX (idempotency markers, keyword locks)

RedisCounterStore is the production backend. Callers depend on the
SharedCounterStore interface so tests can use an in-memory double.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SharedCounterStore(ABC):
    """Abstract interface for the shared counter/marker store."""

    @abstractmethod
    async def increment_and_get_ttl(self, key: str) -> Tuple[int, int]:
        """
        Atomically increment key and read its TTL.

        Returns:
            (count after increment, ttl seconds; -1 if no expiry set)
        """

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        """Set an expiry on key."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set key only if it does not exist. Returns True when set."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Overwrite key with an expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read key, None when absent."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key."""

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Remove key only while it still holds value."""
        if await self.get(key) == value:
            await self.delete(key)
            return True
        return False


# Compare-and-delete must be atomic so a lock that expired and was taken by
# another worker is never released by the previous holder.
_DELETE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisCounterStore(SharedCounterStore):
    """SharedCounterStore backed by redis.asyncio."""

    def __init__(self, redis: Redis):
        self._redis = redis

    @classmethod
    def from_url(cls, url: str, max_connections: int = 20) -> "RedisCounterStore":
        pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        return cls(Redis(connection_pool=pool))

    @property
    def client(self) -> Redis:
        return self._redis

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def increment_and_get_ttl(self, key: str) -> Tuple[int, int]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
        return int(count), int(ttl)

    async def expire(self, key: str, seconds: int) -> None:
        await self._redis.expire(key, seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(key, value, ex=ttl_seconds, nx=True))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._redis.eval(_DELETE_IF_EQUALS, 1, key, value))

    async def close(self):
        await self._redis.aclose()
        logger.info("Redis counter store closed")
