"""
Keyword Locks

Cross-process mutual exclusion for keyword refreshes. Acquisition never
waits: a held lock means another worker is already refreshing.

- PostgresAdvisoryLockProvider: session-level pg_try_advisory_lock on a
  dedicated pooled connection held until release
- RedisLockProvider: SET NX EX with a per-holder token
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ranksheet.cache.redis_store import SharedCounterStore
from ranksheet.errors import LockNotAcquired, PersistenceError

logger = logging.getLogger(__name__)


def fnv1a32(value: str) -> int:
    """32-bit FNV-1a hash of the UTF-16 code units of value."""
    h = 0x811C9DC5
    units = value.encode("utf-16-le")
    for i in range(0, len(units), 2):
        h ^= units[i] | (units[i + 1] << 8)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def to_signed32(n: int) -> int:
    return n - 0x100000000 if n & 0x80000000 else n


def advisory_lock_id(key: str) -> int:
    return to_signed32(fnv1a32(key))


class LockProvider(ABC):
    """Non-blocking named lock."""

    @abstractmethod
    async def try_acquire(self, key: str) -> bool:
        """Take the lock if free. Returns False when held elsewhere."""

    @abstractmethod
    async def release(self, key: str) -> None:
        """Release a lock taken by this provider."""

    async def close(self) -> None:
        """Release everything still held."""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold key for the duration of the block.

        Raises:
            LockNotAcquired: Lock held by another worker
        """
        if not await self.try_acquire(key):
            raise LockNotAcquired(key)
        try:
            yield
        finally:
            await self.release(key)


class PostgresAdvisoryLockProvider(LockProvider):
    """Session-level advisory locks; the connection is held while locked."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._held: Dict[str, Connection] = {}
        self._guard = asyncio.Lock()

    async def try_acquire(self, key: str) -> bool:
        async with self._guard:
            if key in self._held:
                return False
            try:
                conn, acquired = await asyncio.to_thread(self._try_acquire_sync, key)
            except SQLAlchemyError as e:
                raise PersistenceError(f"Advisory lock failed for {key}: {e}", unreachable=True) from e
            if acquired:
                self._held[key] = conn
                logger.debug(f"Advisory lock acquired: {key}")
            return acquired

    def _try_acquire_sync(self, key: str):
        conn = self._engine.connect()
        try:
            acquired = bool(conn.execute(
                text("SELECT pg_try_advisory_lock(:id)"), {"id": advisory_lock_id(key)}
            ).scalar())
        except SQLAlchemyError:
            conn.close()
            raise
        if not acquired:
            conn.close()
            return None, False
        return conn, True

    async def release(self, key: str) -> None:
        async with self._guard:
            conn = self._held.pop(key, None)
        if conn is None:
            return
        await asyncio.to_thread(self._release_sync, key, conn)
        logger.debug(f"Advisory lock released: {key}")

    def _release_sync(self, key: str, conn: Connection) -> None:
        try:
            conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": advisory_lock_id(key)})
            conn.commit()
        except SQLAlchemyError as e:
            # Closing the session releases its advisory locks anyway
            logger.warning(f"Advisory unlock failed for {key}: {e}")
            conn.invalidate()
        finally:
            conn.close()

    async def close(self) -> None:
        for key in list(self._held):
            await self.release(key)


class RedisLockProvider(LockProvider):
    """SET NX EX lock; the TTL bounds a crashed holder."""

    KEY_PREFIX = "rs:lock"

    def __init__(self, store: SharedCounterStore, ttl_seconds: int = 900):
        self._store = store
        self._ttl = ttl_seconds
        self._tokens: Dict[str, str] = {}

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def try_acquire(self, key: str) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._store.set_if_absent(self._key(key), token, self._ttl)
        if acquired:
            self._tokens[key] = token
            logger.debug(f"Redis lock acquired: {key}")
        return acquired

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        if not await self._store.delete_if_equals(self._key(key), token):
            logger.warning(f"Redis lock {key} expired before release")

    async def close(self) -> None:
        for key in list(self._tokens):
            await self.release(key)
