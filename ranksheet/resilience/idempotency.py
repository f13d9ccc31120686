"""
Idempotency Cache

Replays the stored response of a request that carried the same
Idempotency-Key (scoped by method, path and client).

The key is claimed with SET NX before the handler runs, so concurrent
requests with one key run the handler once. A caller that finds the claim
still pending waits for the response to be written, then replays it.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from redis.exceptions import RedisError

from ranksheet.cache.redis_store import SharedCounterStore
from ranksheet.errors import DuplicateRequest, ValidationError

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255
PENDING_FIELD = "pending"

Handler = Callable[[], Awaitable[Tuple[int, Any]]]


@dataclass
class IdempotentResponse:
    """Response snapshot; replayed=True when served from the cache."""
    status: int
    body: Any
    replayed: bool = False

    def to_json(self) -> str:
        return json.dumps({"status": self.status, "body": self.body})

    @classmethod
    def from_json(cls, raw: str) -> "IdempotentResponse":
        data = json.loads(raw)
        return cls(status=int(data["status"]), body=data.get("body"), replayed=True)


def normalize_key(key: Optional[str]) -> str:
    """Trim and validate an Idempotency-Key header value."""
    value = (key or "").strip()
    if not value or len(value) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key must be 1-{MAX_KEY_LENGTH} characters"
        )
    return value


def pending_marker() -> str:
    return json.dumps({PENDING_FIELD: uuid.uuid4().hex})


def is_pending(raw: str) -> bool:
    return PENDING_FIELD in json.loads(raw)


class IdempotencyCache:
    """
    Response cache keyed by idempotency key.

    Usage:
        cache = IdempotencyCache(store, ttl_seconds=86400)
        response = await cache.execute(key, "POST", path, client, handler)
    """

    KEY_PREFIX = "rs:idempotency"

    def __init__(
        self,
        store: SharedCounterStore,
        ttl_seconds: int = 86400,
        wait_seconds: float = 5.0,
        poll_interval: float = 0.05,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval

    def cache_key(self, key: str, method: str, path: str, client_id: str) -> str:
        digest = hashlib.sha256(
            f"{key}|{method.upper()}|{path}|{client_id}".encode()
        ).hexdigest()
        return f"{self.KEY_PREFIX}:{digest}"

    async def execute(
        self,
        key: Optional[str],
        method: str,
        path: str,
        client_id: str,
        handler: Handler,
    ) -> IdempotentResponse:
        """
        Run handler at most once per key within the TTL.

        Args:
            key: Raw Idempotency-Key header value
            handler: Coroutine returning (status, json-serializable body)

        Raises:
            ValidationError: Key blank or longer than 255 characters
            DuplicateRequest: The first request for the key has not
                produced a response within wait_seconds
        """
        key = normalize_key(key)
        cache_key = self.cache_key(key, method, path, client_id)
        marker = pending_marker()

        try:
            claimed = await self._store.set_if_absent(cache_key, marker, self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Idempotency store unavailable, running handler uncached: {e}")
            status, body = await handler()
            return IdempotentResponse(status=status, body=body)

        if not claimed:
            logger.info(f"Idempotency replay for {method} {path}")
            return await self._await_response(cache_key, key)

        try:
            status, body = await handler()
        except BaseException:
            await self._release(cache_key, marker)
            raise

        response = IdempotentResponse(status=status, body=body)
        try:
            await self._store.set(cache_key, response.to_json(), self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Idempotency store failed, response not cached: {e}")
        return response

    async def _await_response(self, cache_key: str, key: str) -> IdempotentResponse:
        """Poll until the claiming request stores its response."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            try:
                raw = await self._store.get(cache_key)
            except (RedisError, OSError) as e:
                logger.warning(f"Idempotency lookup failed: {e}")
                raise DuplicateRequest(key) from e
            if raw is None:
                raise DuplicateRequest(key)
            if not is_pending(raw):
                return IdempotentResponse.from_json(raw)
            if loop.time() >= deadline:
                raise DuplicateRequest(key)
            await asyncio.sleep(self.poll_interval)

    async def _release(self, cache_key: str, marker: str):
        try:
            await self._store.delete_if_equals(cache_key, marker)
        except (RedisError, OSError) as e:
            logger.warning(f"Could not release idempotency claim: {e}")
