"""
Rate Limiter

Fixed-window request limiter over the shared counter store.

Key: rs:rl:<action>:<sha256(salt|client_id)[:32]>

The first request in a window creates the counter and sets its expiry.
If the expiry call is lost the next request notices the missing TTL and
sets it. Requests without a client identity, or made while the store is
unavailable, are allowed.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import RedisError

from ranksheet.cache.redis_store import SharedCounterStore
from ranksheet.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Limit for one action."""
    limit: int
    window_seconds: int


def hash_client_id(client_id: str, salt: str) -> str:
    """Stable, non-reversible client bucket id."""
    return hashlib.sha256(f"{salt}|{client_id}".encode()).hexdigest()[:32]


class RateLimiter:
    """
    Per-action, per-client fixed-window limiter.

    Usage:
        limiter = RateLimiter(store, salt=settings.IP_HASH_SALT)
        await limiter.check("refresh", client_ip, RateLimitRule(10, 60))
    """

    KEY_PREFIX = "rs:rl"

    def __init__(self, store: SharedCounterStore, salt: str):
        self._store = store
        self._salt = salt

    def key_for(self, action: str, client_id: str) -> str:
        return f"{self.KEY_PREFIX}:{action}:{hash_client_id(client_id, self._salt)}"

    async def check(
        self,
        action: str,
        client_id: Optional[str],
        rule: RateLimitRule,
    ) -> int:
        """
        Count one request against the window.

        Returns:
            Requests remaining in the current window

        Raises:
            RateLimited: Limit exceeded; retry_after is at least 1 second
        """
        if not client_id:
            return rule.limit

        key = self.key_for(action, client_id)
        try:
            count, ttl = await self._store.increment_and_get_ttl(key)
            if ttl < 0:
                await self._store.expire(key, rule.window_seconds)
                ttl = rule.window_seconds
        except (RedisError, OSError) as e:
            logger.warning(f"Rate limiter store unavailable, allowing {action}: {e}")
            return rule.limit

        if count > rule.limit:
            retry_after = max(1, ttl)
            logger.info(f"Rate limited {action} (count={count}, retry_after={retry_after}s)")
            raise RateLimited(action, retry_after)

        return rule.limit - count
