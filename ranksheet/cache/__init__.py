"""
Shared Store

Redis-backed atomic primitives for rate limiting, idempotency and locks.
"""

from .redis_store import SharedCounterStore, RedisCounterStore

__all__ = [
    "SharedCounterStore",
    "RedisCounterStore",
]
