"""
Resilience Layer

Circuit breakers for upstream calls, a fixed-window rate limiter and an
idempotency cache for admin requests.
"""

from .circuit_breaker import (
    BreakerState,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)
from .idempotency import IdempotencyCache, IdempotentResponse, normalize_key
from .rate_limit import RateLimiter, RateLimitRule, hash_client_id

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "IdempotencyCache",
    "IdempotentResponse",
    "normalize_key",
    "RateLimiter",
    "RateLimitRule",
    "hash_client_id",
]
