"""
Error Taxonomy

Exceptions raised across the pipeline, job and resilience layers.
"""

from typing import Optional


class RankSheetError(Exception):
    """Base class for all rank sheet errors."""


class ValidationError(RankSheetError):
    """Malformed input. The whole batch is rejected."""


class UpstreamError(RankSheetError):
    """Upstream fetch failed after retry and circuit breaker policy."""

    def __init__(
        self,
        message: str,
        upstream: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.upstream = upstream
        self.status_code = status_code


class CircuitOpenError(UpstreamError):
    """Call short-circuited because the breaker is open."""


class LockNotAcquired(RankSheetError):
    """Another worker holds the keyword lock."""

    def __init__(self, key: str):
        super().__init__(f"Lock not acquired: {key}")
        self.key = key


class PersistenceError(RankSheetError):
    """
    Storage operation failed.

    unreachable=True means the store itself cannot be reached, which fails
    the whole job instead of a single keyword.
    """

    def __init__(self, message: str, unreachable: bool = False):
        super().__init__(message)
        self.unreachable = unreachable


class RateLimited(RankSheetError):
    """Request rejected by the rate limiter."""

    def __init__(self, action: str, retry_after: int):
        super().__init__(f"Rate limited on {action}, retry after {retry_after}s")
        self.action = action
        self.retry_after = retry_after


class DuplicateRequest(RankSheetError):
    """A request with the same idempotency key is still being processed."""

    def __init__(self, key: str):
        super().__init__(f"Duplicate request for idempotency key {key}")
        self.key = key
