"""
Signal Provider Client

Async HTTP client for the two upstreams a refresh depends on:
- Analytics provider: weekly report dates and per-keyword ASIN signals
- Catalog provider: product metadata by ASIN (batches of 50) and PA-API
  warmup jobs for ASINs whose metadata is incomplete

Each upstream has:
- Connection pooling
- Automatic retry with exponential backoff on 429/5xx and transport errors
- Its own circuit breaker around every attempt
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError, field_validator

from ranksheet.errors import CircuitOpenError, UpstreamError
from ranksheet.models import CandidateRow
from ranksheet.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from ranksheet.sheet.product_card import UpstreamProduct

logger = logging.getLogger(__name__)

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PRODUCT_BATCH_SIZE = 50
MAX_REPORT_DATES = 50
MAX_FETCH_LIMIT = 10_000
WARMUP_CONCURRENCY = 3


# =============================================================================
# Upstream payload schemas
# =============================================================================

class ReportItem(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    report_date: str = Field(alias="reportDate")
    period_type: Optional[str] = Field(default=None, alias="periodType")

    @field_validator("report_date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        if not ISO_DATE_RE.match(v):
            raise ValueError(f"invalid report date {v!r}")
        return v


class ReportsResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    items: List[ReportItem]
    total: Optional[int] = None


class KeywordAsinItem(BaseModel):
    """One ASIN's signals for a keyword in a weekly report."""
    model_config = ConfigDict(extra="allow")

    asin: str = Field(min_length=1)
    top3_rank: int
    click_share: float
    conversion_share: float
    weighted_score: Optional[float] = None
    report_date: Optional[str] = None
    product_title: Optional[str] = None


class KeywordAsinsResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    items: List[KeywordAsinItem]
    total: Optional[int] = None


class ProductsData(BaseModel):
    items: List[UpstreamProduct]


class ProductsResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    data: ProductsData


class WarmupJob(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    status: str
    asins: Optional[List[str]] = None


class WarmupCreateResponse(BaseModel):
    status: str
    data: List[WarmupJob]


class WarmupRunData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None


class WarmupRunResponse(BaseModel):
    status: str
    data: WarmupRunData


# =============================================================================
# Provider interface
# =============================================================================

class SignalProvider(ABC):
    """Source of keyword signals and product metadata."""

    @abstractmethod
    async def report_dates(self, limit: int = 2) -> List[str]:
        """Most recent weekly report dates, newest first."""

    @abstractmethod
    async def fetch(self, keyword: str, period_date: str, limit: int) -> List[CandidateRow]:
        """Candidate rows (without cards) for keyword in the given period."""

    @abstractmethod
    async def products(self, asins: List[str]) -> Dict[str, UpstreamProduct]:
        """Catalog payloads keyed by ASIN; unknown ASINs are absent."""

    @abstractmethod
    async def warm(self, asins: List[str]) -> List[str]:
        """Ask the catalog to re-fetch asins. Returns the warmup job ids."""


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    initial_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


class SignalClient(SignalProvider):
    """
    httpx implementation of SignalProvider.

    Usage:
        client = SignalClient(
            analytics_url=settings.ANALYTICS_API_URL,
            catalog_url=settings.CATALOG_API_URL,
            analytics_breaker=registry.register(analytics_config),
            catalog_breaker=registry.register(catalog_config),
        )
        dates = await client.report_dates(limit=2)
        await client.close()
    """

    def __init__(
        self,
        analytics_url: str,
        catalog_url: str,
        analytics_breaker: CircuitBreaker,
        catalog_breaker: CircuitBreaker,
        analytics_key: Optional[str] = None,
        catalog_key: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        max_connections: int = 20,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            analytics_url: Base URL of the analytics provider
            catalog_url: Base URL of the catalog provider
            analytics_breaker: Breaker guarding analytics calls
            catalog_breaker: Breaker guarding catalog calls
            retry_config: Retry configuration (optional)
            transport: Custom httpx transport (tests)
        """
        self.retry_config = retry_config or RetryConfig()
        self.analytics_breaker = analytics_breaker
        self.catalog_breaker = catalog_breaker

        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(1, max_connections // 2),
        )
        self._analytics = httpx.AsyncClient(
            base_url=analytics_url.rstrip("/"),
            headers={"X-API-Key": analytics_key or ""},
            limits=limits,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._catalog = httpx.AsyncClient(
            base_url=catalog_url.rstrip("/"),
            headers={"x-api-key": catalog_key or ""},
            limits=limits,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

        self._last_report_dates: Dict[int, List[str]] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, settings, analytics_breaker, catalog_breaker) -> "SignalClient":
        return cls(
            analytics_url=settings.ANALYTICS_API_URL,
            catalog_url=settings.CATALOG_API_URL,
            analytics_breaker=analytics_breaker,
            catalog_breaker=catalog_breaker,
            analytics_key=settings.ANALYTICS_API_KEY,
            catalog_key=settings.CATALOG_API_KEY,
            timeout=settings.HTTP_TIMEOUT,
        )

    # =========================================================================
    # Provider operations
    # =========================================================================

    async def report_dates(self, limit: int = 2) -> List[str]:
        """
        Latest weekly report dates, newest first.

        While the analytics breaker is open the last dates seen for the same
        limit are returned instead.
        """
        limit = max(1, min(MAX_REPORT_DATES, int(limit)))
        fallback = self._last_report_dates.get(limit)

        async def attempt() -> Dict[str, Any]:
            return await self._request(
                self._analytics, "GET", "/reports/", {"period_type": "WEEK", "limit": limit}
            )

        if fallback is not None:
            payload = await self._with_retry(self.analytics_breaker, attempt, fallback=None)
            if payload is None:
                logger.warning(f"Using last known report dates: {fallback}")
                return list(fallback)
        else:
            payload = await self._with_retry(self.analytics_breaker, attempt)

        parsed = self._parse(ReportsResponse, payload, "analytics")
        dates = [item.report_date for item in parsed.items]
        if dates:
            self._last_report_dates[limit] = dates
        return dates

    async def fetch(self, keyword: str, period_date: str, limit: int) -> List[CandidateRow]:
        keyword = keyword.strip()
        if not keyword:
            return []
        limit = max(1, min(MAX_FETCH_LIMIT, int(limit)))

        async def attempt() -> Dict[str, Any]:
            return await self._request(
                self._analytics,
                "GET",
                f"/keywords/{quote(keyword, safe='')}/asins",
                {
                    "period_type": "weekly",
                    "start_date": period_date,
                    "end_date": period_date,
                    "limit": limit,
                    "offset": 0,
                },
            )

        payload = await self._with_retry(self.analytics_breaker, attempt)
        parsed = self._parse(KeywordAsinsResponse, payload, "analytics")
        logger.debug(f"Fetched {len(parsed.items)} ASINs for '{keyword}' ({period_date})")

        return [
            CandidateRow(
                asin=item.asin.strip(),
                rank=item.top3_rank,
                click_share=item.click_share,
                conversion_share=item.conversion_share,
            )
            for item in parsed.items
        ]

    async def products(self, asins: List[str]) -> Dict[str, UpstreamProduct]:
        unique = list(dict.fromkeys(a.strip() for a in asins if a and a.strip()))
        found: Dict[str, UpstreamProduct] = {}

        for start in range(0, len(unique), PRODUCT_BATCH_SIZE):
            batch = unique[start:start + PRODUCT_BATCH_SIZE]

            async def attempt(batch=batch) -> Dict[str, Any]:
                return await self._request(
                    self._catalog,
                    "GET",
                    "/products",
                    {"asins": ",".join(batch), "limit": len(batch)},
                )

            payload = await self._with_retry(self.catalog_breaker, attempt)
            parsed = self._parse(ProductsResponse, payload, "catalog")
            for product in parsed.data.items:
                found[product.asin] = product

        return found

    async def warm(self, asins: List[str]) -> List[str]:
        """
        Create PA-API warmup jobs for asins and run them.

        Returns:
            Ids of the jobs that were created and run
        """
        unique = list(dict.fromkeys(a.strip() for a in asins if a and a.strip()))
        if not unique:
            return []

        async def create() -> Dict[str, Any]:
            return await self._request(
                self._catalog, "POST", "/paapi5", json_body={"asins": unique}
            )

        payload = await self._with_retry(self.catalog_breaker, create)
        job_ids = [job.id for job in self._parse(WarmupCreateResponse, payload, "catalog").data]
        semaphore = asyncio.Semaphore(WARMUP_CONCURRENCY)

        async def run(job_id: str):
            async def attempt() -> Dict[str, Any]:
                return await self._request(
                    self._catalog, "PUT", f"/paapi5/{quote(job_id, safe='')}"
                )

            async with semaphore:
                result = await self._with_retry(self.catalog_breaker, attempt)
            self._parse(WarmupRunResponse, result, "catalog")

        await asyncio.gather(*(run(job_id) for job_id in job_ids))
        logger.info(f"Ran {len(job_ids)} warmup jobs for {len(unique)} ASINs")
        return job_ids

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a single HTTP request."""
        if self._closed:
            raise UpstreamError("Client is closed")

        logger.debug(f"{method} {client.base_url}{path}")
        try:
            response = await client.request(method, path, params=params, json=json_body)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error: {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"API request failed: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON response: {e}") from e

    async def _with_retry(
        self,
        breaker: CircuitBreaker,
        attempt: Callable[[], Awaitable[Dict[str, Any]]],
        **breaker_kwargs,
    ) -> Any:
        """Run attempt through the breaker, retrying retryable failures."""
        last_exception: Optional[UpstreamError] = None
        delay = self.retry_config.initial_delay

        for n in range(self.retry_config.max_retries + 1):
            try:
                return await breaker.call(attempt, **breaker_kwargs)
            except CircuitOpenError:
                raise
            except UpstreamError as e:
                e.upstream = e.upstream or breaker.name
                last_exception = e

                # Don't retry client errors (4xx except 429)
                if e.status_code and e.status_code not in self.retry_config.retryable_status_codes:
                    raise

                if n < self.retry_config.max_retries:
                    logger.warning(
                        f"{breaker.name} request failed (attempt {n + 1}/"
                        f"{self.retry_config.max_retries + 1}): {e}. Retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(
                        delay * self.retry_config.exponential_base,
                        self.retry_config.max_delay,
                    )

        raise last_exception

    @staticmethod
    def _parse(model, payload: Any, upstream: str):
        try:
            return model.model_validate(payload)
        except SchemaError as e:
            raise UpstreamError(
                f"{upstream}_invalid_response: {e.error_count()} validation errors",
                upstream=upstream,
            ) from e

    async def close(self):
        """Close both HTTP clients."""
        if not self._closed:
            await self._analytics.aclose()
            await self._catalog.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def analytics_breaker_config(settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        name="analytics",
        timeout=settings.ANALYTICS_BREAKER_TIMEOUT,
        error_threshold_percentage=settings.ANALYTICS_BREAKER_ERROR_PERCENT,
        reset_timeout=settings.ANALYTICS_BREAKER_RESET_SECONDS,
        rolling_window=settings.ANALYTICS_BREAKER_WINDOW_SECONDS,
        volume_threshold=settings.ANALYTICS_BREAKER_VOLUME,
    )


def catalog_breaker_config(settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        name="catalog",
        timeout=settings.CATALOG_BREAKER_TIMEOUT,
        error_threshold_percentage=settings.CATALOG_BREAKER_ERROR_PERCENT,
        reset_timeout=settings.CATALOG_BREAKER_RESET_SECONDS,
        rolling_window=settings.CATALOG_BREAKER_WINDOW_SECONDS,
        volume_threshold=settings.CATALOG_BREAKER_VOLUME,
    )
