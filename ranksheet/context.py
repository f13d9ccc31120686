"""
Application Context

Builds and owns every shared resource: database engine and stores, redis,
HTTP clients, circuit breakers, security primitives, refresher and job
orchestrator. Constructed once at startup and passed explicitly.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from ranksheet.cache.redis_store import RedisCounterStore, SharedCounterStore
from ranksheet.collector.client import (
    SignalClient,
    SignalProvider,
    analytics_breaker_config,
    catalog_breaker_config,
)
from ranksheet.jobs.orchestrator import JobOrchestrator
from ranksheet.jobs.state import JobStore
from ranksheet.persistence.locks import (
    LockProvider,
    PostgresAdvisoryLockProvider,
    RedisLockProvider,
)
from ranksheet.persistence.session import (
    check_db_connection,
    create_db_engine,
    create_session_factory,
    get_database_url,
    init_db,
    is_postgres_url,
)
from ranksheet.persistence.store import (
    KeywordStore,
    PersistenceStore,
    ProductCache,
    RankSheetStore,
    SqlKeywordStore,
    SqlProductCache,
)
from ranksheet.pipeline.refresh import KeywordRefresher
from ranksheet.resilience.circuit_breaker import CircuitBreakerRegistry
from ranksheet.resilience.idempotency import IdempotencyCache
from ranksheet.resilience.rate_limit import RateLimiter, RateLimitRule
from ranksheet.utils.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Explicitly shared resource handles."""
    settings: Settings
    keywords: KeywordStore
    sheets: PersistenceStore
    locks: LockProvider
    counters: SharedCounterStore
    provider: SignalProvider
    breakers: CircuitBreakerRegistry
    rate_limiter: RateLimiter
    idempotency: IdempotencyCache
    refresher: KeywordRefresher
    orchestrator: JobOrchestrator
    product_cache: Optional[ProductCache] = None
    engine: Optional[Engine] = None

    def __post_init__(self):
        self._started = False
        self._closed = False
        self._startup_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        """Wire the production resources described by settings."""
        url = get_database_url(settings)
        engine = create_db_engine(url, settings)
        session_factory = create_session_factory(engine)
        keywords = SqlKeywordStore(session_factory)
        sheets = RankSheetStore(session_factory)
        product_cache = SqlProductCache(session_factory)

        counters = RedisCounterStore.from_url(
            settings.REDIS_URL, max_connections=settings.REDIS_MAX_CONNECTIONS
        )
        if is_postgres_url(url):
            locks: LockProvider = PostgresAdvisoryLockProvider(engine)
        else:
            locks = RedisLockProvider(counters, ttl_seconds=settings.LOCK_TTL_SECONDS)

        breakers = CircuitBreakerRegistry()
        provider = SignalClient.from_settings(
            settings,
            analytics_breaker=breakers.register(analytics_breaker_config(settings)),
            catalog_breaker=breakers.register(catalog_breaker_config(settings)),
        )
        return cls.assemble(
            settings,
            keywords=keywords,
            sheets=sheets,
            locks=locks,
            counters=counters,
            provider=provider,
            breakers=breakers,
            product_cache=product_cache,
            engine=engine,
        )

    @classmethod
    def assemble(
        cls,
        settings: Settings,
        keywords: KeywordStore,
        sheets: PersistenceStore,
        locks: LockProvider,
        counters: SharedCounterStore,
        provider: SignalProvider,
        breakers: Optional[CircuitBreakerRegistry] = None,
        product_cache: Optional[ProductCache] = None,
        engine: Optional[Engine] = None,
    ) -> "AppContext":
        """Build the service layer over already-constructed resources."""
        refresher = KeywordRefresher(
            provider,
            keywords,
            sheets,
            product_cache=product_cache,
            warmup_delay=settings.WARMUP_DELAY_SECONDS,
        )
        orchestrator = JobOrchestrator(
            refresher,
            keywords,
            locks,
            jobs=JobStore(retention_seconds=settings.JOB_RETENTION_SECONDS),
            default_concurrency=settings.DEFAULT_CONCURRENCY,
            max_concurrency=settings.MAX_CONCURRENCY,
            default_limit=settings.DEFAULT_REFRESH_LIMIT,
        )
        return cls(
            settings=settings,
            keywords=keywords,
            sheets=sheets,
            locks=locks,
            counters=counters,
            provider=provider,
            breakers=breakers or CircuitBreakerRegistry(),
            rate_limiter=RateLimiter(counters, salt=settings.IP_HASH_SALT),
            idempotency=IdempotencyCache(counters, ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS),
            refresher=refresher,
            orchestrator=orchestrator,
            product_cache=product_cache,
            engine=engine,
        )

    @property
    def refresh_rule(self) -> RateLimitRule:
        return RateLimitRule(
            self.settings.REFRESH_RATE_LIMIT, self.settings.REFRESH_RATE_WINDOW_SECONDS
        )

    @property
    def public_rule(self) -> RateLimitRule:
        return RateLimitRule(
            self.settings.PUBLIC_RATE_LIMIT, self.settings.PUBLIC_RATE_WINDOW_SECONDS
        )

    async def startup(self):
        """Create tables and verify connectivity. Safe to call repeatedly."""
        async with self._startup_lock:
            if self._started:
                return
            if self.engine is not None:
                logger.info("Initializing database...")
                await asyncio.to_thread(init_db, self.engine)
                if await asyncio.to_thread(check_db_connection, self.engine):
                    logger.info("Database connection verified")
                else:
                    logger.warning("Database connection check failed - continuing anyway")
            ping = getattr(self.counters, "ping", None)
            if ping is not None:
                if await ping():
                    logger.info("Redis connection verified")
                else:
                    logger.warning("Redis unreachable - rate limits and idempotency fail open")
            self._started = True
            logger.info("Application context started")

    async def shutdown(self):
        """Wait for running jobs, then release every resource."""
        if self._closed:
            return
        self._closed = True

        await self.orchestrator.shutdown()
        await self.locks.close()

        close_provider = getattr(self.provider, "close", None)
        if close_provider is not None:
            await close_provider()
        close_counters = getattr(self.counters, "close", None)
        if close_counters is not None:
            await close_counters()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Application context shut down")
