"""
Pytest Configuration and Shared Fixtures

In-memory doubles for the collaborator interfaces (shared counter store,
lock provider, signal provider, keyword and sheet stores) plus row and
product builders used across test modules.
"""

import pytest
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError

from ranksheet.cache.redis_store import SharedCounterStore
from ranksheet.collector.client import SignalProvider
from ranksheet.errors import PersistenceError, UpstreamError
from ranksheet.models import (
    CachedProduct,
    CandidateRow,
    KeywordRecord,
    KeywordStatus,
    ProductCard,
    RankSheetPeriod,
)
from ranksheet.persistence.locks import LockProvider
from ranksheet.persistence.store import KeywordStore, PersistenceStore, ProductCache, cache_expiry
from ranksheet.sheet.product_card import UpstreamProduct
from ranksheet.utils.config import Settings


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Shared counter store
# ============================================================================

class FakeCounterStore(SharedCounterStore):
    """Dict-backed store with TTLs driven by a FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.values: Dict[str, str] = {}
        self.expires: Dict[str, float] = {}
        self.unavailable = False
        self.drop_expire = False

    def _check(self):
        if self.unavailable:
            raise RedisConnectionError("redis down")

    def _evict(self, key: str):
        at = self.expires.get(key)
        if at is not None and self.clock() >= at:
            self.values.pop(key, None)
            self.expires.pop(key, None)

    async def increment_and_get_ttl(self, key: str) -> Tuple[int, int]:
        self._check()
        self._evict(key)
        count = int(self.values.get(key, "0")) + 1
        self.values[key] = str(count)
        at = self.expires.get(key)
        ttl = -1 if at is None else max(0, int(at - self.clock()))
        return count, ttl

    async def expire(self, key: str, seconds: int) -> None:
        self._check()
        if not self.drop_expire:
            self.expires[key] = self.clock() + seconds

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._check()
        self._evict(key)
        if key in self.values:
            return False
        self.values[key] = value
        self.expires[key] = self.clock() + ttl_seconds
        return True

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value
        self.expires[key] = self.clock() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        self._check()
        self._evict(key)
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self._check()
        self.values.pop(key, None)
        self.expires.pop(key, None)


@pytest.fixture
def counter_store(clock) -> FakeCounterStore:
    return FakeCounterStore(clock)


# ============================================================================
# Locks
# ============================================================================

class FakeLockProvider(LockProvider):
    """Records acquisitions; keys in held_elsewhere are never granted."""

    def __init__(self):
        self.held: set = set()
        self.held_elsewhere: set = set()
        self.acquired: List[str] = []
        self.released: List[str] = []

    async def try_acquire(self, key: str) -> bool:
        if key in self.held or key in self.held_elsewhere:
            return False
        self.held.add(key)
        self.acquired.append(key)
        return True

    async def release(self, key: str) -> None:
        self.held.discard(key)
        self.released.append(key)


@pytest.fixture
def lock_provider() -> FakeLockProvider:
    return FakeLockProvider()


# ============================================================================
# Signal provider
# ============================================================================

class FakeSignalProvider(SignalProvider):
    """Serves canned rows per (keyword, date) and catalog products."""

    def __init__(self):
        self.dates: List[str] = ["2024-06-09", "2024-06-02"]
        self.rows: Dict[Tuple[str, str], List[CandidateRow]] = {}
        self.catalog: Dict[str, UpstreamProduct] = {}
        self.fail_fetch_for: set = set()
        self.fetch_calls: List[Tuple[str, str, int]] = []
        self.product_calls: List[List[str]] = []
        self.warm_calls: List[List[str]] = []
        self.warmed_catalog: Dict[str, UpstreamProduct] = {}
        self.fail_warm = False

    async def report_dates(self, limit: int = 2) -> List[str]:
        return self.dates[:limit]

    async def fetch(self, keyword: str, period_date: str, limit: int) -> List[CandidateRow]:
        self.fetch_calls.append((keyword, period_date, limit))
        if keyword in self.fail_fetch_for:
            raise UpstreamError(f"analytics unavailable for {keyword}", upstream="analytics")
        return list(self.rows.get((keyword, period_date), []))[:limit]

    async def products(self, asins: List[str]) -> Dict[str, UpstreamProduct]:
        self.product_calls.append(list(asins))
        return {a: self.catalog[a] for a in asins if a in self.catalog}

    async def warm(self, asins: List[str]) -> List[str]:
        """Moves warmed_catalog entries for asins into the catalog."""
        self.warm_calls.append(list(asins))
        if self.fail_warm:
            raise UpstreamError("warmup rejected", upstream="catalog")
        for asin in asins:
            if asin in self.warmed_catalog:
                self.catalog[asin] = self.warmed_catalog.pop(asin)
        return [f"warm-{i}" for i in range(len(asins))]


@pytest.fixture
def signal_provider() -> FakeSignalProvider:
    return FakeSignalProvider()


# ============================================================================
# Stores
# ============================================================================

class InMemoryKeywordStore(KeywordStore):
    def __init__(self, records: Optional[List[KeywordRecord]] = None):
        self.records: Dict[str, KeywordRecord] = {r.slug: r for r in records or []}
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise PersistenceError("connection refused", unreachable=True)

    async def get(self, slug: str) -> Optional[KeywordRecord]:
        self._check()
        return self.records.get(slug)

    async def list_active(self, limit: int) -> List[KeywordRecord]:
        self._check()
        active = [
            r for r in self.records.values()
            if r.is_active and r.status != KeywordStatus.PAUSED
        ]
        active.sort(key=lambda r: (-r.priority, r.slug))
        return active[:limit]

    async def list_failed(self, limit: int, max_retries: int) -> List[KeywordRecord]:
        self._check()
        failed = [
            r for r in self.records.values()
            if r.is_active and r.status == KeywordStatus.ERROR and r.error_count < max_retries
        ]
        failed.sort(key=lambda r: (-r.priority, r.slug))
        return failed[:limit]

    async def mark_active(self, slug: str, reason: Optional[str] = None) -> None:
        self._check()
        record = self.records[slug]
        record.status = KeywordStatus.ACTIVE
        record.status_reason = reason
        record.error_count = 0
        record.last_refreshed_at = datetime.utcnow()

    async def mark_error(self, slug: str, reason: str) -> None:
        self._check()
        record = self.records[slug]
        record.status = KeywordStatus.ERROR
        record.status_reason = reason
        record.error_count += 1
        record.last_refreshed_at = datetime.utcnow()


class InMemorySheetStore(PersistenceStore):
    def __init__(self):
        self.periods: Dict[str, Dict[str, RankSheetPeriod]] = {}
        self.fail_save = False

    async def save(self, slug: str, period: RankSheetPeriod) -> None:
        if self.fail_save:
            raise PersistenceError("write rejected")
        self.periods.setdefault(slug, {})[period.data_period] = period

    async def load_recent_periods(self, slug: str, n: int) -> List[RankSheetPeriod]:
        by_period = self.periods.get(slug, {})
        return [by_period[p] for p in sorted(by_period, reverse=True)[:n]]


class InMemoryProductCache(ProductCache):
    """Dict-backed ASIN cache using the same TTL defaults as the SQL store."""

    def __init__(self):
        self.entries: Dict[str, CachedProduct] = {}
        self.fail_upsert = False

    async def get_many(self, asins: List[str]) -> Dict[str, CachedProduct]:
        now = datetime.utcnow()
        return {
            a: self.entries[a] for a in asins
            if a in self.entries and (self.entries[a].expires_at is None or self.entries[a].expires_at > now)
        }

    async def upsert(self, entries: List[CachedProduct]) -> None:
        if self.fail_upsert:
            raise PersistenceError("cache write rejected")
        now = datetime.utcnow()
        for entry in entries:
            self.entries[entry.asin] = replace(entry, fetched_at=now, expires_at=cache_expiry(entry, now))

    async def purge_expired(self, dry_run: bool = False) -> int:
        now = datetime.utcnow()
        expired = [a for a, e in self.entries.items() if e.expires_at is not None and e.expires_at < now]
        if not dry_run:
            for asin in expired:
                del self.entries[asin]
        return len(expired)


@pytest.fixture
def keyword_store() -> InMemoryKeywordStore:
    return InMemoryKeywordStore([
        KeywordRecord(slug="wireless-earbuds", keyword="wireless earbuds", priority=5),
        KeywordRecord(slug="yoga-mat", keyword="yoga mat", priority=1),
    ])


@pytest.fixture
def sheet_store() -> InMemorySheetStore:
    return InMemorySheetStore()


@pytest.fixture
def product_cache() -> InMemoryProductCache:
    return InMemoryProductCache()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        SQLITE_PATH=":memory:",
        IP_HASH_SALT="test-salt",
        REFRESH_RATE_LIMIT=3,
        PUBLIC_RATE_LIMIT=5,
        WARMUP_DELAY_SECONDS=0,
    )


# ============================================================================
# Builders
# ============================================================================

def make_card(
    asin: str,
    title: Optional[str] = None,
    brand: Optional[str] = "Acme",
    image: Optional[str] = "https://img.example/{asin}.jpg",
    parent_asin: Optional[str] = None,
    variation_group: Optional[str] = None,
) -> ProductCard:
    return ProductCard(
        asin=asin,
        title=title if title is not None else f"Product {asin}",
        brand=brand,
        image=image.format(asin=asin) if image else None,
        parent_asin=parent_asin,
        variation_group=variation_group,
    )


def make_row(
    asin: str,
    rank: int,
    click_share: float = 0.1,
    conversion_share: float = 0.1,
    card: Optional[ProductCard] = None,
    with_card: bool = True,
) -> CandidateRow:
    if card is None and with_card:
        card = make_card(asin)
    return CandidateRow(
        asin=asin,
        rank=rank,
        click_share=click_share,
        conversion_share=conversion_share,
        card=card,
    )


def make_product(asin: str, title: Optional[str] = None, brand: str = "Acme", **kwargs) -> UpstreamProduct:
    return UpstreamProduct.model_validate({
        "asin": asin,
        "title": title or f"Product {asin}",
        "brand": {"name": brand},
        "featuredImage": f"https://img.example/{asin}.jpg",
        **kwargs,
    })
