"""
Tests for the SQL stores, keyword locks and the redis counter store.

The SQL stores run against an in-memory SQLite engine; redis is mocked.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ranksheet.cache.redis_store import RedisCounterStore
from ranksheet.errors import LockNotAcquired, PersistenceError
from ranksheet.models import (
    CachedProduct,
    KeywordRecord,
    KeywordStatus,
    ProductCacheStatus,
    RankSheetPeriod,
    ReadinessLevel,
    SanitizedRow,
    SheetMode,
    TrendLabel,
)
from ranksheet.persistence.locks import (
    RedisLockProvider,
    advisory_lock_id,
    fnv1a32,
    to_signed32,
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
    EXISTS_TTL_DAYS,
    NOT_FOUND_TTL_DAYS,
    RankSheetStore,
    SqlKeywordStore,
    SqlProductCache,
    clamp_top_n,
)
from ranksheet.utils.config import Settings

from conftest import make_card


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def sql_keywords(session_factory):
    return SqlKeywordStore(session_factory)


@pytest.fixture
def sql_sheets(session_factory):
    return RankSheetStore(session_factory)


@pytest.fixture
def sql_product_cache(session_factory):
    return SqlProductCache(session_factory)


def _period(data_period: str, asins, updated_at=None) -> RankSheetPeriod:
    rows = [
        SanitizedRow(
            rank=i,
            asin=asin,
            title=f"Product {asin}",
            brand="Acme",
            image=f"https://img.example/{asin}.jpg",
            score=90 - i,
            market_share_index=100 - i,
            buyer_trust_index=80,
            trend_delta=1 if i == 1 else None,
            trend_label=TrendLabel.RISING if i == 1 else TrendLabel.STABLE,
            badges=["Category King"] if i == 1 else [],
        )
        for i, asin in enumerate(asins, start=1)
    ]
    return RankSheetPeriod(
        data_period=data_period,
        updated_at=updated_at or datetime(2024, 6, 10, 8, 0, 0),
        readiness_level=ReadinessLevel.FULL,
        valid_count=len(rows),
        rows=rows,
        mode=SheetMode.NORMAL if len(rows) >= 5 else SheetMode.LOW_DATA,
        metadata={"reportDate": data_period},
    )


# =============================================================================
# SESSION
# =============================================================================

class TestSession:

    def test_database_url_fallback(self):
        settings = Settings(_env_file=None, DATABASE_URL=None, SQLITE_PATH="./local.db")
        assert get_database_url(settings) == "sqlite:///./local.db"

    def test_postgres_scheme_normalized(self):
        settings = Settings(_env_file=None, DATABASE_URL="postgres://u:p@db/ranks")
        url = get_database_url(settings)
        assert url == "postgresql://u:p@db/ranks"
        assert is_postgres_url(url)

    def test_connection_check(self, engine):
        assert check_db_connection(engine) is True


# =============================================================================
# KEYWORD STORE
# =============================================================================

class TestSqlKeywordStore:

    @pytest.mark.asyncio
    async def test_list_active_ordering(self, sql_keywords):
        await sql_keywords.upsert(KeywordRecord(slug="b-low", keyword="b", priority=1))
        await sql_keywords.upsert(KeywordRecord(slug="a-low", keyword="a", priority=1))
        await sql_keywords.upsert(KeywordRecord(slug="top", keyword="top", priority=9))
        await sql_keywords.upsert(KeywordRecord(slug="off", keyword="off", is_active=False))
        await sql_keywords.upsert(
            KeywordRecord(slug="paused", keyword="paused", priority=99, status=KeywordStatus.PAUSED)
        )

        active = await sql_keywords.list_active(limit=10)
        assert [k.slug for k in active] == ["top", "a-low", "b-low"]
        assert [k.slug for k in await sql_keywords.list_active(limit=1)] == ["top"]

    @pytest.mark.asyncio
    async def test_status_transitions(self, sql_keywords):
        await sql_keywords.upsert(KeywordRecord(slug="kw", keyword="kw"))

        await sql_keywords.mark_error("kw", "upstream down")
        await sql_keywords.mark_error("kw", "upstream down again")
        record = await sql_keywords.get("kw")
        assert record.status == KeywordStatus.ERROR
        assert record.error_count == 2
        assert record.status_reason == "upstream down again"

        await sql_keywords.mark_active("kw", "Low data (3 valid items).")
        record = await sql_keywords.get("kw")
        assert record.status == KeywordStatus.ACTIVE
        assert record.error_count == 0
        assert record.last_refreshed_at is not None

    @pytest.mark.asyncio
    async def test_list_failed_respects_retries(self, sql_keywords):
        await sql_keywords.upsert(
            KeywordRecord(slug="retry", keyword="r", status=KeywordStatus.ERROR, error_count=1)
        )
        await sql_keywords.upsert(
            KeywordRecord(slug="spent", keyword="s", status=KeywordStatus.ERROR, error_count=3)
        )
        await sql_keywords.upsert(KeywordRecord(slug="fine", keyword="f", status=KeywordStatus.ACTIVE))

        failed = await sql_keywords.list_failed(limit=10, max_retries=3)
        assert [k.slug for k in failed] == ["retry"]

    @pytest.mark.asyncio
    async def test_top_n_clamped(self, sql_keywords):
        await sql_keywords.upsert(KeywordRecord(slug="wide", keyword="w", top_n=500))
        assert (await sql_keywords.get("wide")).top_n == 50

    @pytest.mark.asyncio
    async def test_unknown_keyword(self, sql_keywords):
        assert await sql_keywords.get("nope") is None
        with pytest.raises(PersistenceError) as exc_info:
            await sql_keywords.mark_error("nope", "x")
        assert exc_info.value.unreachable is False


def test_clamp_top_n():
    assert clamp_top_n(None) == 20
    assert clamp_top_n(1) == 5
    assert clamp_top_n(80) == 50


# =============================================================================
# RANK SHEET STORE
# =============================================================================

class TestRankSheetStore:

    @pytest.mark.asyncio
    async def test_save_and_load_round_trip(self, sql_sheets):
        period = _period("2024-06-09", ["A1", "A2", "A3"])
        await sql_sheets.save("yoga-mat", period)

        loaded = await sql_sheets.load_recent_periods("yoga-mat", 5)
        assert len(loaded) == 1
        sheet = loaded[0]
        assert sheet.data_period == "2024-06-09"
        assert sheet.mode == SheetMode.LOW_DATA
        assert sheet.readiness_level == ReadinessLevel.FULL
        assert [r.asin for r in sheet.rows] == ["A1", "A2", "A3"]
        assert sheet.rows[0].trend_label == TrendLabel.RISING
        assert sheet.rows[0].badges == ["Category King"]
        assert sheet.metadata == {"reportDate": "2024-06-09"}

    @pytest.mark.asyncio
    async def test_save_overwrites_only_its_period(self, sql_sheets):
        await sql_sheets.save("yoga-mat", _period("2024-06-02", ["OLD"]))
        await sql_sheets.save("yoga-mat", _period("2024-06-09", ["A1"]))
        await sql_sheets.save(
            "yoga-mat",
            _period("2024-06-09", ["B1", "B2"], updated_at=datetime(2024, 6, 11)),
        )

        loaded = await sql_sheets.load_recent_periods("yoga-mat", 10)
        assert [p.data_period for p in loaded] == ["2024-06-09", "2024-06-02"]
        assert [r.asin for r in loaded[0].rows] == ["B1", "B2"]
        assert loaded[0].updated_at == datetime(2024, 6, 11)
        assert [r.asin for r in loaded[1].rows] == ["OLD"]

    @pytest.mark.asyncio
    async def test_load_limit_and_isolation(self, sql_sheets):
        for day in ("2024-05-19", "2024-05-26", "2024-06-02", "2024-06-09"):
            await sql_sheets.save("yoga-mat", _period(day, ["A1"]))
        await sql_sheets.save("earbuds", _period("2024-06-09", ["E1"]))

        loaded = await sql_sheets.load_recent_periods("yoga-mat", 2)
        assert [p.data_period for p in loaded] == ["2024-06-09", "2024-06-02"]
        assert await sql_sheets.load_recent_periods("missing", 5) == []

    @pytest.mark.asyncio
    async def test_unreachable_database(self):
        broken = RankSheetStore(create_session_factory(create_db_engine("sqlite:////nonexistent/dir/ranks.db")))
        with pytest.raises(PersistenceError) as exc_info:
            await broken.load_recent_periods("yoga-mat", 1)
        assert exc_info.value.unreachable is True


# =============================================================================
# PRODUCT CACHE
# =============================================================================

class TestSqlProductCache:

    @pytest.mark.asyncio
    async def test_entries_round_trip_with_status_ttls(self, sql_product_cache):
        before = datetime.utcnow()
        await sql_product_cache.upsert([
            CachedProduct.found(make_card("A1", parent_asin="P1", variation_group="P1")),
            CachedProduct.not_found("GONE"),
        ])

        cached = await sql_product_cache.get_many(["A1", "GONE", "UNSEEN", "A1"])

        assert set(cached) == {"A1", "GONE"}
        found = cached["A1"]
        assert found.status == ProductCacheStatus.EXISTS
        assert found.to_card() == make_card("A1", parent_asin="P1", variation_group="P1")
        assert found.expires_at - found.fetched_at == timedelta(days=EXISTS_TTL_DAYS)
        assert found.fetched_at >= before

        missing = cached["GONE"]
        assert missing.status == ProductCacheStatus.NOT_FOUND
        assert missing.to_card() is None
        assert missing.expires_at - missing.fetched_at == timedelta(days=NOT_FOUND_TTL_DAYS)

    @pytest.mark.asyncio
    async def test_upsert_overwrites_existing_entry(self, sql_product_cache):
        await sql_product_cache.upsert([CachedProduct.not_found("A1")])
        await sql_product_cache.upsert([CachedProduct.found(make_card("A1", title="Back in stock"))])

        cached = await sql_product_cache.get_many(["A1"])
        assert cached["A1"].status == ProductCacheStatus.EXISTS
        assert cached["A1"].title == "Back in stock"

    @pytest.mark.asyncio
    async def test_expired_entries_hidden_and_purged(self, sql_product_cache):
        stale = datetime.utcnow() - timedelta(days=1)
        await sql_product_cache.upsert([
            CachedProduct(asin="OLD", expires_at=stale),
            CachedProduct(asin="OLD-NF", status=ProductCacheStatus.NOT_FOUND, expires_at=stale),
            CachedProduct.found(make_card("FRESH")),
        ])

        assert set(await sql_product_cache.get_many(["OLD", "OLD-NF", "FRESH"])) == {"FRESH"}

        assert await sql_product_cache.purge_expired(dry_run=True) == 2
        assert await sql_product_cache.purge_expired() == 2
        assert await sql_product_cache.purge_expired(dry_run=True) == 0
        assert set(await sql_product_cache.get_many(["FRESH"])) == {"FRESH"}

    @pytest.mark.asyncio
    async def test_empty_requests(self, sql_product_cache):
        assert await sql_product_cache.get_many([]) == {}
        await sql_product_cache.upsert([])
        assert await sql_product_cache.purge_expired() == 0


# =============================================================================
# LOCKS
# =============================================================================

class TestLockIds:

    def test_fnv1a32_known_values(self):
        assert fnv1a32("") == 0x811C9DC5
        assert fnv1a32("a") == 0xE40C292C

    def test_signed_conversion(self):
        assert to_signed32(0x7FFFFFFF) == 0x7FFFFFFF
        assert to_signed32(0x80000000) == -0x80000000
        assert advisory_lock_id("a") == 0xE40C292C - 0x100000000

    def test_lock_ids_stable_and_in_range(self):
        key = "refresh:keyword:wireless-earbuds"
        assert advisory_lock_id(key) == advisory_lock_id(key)
        assert -(2 ** 31) <= advisory_lock_id(key) < 2 ** 31


class TestRedisLockProvider:

    @pytest.mark.asyncio
    async def test_exclusive_until_released(self, counter_store):
        first = RedisLockProvider(counter_store, ttl_seconds=60)
        second = RedisLockProvider(counter_store, ttl_seconds=60)

        assert await first.try_acquire("k") is True
        assert await second.try_acquire("k") is False

        await first.release("k")
        assert await second.try_acquire("k") is True

    @pytest.mark.asyncio
    async def test_expired_lock_not_released_by_old_holder(self, counter_store, clock):
        first = RedisLockProvider(counter_store, ttl_seconds=60)
        second = RedisLockProvider(counter_store, ttl_seconds=60)

        await first.try_acquire("k")
        clock.advance(61)
        assert await second.try_acquire("k") is True

        await first.release("k")
        assert await counter_store.get("rs:lock:k") is not None

    @pytest.mark.asyncio
    async def test_hold_context_manager(self, counter_store):
        provider = RedisLockProvider(counter_store)
        other = RedisLockProvider(counter_store)

        async with provider.hold("k"):
            with pytest.raises(LockNotAcquired):
                async with other.hold("k"):
                    pass
        assert await other.try_acquire("k") is True

    @pytest.mark.asyncio
    async def test_close_releases_all(self, counter_store):
        provider = RedisLockProvider(counter_store)
        await provider.try_acquire("a")
        await provider.try_acquire("b")
        await provider.close()
        assert counter_store.values == {}


# =============================================================================
# REDIS COUNTER STORE
# =============================================================================

class TestRedisCounterStore:

    @pytest.mark.asyncio
    async def test_increment_and_get_ttl_uses_transaction(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[3, 42])
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        redis = MagicMock()
        redis.pipeline.return_value = pipe

        store = RedisCounterStore(redis)
        assert await store.increment_and_get_ttl("rs:rl:x") == (3, 42)
        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("rs:rl:x")
        pipe.ttl.assert_called_once_with("rs:rl:x")

    @pytest.mark.asyncio
    async def test_set_if_absent(self):
        redis = MagicMock()
        redis.set = AsyncMock(side_effect=[True, None])
        store = RedisCounterStore(redis)

        assert await store.set_if_absent("k", "v", 30) is True
        assert await store.set_if_absent("k", "v", 30) is False
        redis.set.assert_called_with("k", "v", ex=30, nx=True)

    @pytest.mark.asyncio
    async def test_delete_if_equals_is_scripted(self):
        redis = MagicMock()
        redis.eval = AsyncMock(return_value=1)
        store = RedisCounterStore(redis)

        assert await store.delete_if_equals("k", "token") is True
        args = redis.eval.call_args.args
        assert args[1:] == (1, "k", "token")

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        from redis.exceptions import ConnectionError as RedisConnectionError

        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await RedisCounterStore(redis).ping() is False
