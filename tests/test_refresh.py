"""
Tests for the keyword refresh pipeline.
"""

from datetime import datetime, timedelta

import pytest

from ranksheet.errors import PersistenceError, ValidationError
from ranksheet.models import (
    CachedProduct,
    KeywordRecord,
    KeywordStatus,
    ProductCacheStatus,
    RankSheetPeriod,
    ReadinessLevel,
    SheetMode,
)
from ranksheet.pipeline.refresh import (
    FAILED,
    KEYWORD_INACTIVE,
    KEYWORD_NOT_FOUND,
    NO_REPORT_DATE,
    REFRESHED,
    SKIPPED,
    KeywordRefresher,
    fetch_buffer,
    validate_rows,
)

from conftest import make_card, make_product, make_row


CURRENT = "2024-06-09"
PREVIOUS = "2024-06-02"


def seed(provider, keyword: str, count: int, period: str = CURRENT, offset: int = 0):
    """Serve `count` rows for keyword/period and register their products."""
    rows = []
    for rank in range(1, count + 1):
        asin = f"B{offset + rank:04d}"
        rows.append(make_row(asin, rank, click_share=0.3 / rank, conversion_share=0.2 / rank))
        provider.catalog[asin] = make_product(asin)
    provider.rows[(keyword, period)] = rows
    return rows


@pytest.fixture
def refresher(signal_provider, keyword_store, sheet_store):
    return KeywordRefresher(signal_provider, keyword_store, sheet_store, warmup_delay=0)


@pytest.fixture
def cached_refresher(signal_provider, keyword_store, sheet_store, product_cache):
    return KeywordRefresher(
        signal_provider, keyword_store, sheet_store, product_cache=product_cache, warmup_delay=0
    )


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidateRows:

    def test_valid_batch(self):
        validate_rows([make_row("A", 1), make_row("B", 2, click_share=1.0, conversion_share=0.0)])

    @pytest.mark.parametrize("rows", [
        [make_row(" ", 1)],
        [make_row("A", 0)],
        [make_row("A", 1), make_row("B", 1)],
        [make_row("A", 1, click_share=1.5)],
        [make_row("A", 1, conversion_share=-0.1)],
    ])
    def test_rejects_whole_batch(self, rows):
        with pytest.raises(ValidationError):
            validate_rows(rows)


def test_fetch_buffer_bounds():
    assert fetch_buffer(5) == 10
    assert fetch_buffer(20) == 20
    assert fetch_buffer(50) == 40


# =============================================================================
# REFRESH
# =============================================================================

class TestKeywordRefresher:

    @pytest.mark.asyncio
    async def test_success_persists_and_marks_active(
        self, refresher, signal_provider, keyword_store, sheet_store
    ):
        seed(signal_provider, "wireless earbuds", 25)
        seed(signal_provider, "wireless earbuds", 5, period=PREVIOUS)

        outcome = await refresher.refresh("wireless-earbuds")

        assert outcome.ok
        assert outcome.status == REFRESHED
        assert outcome.data_period == CURRENT
        assert outcome.valid_count == 20
        assert outcome.mode == SheetMode.NORMAL.value
        assert outcome.stats["prevReportDate"] == PREVIOUS
        assert outcome.stats["fetchedCount"] == 25

        saved = sheet_store.periods["wireless-earbuds"][CURRENT]
        assert len(saved.rows) == 20
        assert saved.readiness_level == ReadinessLevel.FULL
        assert saved.rows[0].trend_delta == 0
        assert saved.rows[10].trend_delta is None

        record = keyword_store.records["wireless-earbuds"]
        assert record.status == KeywordStatus.ACTIVE
        assert record.status_reason is None
        assert record.error_count == 0

    @pytest.mark.asyncio
    async def test_fetch_limit_includes_buffer(self, refresher, signal_provider):
        seed(signal_provider, "wireless earbuds", 3)
        await refresher.refresh("wireless-earbuds")
        assert (
            ("wireless earbuds", CURRENT, 40) in signal_provider.fetch_calls
        )

    @pytest.mark.asyncio
    async def test_low_data_mode(self, refresher, signal_provider, keyword_store, sheet_store):
        seed(signal_provider, "yoga mat", 3)

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.ok
        assert outcome.mode == SheetMode.LOW_DATA.value
        assert sheet_store.periods["yoga-mat"][CURRENT].mode == SheetMode.LOW_DATA
        record = keyword_store.records["yoga-mat"]
        assert record.status == KeywordStatus.ACTIVE
        assert "Low data" in record.status_reason

    @pytest.mark.asyncio
    async def test_variants_collapsed(self, refresher, signal_provider, sheet_store):
        seed(signal_provider, "yoga mat", 6)
        for asin in ("B0002", "B0003"):
            signal_provider.catalog[asin] = make_product(asin, parentAsin="PARENT1")
        signal_provider.catalog["B0001"] = make_product("B0001", parentAsin="PARENT1")

        outcome = await refresher.refresh("yoga-mat")

        saved = sheet_store.periods["yoga-mat"][CURRENT]
        asins = [r.asin for r in saved.rows]
        assert "B0002" not in asins and "B0003" not in asins
        assert "Multiple options" in saved.rows[0].badges
        assert outcome.stats["dedupedRemoved"] == 2

    @pytest.mark.asyncio
    async def test_unpublishable_rows_excluded(self, refresher, signal_provider, sheet_store):
        seed(signal_provider, "yoga mat", 8)
        del signal_provider.catalog["B0002"]

        await refresher.refresh("yoga-mat")

        saved = sheet_store.periods["yoga-mat"][CURRENT]
        assert "B0002" not in [r.asin for r in saved.rows]
        assert saved.metadata["readiness"]["missingAsins"] == ["B0002"]

    @pytest.mark.asyncio
    async def test_upstream_failure_marks_error_and_keeps_history(
        self, refresher, signal_provider, keyword_store, sheet_store
    ):
        earlier = RankSheetPeriod(
            data_period=PREVIOUS,
            updated_at=datetime(2024, 6, 3),
            readiness_level=ReadinessLevel.FULL,
            valid_count=0,
        )
        sheet_store.periods["yoga-mat"] = {PREVIOUS: earlier}
        signal_provider.fail_fetch_for.add("yoga mat")

        outcome = await refresher.refresh("yoga-mat")

        assert not outcome.ok
        assert outcome.status == FAILED
        assert "analytics unavailable" in outcome.error
        record = keyword_store.records["yoga-mat"]
        assert record.status == KeywordStatus.ERROR
        assert record.error_count == 1
        assert sheet_store.periods["yoga-mat"] == {PREVIOUS: earlier}

    @pytest.mark.asyncio
    async def test_invalid_batch_marks_error(self, refresher, signal_provider, keyword_store, sheet_store):
        signal_provider.rows[("yoga mat", CURRENT)] = [make_row("A", 1), make_row("B", 1)]

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.status == FAILED
        assert "Duplicate rank" in outcome.error
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.ERROR
        assert "yoga-mat" not in sheet_store.periods

    @pytest.mark.asyncio
    async def test_save_failure_marks_error(self, refresher, signal_provider, keyword_store, sheet_store):
        seed(signal_provider, "yoga mat", 6)
        sheet_store.fail_save = True

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.status == FAILED
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.ERROR

    @pytest.mark.asyncio
    async def test_unreachable_store_propagates(self, refresher, keyword_store):
        keyword_store.unreachable = True
        with pytest.raises(PersistenceError):
            await refresher.refresh("yoga-mat")

    @pytest.mark.asyncio
    async def test_unknown_keyword_skipped(self, refresher):
        outcome = await refresher.refresh("nope")
        assert outcome.status == SKIPPED
        assert outcome.error == KEYWORD_NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("record", [
        KeywordRecord(slug="old", keyword="old", is_active=False),
        KeywordRecord(slug="old", keyword="old", status=KeywordStatus.PAUSED),
    ])
    async def test_inactive_keyword_skipped(self, refresher, keyword_store, signal_provider, record):
        keyword_store.records["old"] = record
        outcome = await refresher.refresh("old")
        assert outcome.status == SKIPPED
        assert outcome.error == KEYWORD_INACTIVE
        assert signal_provider.fetch_calls == []

    @pytest.mark.asyncio
    async def test_no_report_date(self, refresher, signal_provider, keyword_store):
        signal_provider.dates = []

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.status == FAILED
        assert outcome.error == NO_REPORT_DATE
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.PENDING

    @pytest.mark.asyncio
    async def test_explicit_report_date(self, refresher, signal_provider, sheet_store):
        signal_provider.dates = ["2024-06-16", CURRENT, PREVIOUS]
        seed(signal_provider, "yoga mat", 6)

        outcome = await refresher.refresh("yoga-mat", report_date=CURRENT)

        assert outcome.data_period == CURRENT
        assert outcome.stats["prevReportDate"] == PREVIOUS

    @pytest.mark.asyncio
    async def test_first_period_has_no_previous(self, refresher, signal_provider, sheet_store):
        signal_provider.dates = [CURRENT]
        seed(signal_provider, "yoga mat", 6)

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.stats["prevReportDate"] is None
        assert all(r.trend_delta is None for r in sheet_store.periods["yoga-mat"][CURRENT].rows)
        assert len(signal_provider.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, refresher, signal_provider, keyword_store, sheet_store):
        seed(signal_provider, "yoga mat", 6)

        outcome = await refresher.refresh("yoga-mat", dry_run=True)

        assert outcome.ok
        assert sheet_store.periods == {}
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.PENDING

    @pytest.mark.asyncio
    async def test_rerun_overwrites_same_period(self, refresher, signal_provider, sheet_store):
        seed(signal_provider, "yoga mat", 6)
        await refresher.refresh("yoga-mat")
        seed(signal_provider, "yoga mat", 8, offset=100)
        await refresher.refresh("yoga-mat")

        periods = sheet_store.periods["yoga-mat"]
        assert list(periods) == [CURRENT]
        assert periods[CURRENT].rows[0].asin == "B0101"


# =============================================================================
# PRODUCT CACHE AND WARMUP
# =============================================================================

class TestProductCacheAndWarmup:

    @pytest.mark.asyncio
    async def test_cache_hits_skip_catalog(self, cached_refresher, signal_provider, product_cache):
        seed(signal_provider, "yoga mat", 6)
        await product_cache.upsert([CachedProduct.found(make_card(f"B{i:04d}")) for i in range(1, 7)])
        signal_provider.catalog.clear()

        outcome = await cached_refresher.refresh("yoga-mat")

        assert outcome.ok
        assert outcome.valid_count == 6
        assert signal_provider.product_calls == []
        assert outcome.stats["productCache"] == {
            "cached": 6, "cachedNotFound": 0, "fetched": 0, "found": 0,
        }

    @pytest.mark.asyncio
    async def test_not_found_entries_not_requested(
        self, cached_refresher, signal_provider, product_cache, sheet_store
    ):
        seed(signal_provider, "yoga mat", 6)
        del signal_provider.catalog["B0006"]
        await product_cache.upsert([CachedProduct.not_found("B0006")])

        outcome = await cached_refresher.refresh("yoga-mat")

        assert "B0006" not in signal_provider.product_calls[0]
        assert outcome.stats["productCache"]["cachedNotFound"] == 1
        saved = sheet_store.periods["yoga-mat"][CURRENT]
        assert "B0006" not in [r.asin for r in saved.rows]

    @pytest.mark.asyncio
    async def test_fetched_lookups_are_cached(self, cached_refresher, signal_provider, product_cache):
        seed(signal_provider, "yoga mat", 6)
        del signal_provider.catalog["B0003"]
        before = datetime.utcnow()

        await cached_refresher.refresh("yoga-mat")

        found = product_cache.entries["B0001"]
        assert found.status == ProductCacheStatus.EXISTS
        assert found.title == "Product B0001"
        assert found.expires_at >= before + timedelta(days=30)

        missing = product_cache.entries["B0003"]
        assert missing.status == ProductCacheStatus.NOT_FOUND
        assert before + timedelta(days=7) <= missing.expires_at < before + timedelta(days=8)

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, cached_refresher, signal_provider, product_cache):
        seed(signal_provider, "yoga mat", 6)
        stale = CachedProduct.not_found("B0001")
        stale.expires_at = datetime.utcnow() - timedelta(days=1)
        await product_cache.upsert([stale])

        outcome = await cached_refresher.refresh("yoga-mat")

        assert "B0001" in signal_provider.product_calls[0]
        assert outcome.valid_count == 6
        assert product_cache.entries["B0001"].status == ProductCacheStatus.EXISTS

    @pytest.mark.asyncio
    async def test_cache_write_failure_does_not_fail_refresh(
        self, cached_refresher, signal_provider, product_cache, keyword_store
    ):
        seed(signal_provider, "yoga mat", 6)
        product_cache.fail_upsert = True

        outcome = await cached_refresher.refresh("yoga-mat")

        assert outcome.ok
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_warmup_improves_readiness(
        self, cached_refresher, signal_provider, product_cache, sheet_store
    ):
        seed(signal_provider, "yoga mat", 10)
        cold = [f"B{i:04d}" for i in range(5, 11)]
        for asin in cold:
            signal_provider.warmed_catalog[asin] = signal_provider.catalog.pop(asin)

        outcome = await cached_refresher.refresh("yoga-mat")

        assert signal_provider.warm_calls == [cold]
        assert outcome.readiness_level == ReadinessLevel.FULL.value
        assert outcome.valid_count == 10
        assert outcome.stats["warmup"]["readyBefore"] == 4
        assert outcome.stats["warmup"]["readyAfter"] == 10
        assert outcome.stats["readiness"]["missingAsins"] == []
        assert product_cache.entries["B0010"].status == ProductCacheStatus.EXISTS
        assert sheet_store.periods["yoga-mat"][CURRENT].readiness_level == ReadinessLevel.FULL

    @pytest.mark.asyncio
    async def test_warmup_failure_keeps_first_readiness(self, refresher, signal_provider, keyword_store):
        seed(signal_provider, "yoga mat", 10)
        for asin in ("B0009", "B0010"):
            del signal_provider.catalog[asin]
        signal_provider.fail_warm = True

        outcome = await refresher.refresh("yoga-mat")

        assert outcome.ok
        assert outcome.readiness_level == ReadinessLevel.PARTIAL.value
        assert outcome.valid_count == 8
        assert "warmup rejected" in outcome.stats["warmup"]["error"]
        assert keyword_store.records["yoga-mat"].status == KeywordStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_no_warmup_when_ready(self, refresher, signal_provider):
        seed(signal_provider, "yoga mat", 6)

        outcome = await refresher.refresh("yoga-mat")

        assert signal_provider.warm_calls == []
        assert "warmup" not in outcome.stats
