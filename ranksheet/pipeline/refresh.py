"""
Keyword Refresh Pipeline

Runs one keyword end to end:

    report dates -> fetch signals (current + previous) -> validate
    -> product metadata (ASIN cache, then catalog) -> readiness
    -> warmup of rows missing images -> readiness -> dedupe -> score -> persist

A failed refresh marks the keyword ERROR and leaves its earlier periods
untouched. Store unavailability is re-raised so the owning job can fail.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from ranksheet.collector.client import SignalProvider
from ranksheet.errors import PersistenceError, UpstreamError, ValidationError
from ranksheet.models import (
    CachedProduct, CandidateRow, KeywordStatus, ProductCacheStatus, ProductCard,
    RankSheetPeriod, ReadinessResult, SheetMode,
)
from ranksheet.persistence.store import (
    KeywordStore, PersistenceStore, ProductCache, clamp_top_n,
)
from ranksheet.sheet.dedupe import dedupe_variations
from ranksheet.sheet.product_card import extract_product_card
from ranksheet.sheet.readiness import compute_readiness
from ranksheet.sheet.scoring import DEFAULT_WEIGHTS, ScoreWeights, compute_sanitized_rows

logger = logging.getLogger(__name__)

READINESS_TOP_K = 10
LOW_DATA_THRESHOLD = 5
REPORT_DATE_LOOKBACK = 10
WARMUP_MAX_ASINS = 20
WARMUP_DELAY_SECONDS = 0.75

# Outcome statuses
REFRESHED = "refreshed"
SKIPPED = "skipped"
FAILED = "failed"

# Outcome error codes
KEYWORD_NOT_FOUND = "keyword_not_found"
KEYWORD_INACTIVE = "keyword_inactive"
NO_REPORT_DATE = "no_report_date"


@dataclass
class RefreshOutcome:
    """Result of refreshing one keyword."""
    ok: bool
    slug: str
    status: str
    error: Optional[str] = None
    data_period: Optional[str] = None
    readiness_level: Optional[str] = None
    valid_count: int = 0
    mode: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "slug": self.slug,
            "status": self.status,
            "error": self.error,
            "dataPeriod": self.data_period,
            "readinessLevel": self.readiness_level,
            "validCount": self.valid_count,
            "mode": self.mode,
            "stats": dict(self.stats),
        }


def fetch_buffer(top_n: int) -> int:
    """Extra rows fetched to survive dedupe and unpublishable products."""
    return max(10, min(40, top_n))


def validate_rows(rows: List[CandidateRow]) -> None:
    """
    Reject a malformed batch as a whole.

    Raises:
        ValidationError: Blank ASIN, rank below 1, duplicate rank, or a
            share outside 0..1
    """
    seen_ranks = set()
    for row in rows:
        if not row.asin or not row.asin.strip():
            raise ValidationError(f"Blank ASIN at rank {row.rank}")
        if row.rank < 1:
            raise ValidationError(f"Invalid rank {row.rank} for {row.asin}")
        if row.rank in seen_ranks:
            raise ValidationError(f"Duplicate rank {row.rank}")
        seen_ranks.add(row.rank)
        for name, value in (("click_share", row.click_share), ("conversion_share", row.conversion_share)):
            if value is None or not (0.0 <= value <= 1.0):
                raise ValidationError(f"{name} {value} out of range for {row.asin}")


class KeywordRefresher:
    """
    Refreshes a keyword's rank sheet for a reporting period.

    Usage:
        refresher = KeywordRefresher(provider, keywords, sheets, product_cache=cache)
        outcome = await refresher.refresh("wireless-earbuds")
    """

    def __init__(
        self,
        provider: SignalProvider,
        keywords: KeywordStore,
        sheets: PersistenceStore,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
        product_cache: Optional[ProductCache] = None,
        warmup_delay: float = WARMUP_DELAY_SECONDS,
    ):
        self.provider = provider
        self.keywords = keywords
        self.sheets = sheets
        self.weights = weights
        self.product_cache = product_cache
        self.warmup_delay = warmup_delay

    async def refresh(
        self,
        slug: str,
        report_date: Optional[str] = None,
        dry_run: bool = False,
    ) -> RefreshOutcome:
        """
        Refresh one keyword.

        Args:
            slug: Keyword slug
            report_date: Period to build (default: latest weekly report)
            dry_run: Build the sheet without persisting or changing status

        Returns:
            RefreshOutcome; keyword_not_found and keyword_inactive are skips

        Raises:
            PersistenceError: Store unreachable
        """
        slug = slug.strip()
        keyword = await self.keywords.get(slug)
        if keyword is None:
            logger.info(f"Refresh skipped, keyword not found: {slug}")
            return RefreshOutcome(ok=False, slug=slug, status=SKIPPED, error=KEYWORD_NOT_FOUND)
        if not keyword.is_active or keyword.status == KeywordStatus.PAUSED:
            logger.info(f"Refresh skipped, keyword inactive: {slug}")
            return RefreshOutcome(ok=False, slug=slug, status=SKIPPED, error=KEYWORD_INACTIVE)

        try:
            return await self._refresh(keyword.slug, keyword.keyword, keyword.top_n, report_date, dry_run)
        except PersistenceError as e:
            if e.unreachable:
                raise
            return await self._fail(slug, e, dry_run)
        except Exception as e:
            logger.exception(f"Refresh failed for {slug}")
            return await self._fail(slug, e, dry_run)

    async def _refresh(
        self,
        slug: str,
        keyword: str,
        top_n: int,
        report_date: Optional[str],
        dry_run: bool,
    ) -> RefreshOutcome:
        top_n = clamp_top_n(top_n)
        buffer = fetch_buffer(top_n)
        limit = top_n + buffer

        dates = await self.provider.report_dates(limit=REPORT_DATE_LOOKBACK if report_date else 2)
        current_date = report_date or (dates[0] if dates else None)
        if not current_date:
            logger.warning(f"No report date available for {slug}")
            return RefreshOutcome(ok=False, slug=slug, status=FAILED, error=NO_REPORT_DATE)
        prev_date = next((d for d in dates if d < current_date), None)

        current_rows, prev_rows = await asyncio.gather(
            self.provider.fetch(keyword, current_date, limit),
            self.provider.fetch(keyword, prev_date, limit) if prev_date else _no_rows(),
        )
        validate_rows(current_rows)
        current_rows = sorted(current_rows, key=lambda r: r.rank)
        prev_rank_by_asin = {r.asin: r.rank for r in prev_rows}

        cards, cache_stats = await self._load_cards([r.asin for r in current_rows])
        rows = [
            CandidateRow(
                asin=r.asin,
                rank=r.rank,
                click_share=r.click_share,
                conversion_share=r.conversion_share,
                card=cards.get(r.asin),
            )
            for r in current_rows
        ]

        readiness = compute_readiness(rows, top_k=READINESS_TOP_K)
        warmup_stats = None
        if readiness.missing_asins:
            rows, readiness, warmup_stats = await self._warm_up(slug, rows, readiness)
        deduped = dedupe_variations(rows)

        candidates = []
        for row in deduped.kept:
            if row.card is None or not row.card.is_publishable:
                continue
            candidates.append(row)
            if len(candidates) >= top_n:
                break

        sanitized = compute_sanitized_rows(
            candidates,
            prev_rank_by_asin,
            deduped.multiple_options_asins,
            self.weights,
        )
        valid_count = len(sanitized)
        mode = SheetMode.LOW_DATA if valid_count < LOW_DATA_THRESHOLD else SheetMode.NORMAL

        stats = {
            "topN": top_n,
            "buffer": buffer,
            "fetchedCount": len(rows),
            "dedupedRemoved": len(deduped.removed),
            "validCount": valid_count,
            "readiness": readiness.to_dict(),
            "reportDate": current_date,
            "prevReportDate": prev_date,
            "productCache": cache_stats,
        }
        if warmup_stats is not None:
            stats["warmup"] = warmup_stats

        period = RankSheetPeriod(
            data_period=current_date,
            updated_at=datetime.utcnow(),
            readiness_level=readiness.level,
            valid_count=valid_count,
            rows=sanitized,
            mode=mode,
            metadata=stats,
        )

        if not dry_run:
            await self.sheets.save(slug, period)
            reason = f"Low data ({valid_count} valid items)." if mode == SheetMode.LOW_DATA else None
            await self.keywords.mark_active(slug, reason)

        logger.info(
            f"Refreshed {slug}@{current_date}: {valid_count} rows, "
            f"readiness={readiness.level.value}, mode={mode.value}"
            + (" (dry run)" if dry_run else "")
        )
        return RefreshOutcome(
            ok=True,
            slug=slug,
            status=REFRESHED,
            data_period=current_date,
            readiness_level=readiness.level.value,
            valid_count=valid_count,
            mode=mode.value,
            stats=stats,
        )

    async def _load_cards(self, asins: List[str]):
        """
        Resolve product cards, serving what the ASIN cache holds and fetching
        the rest from the catalog. Cached NOT_FOUND ASINs are not requested.

        Returns:
            (cards keyed by ASIN, cache stats)
        """
        cached: Dict[str, CachedProduct] = {}
        if self.product_cache is not None:
            try:
                cached = await self.product_cache.get_many(asins)
            except PersistenceError as e:
                if e.unreachable:
                    raise
                logger.warning(f"ASIN cache lookup failed, fetching from catalog: {e}")

        cards: Dict[str, ProductCard] = {}
        for asin, entry in cached.items():
            card = entry.to_card()
            if card is not None:
                cards[asin] = card

        missing = [a for a in dict.fromkeys(asins) if a not in cached]
        fetched = await self.provider.products(missing) if missing else {}
        for asin, product in fetched.items():
            cards[asin] = extract_product_card(product)

        if self.product_cache is not None and missing:
            await self._remember([
                CachedProduct.found(cards[asin]) if asin in fetched else CachedProduct.not_found(asin)
                for asin in missing
            ])

        stats = {
            "cached": sum(1 for e in cached.values() if e.status == ProductCacheStatus.EXISTS),
            "cachedNotFound": sum(1 for e in cached.values() if e.status == ProductCacheStatus.NOT_FOUND),
            "fetched": len(missing),
            "found": len(fetched),
        }
        return cards, stats

    async def _warm_up(self, slug: str, rows: List[CandidateRow], readiness: ReadinessResult):
        """
        Warm the catalog for top rows missing an image, re-fetch them and
        recompute readiness. A failed warmup keeps the original rows.

        Returns:
            (rows, readiness, warmup stats)
        """
        missing = list(readiness.missing_asins)
        stats: Dict[str, Any] = {"requested": len(missing[:WARMUP_MAX_ASINS]), "readyBefore": readiness.ready}
        try:
            job_ids = await self.provider.warm(missing[:WARMUP_MAX_ASINS])
            if self.warmup_delay > 0:
                await asyncio.sleep(self.warmup_delay)
            warmed = await self.provider.products(missing)
        except UpstreamError as e:
            logger.warning(f"Warmup failed for {slug}: {e}")
            stats["error"] = str(e)
            return rows, readiness, stats

        cards = {asin: extract_product_card(product) for asin, product in warmed.items()}
        if self.product_cache is not None and cards:
            await self._remember([CachedProduct.found(card) for card in cards.values()])

        rows = [replace(row, card=cards[row.asin]) if row.asin in cards else row for row in rows]
        readiness = compute_readiness(rows, top_k=READINESS_TOP_K)

        stats.update({"jobs": len(job_ids), "readyAfter": readiness.ready})
        logger.info(
            f"Warmup for {slug}: {stats['readyBefore']} -> {readiness.ready} of "
            f"{readiness.total} rows ready ({len(job_ids)} jobs)"
        )
        return rows, readiness, stats

    async def _remember(self, entries: List[CachedProduct]):
        try:
            await self.product_cache.upsert(entries)
        except PersistenceError as e:
            if e.unreachable:
                raise
            logger.warning(f"Failed to update ASIN cache: {e}")

    async def _fail(self, slug: str, error: Exception, dry_run: bool) -> RefreshOutcome:
        message = str(error) or type(error).__name__
        if not dry_run:
            try:
                await self.keywords.mark_error(slug, message)
            except PersistenceError as e:
                if e.unreachable:
                    raise
                logger.error(f"Could not mark {slug} as ERROR: {e}")
        return RefreshOutcome(ok=False, slug=slug, status=FAILED, error=message)


async def _no_rows() -> List[CandidateRow]:
    return []
