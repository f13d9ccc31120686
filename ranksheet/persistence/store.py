"""
Keyword and Rank Sheet Stores

Repository layer over the SQLAlchemy models. Callers are async; every
operation runs its sync session work in a worker thread, bounded by the
engine's connection pool.

Interfaces (KeywordStore, PersistenceStore, ProductCache) are what the
refresher and the orchestrator depend on.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ranksheet.errors import PersistenceError
from ranksheet.models import (
    CachedProduct, KeywordRecord, KeywordStatus, ProductCacheStatus,
    RankSheetPeriod, SanitizedRow,
)
from .models import AsinCacheModel, KeywordModel, RankSheetModel
from .session import session_scope

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TOP_N = 5
MAX_TOP_N = 50

# Days a cached lookup stays valid
EXISTS_TTL_DAYS = 30
NOT_FOUND_TTL_DAYS = 7


def clamp_top_n(value: Optional[int]) -> int:
    return max(MIN_TOP_N, min(MAX_TOP_N, int(value if value is not None else 20)))


# =============================================================================
# INTERFACES
# =============================================================================

class KeywordStore(ABC):
    """Tracked keywords and their refresh status."""

    @abstractmethod
    async def get(self, slug: str) -> Optional[KeywordRecord]:
        ...

    @abstractmethod
    async def list_active(self, limit: int) -> List[KeywordRecord]:
        """Active, non-paused keywords by priority descending."""

    @abstractmethod
    async def list_failed(self, limit: int, max_retries: int) -> List[KeywordRecord]:
        """Active keywords in ERROR with error_count below max_retries."""

    @abstractmethod
    async def mark_active(self, slug: str, reason: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def mark_error(self, slug: str, reason: str) -> None:
        """Set ERROR with reason and increment error_count."""


class PersistenceStore(ABC):
    """Rank sheet periods per keyword."""

    @abstractmethod
    async def save(self, slug: str, period: RankSheetPeriod) -> None:
        """Insert or overwrite the period for slug; other periods are untouched."""

    @abstractmethod
    async def load_recent_periods(self, slug: str, n: int) -> List[RankSheetPeriod]:
        """Up to n most recent periods, newest first."""


class ProductCache(ABC):
    """Catalog lookups per ASIN, with negative caching."""

    @abstractmethod
    async def get_many(self, asins: List[str]) -> Dict[str, CachedProduct]:
        """Unexpired entries keyed by ASIN, NOT_FOUND entries included."""

    @abstractmethod
    async def upsert(self, entries: List[CachedProduct]) -> None:
        """Insert or refresh entries; a missing expires_at gets the default TTL."""

    @abstractmethod
    async def purge_expired(self, dry_run: bool = False) -> int:
        """Delete expired entries. Returns how many were (or would be) removed."""


# =============================================================================
# SQLALCHEMY IMPLEMENTATIONS
# =============================================================================

class _SqlStore:
    """Runs session work in a thread and maps driver errors."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._run_sync, fn)

    def _run_sync(self, fn: Callable[[Session], T]) -> T:
        try:
            with session_scope(self._session_factory) as db:
                return fn(db)
        except OperationalError as e:
            logger.error(f"Database unreachable: {e}")
            raise PersistenceError(f"Database unreachable: {e}", unreachable=True) from e
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            raise PersistenceError(f"Database error: {e}") from e


def _keyword_to_record(k: KeywordModel) -> KeywordRecord:
    return KeywordRecord(
        slug=k.slug,
        keyword=k.keyword,
        top_n=clamp_top_n(k.top_n),
        is_active=bool(k.is_active),
        status=k.status or KeywordStatus.PENDING,
        status_reason=k.status_reason,
        priority=k.priority or 0,
        last_refreshed_at=k.last_refreshed_at,
        error_count=k.error_count or 0,
    )


class SqlKeywordStore(_SqlStore, KeywordStore):
    """KeywordStore over the keywords table."""

    async def get(self, slug: str) -> Optional[KeywordRecord]:
        def work(db: Session):
            k = db.execute(
                select(KeywordModel).where(KeywordModel.slug == slug)
            ).scalar_one_or_none()
            return _keyword_to_record(k) if k else None

        return await self._run(work)

    async def list_active(self, limit: int) -> List[KeywordRecord]:
        def work(db: Session):
            rows = db.execute(
                select(KeywordModel)
                .where(
                    KeywordModel.is_active.is_(True),
                    KeywordModel.status != KeywordStatus.PAUSED,
                )
                .order_by(KeywordModel.priority.desc(), KeywordModel.slug)
                .limit(limit)
            ).scalars().all()
            return [_keyword_to_record(k) for k in rows]

        return await self._run(work)

    async def list_failed(self, limit: int, max_retries: int) -> List[KeywordRecord]:
        def work(db: Session):
            rows = db.execute(
                select(KeywordModel)
                .where(
                    KeywordModel.is_active.is_(True),
                    KeywordModel.status == KeywordStatus.ERROR,
                    KeywordModel.error_count < max_retries,
                )
                .order_by(KeywordModel.priority.desc(), KeywordModel.slug)
                .limit(limit)
            ).scalars().all()
            return [_keyword_to_record(k) for k in rows]

        return await self._run(work)

    async def mark_active(self, slug: str, reason: Optional[str] = None) -> None:
        def work(db: Session):
            k = self._require(db, slug)
            k.status = KeywordStatus.ACTIVE
            k.status_reason = reason
            k.error_count = 0
            k.last_refreshed_at = datetime.utcnow()

        await self._run(work)

    async def mark_error(self, slug: str, reason: str) -> None:
        def work(db: Session):
            k = self._require(db, slug)
            k.status = KeywordStatus.ERROR
            k.status_reason = reason
            k.error_count = (k.error_count or 0) + 1
            k.last_refreshed_at = datetime.utcnow()

        await self._run(work)

    async def upsert(self, record: KeywordRecord) -> None:
        """Create or update a keyword (admin seeding and CLI)."""
        def work(db: Session):
            k = db.execute(
                select(KeywordModel).where(KeywordModel.slug == record.slug)
            ).scalar_one_or_none()
            if k is None:
                k = KeywordModel(slug=record.slug)
                db.add(k)
            k.keyword = record.keyword
            k.top_n = clamp_top_n(record.top_n)
            k.is_active = record.is_active
            k.status = record.status
            k.status_reason = record.status_reason
            k.priority = record.priority
            k.error_count = record.error_count
            k.last_refreshed_at = record.last_refreshed_at

        await self._run(work)

    @staticmethod
    def _require(db: Session, slug: str) -> KeywordModel:
        k = db.execute(
            select(KeywordModel).where(KeywordModel.slug == slug)
        ).scalar_one_or_none()
        if k is None:
            raise PersistenceError(f"Keyword not found: {slug}")
        return k


def _sheet_to_period(s: RankSheetModel) -> RankSheetPeriod:
    return RankSheetPeriod(
        data_period=s.data_period,
        updated_at=s.updated_at or s.created_at,
        readiness_level=s.readiness_level,
        valid_count=s.valid_count or 0,
        rows=[SanitizedRow.from_dict(r) for r in (s.rows or [])],
        mode=s.mode,
        metadata=dict(s.sheet_metadata or {}),
    )


class RankSheetStore(_SqlStore, PersistenceStore):
    """PersistenceStore over the rank_sheets table."""

    async def save(self, slug: str, period: RankSheetPeriod) -> None:
        def work(db: Session):
            sheet = db.execute(
                select(RankSheetModel).where(
                    RankSheetModel.keyword_slug == slug,
                    RankSheetModel.data_period == period.data_period,
                )
            ).scalar_one_or_none()
            if sheet is None:
                sheet = RankSheetModel(keyword_slug=slug, data_period=period.data_period)
                db.add(sheet)
                logger.debug(f"Creating rank sheet {slug}@{period.data_period}")
            else:
                logger.debug(f"Overwriting rank sheet {slug}@{period.data_period}")

            sheet.mode = period.mode
            sheet.readiness_level = period.readiness_level
            sheet.valid_count = period.valid_count
            sheet.rows = [r.to_dict() for r in period.rows]
            sheet.sheet_metadata = dict(period.metadata)
            sheet.updated_at = period.updated_at

        await self._run(work)

    async def load_recent_periods(self, slug: str, n: int) -> List[RankSheetPeriod]:
        def work(db: Session):
            rows = db.execute(
                select(RankSheetModel)
                .where(RankSheetModel.keyword_slug == slug)
                .order_by(RankSheetModel.data_period.desc())
                .limit(max(0, n))
            ).scalars().all()
            return [_sheet_to_period(s) for s in rows]

        return await self._run(work)


def cache_expiry(entry: CachedProduct, now: datetime) -> datetime:
    if entry.expires_at is not None:
        return entry.expires_at
    days = EXISTS_TTL_DAYS if entry.status == ProductCacheStatus.EXISTS else NOT_FOUND_TTL_DAYS
    return now + timedelta(days=days)


def _cache_to_entry(c: AsinCacheModel) -> CachedProduct:
    return CachedProduct(
        asin=c.asin,
        status=c.status or ProductCacheStatus.EXISTS,
        title=c.title,
        brand=c.brand,
        image=c.image_url,
        parent_asin=c.parent_asin,
        variation_group=c.variation_group,
        fetched_at=c.fetched_at,
        expires_at=c.expires_at,
    )


class SqlProductCache(_SqlStore, ProductCache):
    """ProductCache over the asin_cache table."""

    async def get_many(self, asins: List[str]) -> Dict[str, CachedProduct]:
        unique = list(dict.fromkeys(a for a in asins if a))
        if not unique:
            return {}

        def work(db: Session):
            now = datetime.utcnow()
            rows = db.execute(
                select(AsinCacheModel).where(
                    AsinCacheModel.asin.in_(unique),
                    (AsinCacheModel.expires_at.is_(None)) | (AsinCacheModel.expires_at > now),
                )
            ).scalars().all()
            return {c.asin: _cache_to_entry(c) for c in rows}

        found = await self._run(work)
        not_found = sum(1 for e in found.values() if e.status == ProductCacheStatus.NOT_FOUND)
        logger.debug(
            f"ASIN cache lookup: {len(unique)} requested, {len(found)} cached "
            f"({not_found} not found)"
        )
        return found

    async def upsert(self, entries: List[CachedProduct]) -> None:
        if not entries:
            return

        def work(db: Session):
            now = datetime.utcnow()
            by_asin = {e.asin: e for e in entries}
            existing = {
                c.asin: c
                for c in db.execute(
                    select(AsinCacheModel).where(AsinCacheModel.asin.in_(list(by_asin)))
                ).scalars().all()
            }
            for asin, entry in by_asin.items():
                c = existing.get(asin)
                if c is None:
                    c = AsinCacheModel(asin=asin)
                    db.add(c)
                c.status = entry.status
                c.title = entry.title
                c.brand = entry.brand
                c.image_url = entry.image
                c.parent_asin = entry.parent_asin
                c.variation_group = entry.variation_group
                c.fetched_at = now
                c.expires_at = cache_expiry(entry, now)

        await self._run(work)
        not_found = sum(1 for e in entries if e.status == ProductCacheStatus.NOT_FOUND)
        logger.info(f"Upserted {len(entries)} ASIN cache entries ({not_found} not found)")

    async def purge_expired(self, dry_run: bool = False) -> int:
        def work(db: Session):
            expired = AsinCacheModel.expires_at < datetime.utcnow()
            if dry_run:
                return db.execute(
                    select(func.count()).select_from(AsinCacheModel).where(expired)
                ).scalar_one()
            return db.execute(delete(AsinCacheModel).where(expired)).rowcount

        count = await self._run(work)
        logger.info(f"ASIN cache cleanup: {count} expired entries" + (" (dry run)" if dry_run else " deleted"))
        return count
