"""
SQLAlchemy Models for Rank Sheets

Three tables:
- keywords: tracked keywords and their refresh status
- rank_sheets: one row per keyword per reporting period, rows stored as JSON
- asin_cache: catalog lookups per ASIN, including negative results
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text,
    Enum, Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base

from ranksheet.models import KeywordStatus, ProductCacheStatus, ReadinessLevel, SheetMode

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.utcnow()


class KeywordModel(Base):
    """Tracked keyword"""
    __tablename__ = "keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(255), unique=True, nullable=False)
    keyword = Column(String(500), nullable=False)

    top_n = Column(Integer, nullable=False, default=20)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)

    # Refresh status
    status = Column(Enum(KeywordStatus), nullable=False, default=KeywordStatus.PENDING)
    status_reason = Column(Text)
    error_count = Column(Integer, nullable=False, default=0)
    last_refreshed_at = Column(DateTime)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_keywords_active_priority", "is_active", "priority"),
        Index("idx_keywords_status", "status"),
    )


class RankSheetModel(Base):
    """Rank sheet snapshot for one keyword and period"""
    __tablename__ = "rank_sheets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    keyword_slug = Column(String(255), nullable=False)
    data_period = Column(String(10), nullable=False)   # ISO date of the weekly report

    mode = Column(Enum(SheetMode), nullable=False, default=SheetMode.NORMAL)
    readiness_level = Column(Enum(ReadinessLevel), nullable=False)
    valid_count = Column(Integer, nullable=False, default=0)
    rows = Column(JSON, nullable=False, default=list)
    sheet_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("keyword_slug", "data_period", name="uq_rank_sheet_period"),
        Index("idx_rank_sheets_slug_period", "keyword_slug", "data_period"),
    )


class AsinCacheModel(Base):
    """Cached catalog lookup for one ASIN"""
    __tablename__ = "asin_cache"

    asin = Column(String(20), primary_key=True)
    status = Column(Enum(ProductCacheStatus), nullable=False, default=ProductCacheStatus.EXISTS)

    title = Column(Text)
    brand = Column(String(255))
    image_url = Column(Text)
    parent_asin = Column(String(20))
    variation_group = Column(String(255))

    fetched_at = Column(DateTime, default=_utcnow)
    expires_at = Column(DateTime)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_asin_cache_expires", "expires_at"),
        Index("idx_asin_cache_status", "status"),
    )
