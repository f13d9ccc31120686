"""
Rank Sheet Data Models

Domain objects that flow through the pipeline:
CandidateRow (fetched) -> SanitizedRow (scored) -> RankSheetPeriod (persisted).
Wire format uses camelCase keys.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TrendLabel(Enum):
    """Direction of rank movement versus the previous period."""
    RISING = "Rising"
    FALLING = "Falling"
    STABLE = "Stable"


class ReadinessLevel(Enum):
    """Completeness grade of a period's top rows."""
    FULL = "FULL"
    PARTIAL = "PARTIAL"
    CRITICAL = "CRITICAL"


class SheetMode(Enum):
    """Publication mode of a sheet."""
    NORMAL = "NORMAL"
    LOW_DATA = "LOW_DATA"


class KeywordStatus(Enum):
    """Lifecycle status of a tracked keyword."""
    PENDING = "PENDING"
    WARMING_UP = "WARMING_UP"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class ProductCacheStatus(Enum):
    """Whether the catalog knew an ASIN when it was last looked up."""
    EXISTS = "EXISTS"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class ProductCard:
    """Canonical product metadata for one ASIN."""
    asin: str
    title: Optional[str] = None
    brand: Optional[str] = None
    image: Optional[str] = None
    parent_asin: Optional[str] = None
    variation_group: Optional[str] = None

    @property
    def is_publishable(self) -> bool:
        return bool(self.title and self.brand and self.image)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asin": self.asin,
            "title": self.title,
            "brand": self.brand,
            "image": self.image,
            "parentAsin": self.parent_asin,
            "variationGroup": self.variation_group,
        }


@dataclass(frozen=True)
class CandidateRow:
    """One ASIN's raw signals for a keyword in a reporting period."""
    asin: str
    rank: int
    click_share: float
    conversion_share: float
    card: Optional[ProductCard] = None


@dataclass
class SanitizedRow:
    """Scored, display-ready row of a rank sheet."""
    rank: int
    asin: str
    title: str
    brand: str
    image: str
    score: int
    market_share_index: int
    buyer_trust_index: int
    trend_delta: Optional[int]
    trend_label: TrendLabel
    badges: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "asin": self.asin,
            "title": self.title,
            "brand": self.brand,
            "image": self.image,
            "score": self.score,
            "marketShareIndex": self.market_share_index,
            "buyerTrustIndex": self.buyer_trust_index,
            "trendDelta": self.trend_delta,
            "trendLabel": self.trend_label.value,
            "badges": list(self.badges),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SanitizedRow":
        return cls(
            rank=int(data["rank"]),
            asin=data["asin"],
            title=data["title"],
            brand=data["brand"],
            image=data["image"],
            score=int(data["score"]),
            market_share_index=int(data["marketShareIndex"]),
            buyer_trust_index=int(data["buyerTrustIndex"]),
            trend_delta=data.get("trendDelta"),
            trend_label=TrendLabel(data.get("trendLabel", "Stable")),
            badges=list(data.get("badges") or []),
        )


@dataclass
class ReadinessResult:
    """Image completeness of the top rows."""
    level: ReadinessLevel
    ready: int
    total: int
    ratio: float
    missing_asins: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "ready": self.ready,
            "total": self.total,
            "ratio": round(self.ratio, 4),
            "missingAsins": list(self.missing_asins),
        }


@dataclass
class RankSheetPeriod:
    """Snapshot of a keyword's rank sheet for one reporting period."""
    data_period: str
    updated_at: datetime
    readiness_level: ReadinessLevel
    valid_count: int
    rows: List[SanitizedRow] = field(default_factory=list)
    mode: SheetMode = SheetMode.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataPeriod": self.data_period,
            "updatedAt": self.updated_at.isoformat(),
            "readinessLevel": self.readiness_level.value,
            "validCount": self.valid_count,
            "mode": self.mode.value,
            "rows": [r.to_dict() for r in self.rows],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RankSheetPeriod":
        updated_at = data["updatedAt"]
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        return cls(
            data_period=data["dataPeriod"],
            updated_at=updated_at,
            readiness_level=ReadinessLevel(data.get("readinessLevel") or "CRITICAL"),
            valid_count=int(data.get("validCount") or 0),
            rows=[SanitizedRow.from_dict(r) for r in data.get("rows") or []],
            mode=SheetMode(data.get("mode") or "NORMAL"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TrendPoint:
    """Rank of one ASIN in one period (None when absent)."""
    period: str
    rank: Optional[int]
    score: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"period": self.period, "rank": self.rank, "score": self.score}


@dataclass
class TrendSeries:
    """Rank trajectory of one ASIN across periods."""
    asin: str
    title: str
    brand: str
    image: str
    points: List[TrendPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asin": self.asin,
            "title": self.title,
            "brand": self.brand,
            "image": self.image,
            "points": [p.to_dict() for p in self.points],
        }


@dataclass
class TrendPeriod:
    """Summary of one period in a trend output."""
    data_period: str
    updated_at: datetime
    readiness_level: ReadinessLevel
    valid_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataPeriod": self.data_period,
            "updatedAt": self.updated_at.isoformat(),
            "readinessLevel": self.readiness_level.value,
            "validCount": self.valid_count,
        }


@dataclass
class TrendOutput:
    """Chronological periods plus per-ASIN rank series."""
    periods: List[TrendPeriod] = field(default_factory=list)
    series: List[TrendSeries] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "periods": [p.to_dict() for p in self.periods],
            "series": [s.to_dict() for s in self.series],
        }


@dataclass
class KeywordRecord:
    """A tracked keyword and its refresh status."""
    slug: str
    keyword: str
    top_n: int = 20
    is_active: bool = True
    status: KeywordStatus = KeywordStatus.PENDING
    status_reason: Optional[str] = None
    priority: int = 0
    last_refreshed_at: Optional[datetime] = None
    error_count: int = 0


@dataclass
class CachedProduct:
    """
    Locally cached catalog lookup for one ASIN.

    NOT_FOUND entries are negative results: the ASIN is not requested
    from the catalog again until the entry expires.
    """
    asin: str
    status: ProductCacheStatus = ProductCacheStatus.EXISTS
    title: Optional[str] = None
    brand: Optional[str] = None
    image: Optional[str] = None
    parent_asin: Optional[str] = None
    variation_group: Optional[str] = None
    fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def found(cls, card: ProductCard) -> "CachedProduct":
        return cls(
            asin=card.asin,
            title=card.title,
            brand=card.brand,
            image=card.image,
            parent_asin=card.parent_asin,
            variation_group=card.variation_group,
        )

    @classmethod
    def not_found(cls, asin: str) -> "CachedProduct":
        return cls(asin=asin, status=ProductCacheStatus.NOT_FOUND)

    def to_card(self) -> Optional[ProductCard]:
        if self.status != ProductCacheStatus.EXISTS:
            return None
        return ProductCard(
            asin=self.asin,
            title=self.title,
            brand=self.brand,
            image=self.image,
            parent_asin=self.parent_asin,
            variation_group=self.variation_group,
        )
