"""
Score Normalization

Turns deduplicated candidate rows into display-ready SanitizedRows.

Outputs per row (all integers):
- market_share_index: click share relative to the period leader (0-100)
- buyer_trust_index: conversion share relative to the period leader (0-100)
- trend_delta / trend_label: rank movement versus the previous period
- score: weighted composite, always within 1-100
- badges: short labels (Category King, Trending, High Intent, Multiple options)
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from ranksheet.models import CandidateRow, SanitizedRow, TrendLabel

logger = logging.getLogger(__name__)


BADGE_CATEGORY_KING = "Category King"
BADGE_TRENDING = "Trending"
BADGE_HIGH_INTENT = "High Intent"
BADGE_MULTIPLE_OPTIONS = "Multiple options"


@dataclass(frozen=True)
class ScoreWeights:
    """
    Composite score weights.

    score = market_share * MSI + buyer_trust * BTI + rank * rank_score
            + clamp(trend_delta * trend_step_bonus, -trend_cap, trend_cap)
    """
    market_share: float = 0.5
    buyer_trust: float = 0.3
    rank: float = 0.2
    trend_step_bonus: float = 2.0
    trend_cap: float = 10.0

    # Badge thresholds
    category_king_min_msi: int = 90
    trending_min_delta: int = 5
    high_intent_min_bti: int = 85
    high_intent_max_msi: int = 60


DEFAULT_WEIGHTS = ScoreWeights()


def clamp(n: float, lo: float, hi: float) -> float:
    """Clamp with a safe fallback to `lo` for non-finite input."""
    if not math.isfinite(n):
        logger.warning(f"clamp received non-finite value {n}")
        return lo
    return max(lo, min(hi, n))


def round_int(n: float) -> int:
    """Round half up to int; non-finite input becomes 0."""
    if not math.isfinite(n):
        logger.warning(f"round_int received non-finite value {n}")
        return 0
    return int(math.floor(n + 0.5))


def safe_share(value: float) -> float:
    """Shares that are non-finite or negative count as zero."""
    if value is None or not math.isfinite(value) or value < 0:
        return 0.0
    return float(value)


def relative_index(value: float, max_value: float) -> int:
    """Scale value so max_value maps to 100."""
    if max_value <= 0:
        return 0
    return int(clamp(round_int(100 * safe_share(value) / max_value), 0, 100))


def trend_label_for(delta: Optional[int]) -> TrendLabel:
    if delta is None or delta == 0:
        return TrendLabel.STABLE
    return TrendLabel.RISING if delta > 0 else TrendLabel.FALLING


def compute_sanitized_rows(
    rows: List[CandidateRow],
    prev_rank_by_asin: Dict[str, int],
    multiple_options_asins: Set[str],
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> List[SanitizedRow]:
    """
    Score the rows of the current period.

    Args:
        rows: Deduplicated rows, rank ascending
        prev_rank_by_asin: Previous period rank per ASIN (absent = new entrant)
        multiple_options_asins: ASINs standing in for several variants
        weights: Composite weights

    Returns:
        SanitizedRows in input order. Rows without title, brand and image
        are not publishable and are skipped.
    """
    publishable = [r for r in rows if r.card is not None and r.card.is_publishable]
    if not publishable:
        return []

    max_click = max(safe_share(r.click_share) for r in publishable)
    max_conversion = max(safe_share(r.conversion_share) for r in publishable)
    total = len(publishable)

    sanitized = []
    for position, row in enumerate(publishable, start=1):
        market_share_index = relative_index(row.click_share, max_click)
        buyer_trust_index = relative_index(row.conversion_share, max_conversion)

        prev_rank = prev_rank_by_asin.get(row.asin)
        trend_delta = prev_rank - row.rank if prev_rank is not None else None
        trend_label = trend_label_for(trend_delta)

        rank_score = 100 * (total - position + 1) / total
        trend_bonus = clamp(
            (trend_delta or 0) * weights.trend_step_bonus,
            -weights.trend_cap,
            weights.trend_cap,
        )
        score_raw = (
            weights.market_share * market_share_index
            + weights.buyer_trust * buyer_trust_index
            + weights.rank * rank_score
            + trend_bonus
        )
        score = int(clamp(round_int(score_raw), 1, 100))

        badges = []
        if position == 1 and market_share_index >= weights.category_king_min_msi:
            badges.append(BADGE_CATEGORY_KING)
        if trend_delta is not None and trend_delta >= weights.trending_min_delta:
            badges.append(BADGE_TRENDING)
        if (
            buyer_trust_index >= weights.high_intent_min_bti
            and market_share_index <= weights.high_intent_max_msi
        ):
            badges.append(BADGE_HIGH_INTENT)
        if row.asin in multiple_options_asins:
            badges.append(BADGE_MULTIPLE_OPTIONS)

        sanitized.append(SanitizedRow(
            rank=row.rank,
            asin=row.asin,
            title=row.card.title,
            brand=row.card.brand,
            image=row.card.image,
            score=score,
            market_share_index=market_share_index,
            buyer_trust_index=buyer_trust_index,
            trend_delta=trend_delta,
            trend_label=trend_label,
            badges=badges,
        ))

    return sanitized
