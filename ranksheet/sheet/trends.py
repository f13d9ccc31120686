"""
Trend Series Builder

Assembles per-ASIN rank trajectories across persisted periods of one keyword.
The series set is the latest period's top rows; older periods only
contribute points. Missing ranks stay None (no interpolation).
"""

import logging
from typing import Dict, Iterable, List

from ranksheet.models import (
    RankSheetPeriod,
    SanitizedRow,
    TrendOutput,
    TrendPeriod,
    TrendPoint,
    TrendSeries,
)

logger = logging.getLogger(__name__)

MAX_SERIES = 20


def _unique_ascending(sheets: Iterable[RankSheetPeriod]) -> List[RankSheetPeriod]:
    """Sort by data_period; the most recently updated copy of a period wins."""
    by_period: Dict[str, RankSheetPeriod] = {}
    for sheet in sheets:
        current = by_period.get(sheet.data_period)
        if current is None or sheet.updated_at > current.updated_at:
            by_period[sheet.data_period] = sheet
    return [by_period[p] for p in sorted(by_period)]


def build_sheet_trends(sheets: Iterable[RankSheetPeriod], top: int) -> TrendOutput:
    """
    Build chronological periods and the latest top-N rank series.

    Args:
        sheets: Persisted periods in any order
        top: Series width (clamped to 0-20)

    Returns:
        TrendOutput with periods ascending by data_period
    """
    ordered = _unique_ascending(sheets)
    if not ordered:
        return TrendOutput()

    width = max(0, min(MAX_SERIES, top))
    latest_top = ordered[-1].rows[:width]

    rows_by_period: Dict[str, Dict[str, SanitizedRow]] = {
        sheet.data_period: {row.asin: row for row in sheet.rows}
        for sheet in ordered
    }

    periods = [
        TrendPeriod(
            data_period=sheet.data_period,
            updated_at=sheet.updated_at,
            readiness_level=sheet.readiness_level,
            valid_count=sheet.valid_count,
        )
        for sheet in ordered
    ]

    series = []
    for latest in latest_top:
        points = []
        for sheet in ordered:
            row = rows_by_period[sheet.data_period].get(latest.asin)
            points.append(TrendPoint(
                period=sheet.data_period,
                rank=row.rank if row else None,
                score=row.score if row else None,
            ))
        series.append(TrendSeries(
            asin=latest.asin,
            title=latest.title,
            brand=latest.brand,
            image=latest.image,
            points=points,
        ))

    logger.debug(f"Built trends: {len(periods)} periods, {len(series)} series")
    return TrendOutput(periods=periods, series=series)
