"""
Readiness Classification

Grades how complete a period's top rows are, based on image availability.
"""

from typing import List

from ranksheet.models import CandidateRow, ReadinessLevel, ReadinessResult

FULL_RATIO = 0.9
CRITICAL_RATIO = 0.5


def level_for_ratio(ratio: float) -> ReadinessLevel:
    if ratio >= FULL_RATIO:
        return ReadinessLevel.FULL
    if ratio < CRITICAL_RATIO:
        return ReadinessLevel.CRITICAL
    return ReadinessLevel.PARTIAL


def compute_readiness(rows: List[CandidateRow], top_k: int = 10) -> ReadinessResult:
    """
    Count rows with a resolvable image within the first top_k rows.

    The window shrinks to the number of rows available; rows beyond it
    are ignored.
    """
    window = rows[:max(0, top_k)]
    total = max(1, len(window))

    ready = 0
    missing = []
    for row in window:
        if row.card is not None and row.card.image:
            ready += 1
        else:
            missing.append(row.asin)

    ratio = ready / total
    return ReadinessResult(
        level=level_for_ratio(ratio),
        ready=ready,
        total=total,
        ratio=ratio,
        missing_asins=missing,
    )
