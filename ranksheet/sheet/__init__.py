"""
Rank Sheet Transformation

Pure functions that turn fetched candidate rows into a rank sheet:

    extract_product_card -> dedupe_variations -> compute_sanitized_rows
                                              -> compute_readiness

build_sheet_trends reads persisted periods independently.
"""

from .product_card import (
    UpstreamProduct,
    UpstreamBrand,
    extract_product_card,
)
from .dedupe import (
    DedupeResult,
    dedupe_variations,
    title_signature,
    group_key,
)
from .scoring import (
    ScoreWeights,
    DEFAULT_WEIGHTS,
    BADGE_MULTIPLE_OPTIONS,
    compute_sanitized_rows,
)
from .readiness import compute_readiness
from .trends import build_sheet_trends

__all__ = [
    "UpstreamProduct",
    "UpstreamBrand",
    "extract_product_card",
    "DedupeResult",
    "dedupe_variations",
    "title_signature",
    "group_key",
    "ScoreWeights",
    "DEFAULT_WEIGHTS",
    "BADGE_MULTIPLE_OPTIONS",
    "compute_sanitized_rows",
    "compute_readiness",
    "build_sheet_trends",
]
