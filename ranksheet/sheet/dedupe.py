"""
Variation Deduplication

Collapses near-duplicate ASIN variants (colors, sizes, pack counts of the
same product) so a rank sheet lists each product once.

Grouping priority:
1. Strong group - same parent ASIN (or variation group when no parent)
2. Weak group   - same normalized brand + same title signature

Within a group the lowest-rank row survives. Survivors keep input order.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set

from ranksheet.models import CandidateRow, ProductCard

logger = logging.getLogger(__name__)


STOPWORDS: FrozenSet[str] = frozenset({
    "a", "an", "and", "the", "for", "with", "of", "in", "on", "to", "by",
    "or", "from", "at", "per", "new",
})

COLOR_WORDS: FrozenSet[str] = frozenset({
    "black", "white", "gray", "grey", "red", "blue", "green", "pink",
    "purple", "gold", "silver", "yellow", "orange", "beige", "brown", "navy",
    "ivory", "teal", "turquoise", "maroon", "khaki", "tan", "cream",
    "charcoal", "rose", "clear", "transparent", "multicolor", "multi",
    "dark", "light",
})

SIZE_WORDS: FrozenSet[str] = frozenset({
    "xs", "xxs", "s", "m", "l", "xl", "xxl", "xxxl", "2xl", "3xl", "4xl",
    "small", "medium", "large", "extra", "mini", "regular", "size",
    "standard", "compact", "oversized", "petite", "tall", "wide",
})

PACK_WORDS: FrozenSet[str] = frozenset({
    "pack", "packs", "pk", "count", "ct", "pcs", "pc", "piece", "pieces",
    "set", "sets", "bundle", "pair", "pairs", "qty", "quantity", "x",
})

# Bare numbers and number+unit tokens such as 2pk, 12ct, 16oz, 500ml, 10ft
_MEASURE_RE = re.compile(
    r"^\d+(\.\d+)?(oz|fl|ml|l|g|kg|mg|lb|lbs|ct|pk|pc|pcs|pack|count|"
    r"in|inch|inches|ft|mm|cm|m|qt|gal|w|mah|gb|tb|x)?$"
)

VARIANT_DESCRIPTORS: FrozenSet[str] = COLOR_WORDS | SIZE_WORDS | PACK_WORDS


@dataclass
class DedupeResult:
    """Outcome of variation deduplication."""
    kept: List[CandidateRow] = field(default_factory=list)
    removed: List[CandidateRow] = field(default_factory=list)
    group_key_by_asin: Dict[str, str] = field(default_factory=dict)
    group_count_by_key: Dict[str, int] = field(default_factory=dict)
    siblings_by_asin: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def multiple_options_asins(self) -> Set[str]:
        """Surviving ASINs whose group had more than one member."""
        return {
            row.asin
            for row in self.kept
            if self.group_count_by_key.get(self.group_key_by_asin.get(row.asin, ""), 0) > 1
        }


def normalize_text(value: str) -> str:
    """Lowercase, drop bracketed segments, collapse punctuation to spaces."""
    value = value.lower()
    value = re.sub(r"\([^)]*\)", " ", value)
    value = re.sub(r"\[[^\]]*\]", " ", value)
    value = re.sub(r"[^a-z0-9]+", " ", value)
    return value.strip()


def is_variant_descriptor(token: str) -> bool:
    return token in VARIANT_DESCRIPTORS or bool(_MEASURE_RE.match(token))


def title_signature(title: str) -> str:
    """
    Order-insensitive signature of a title's product-identifying tokens.

    Two titles differing only by stopwords or variant descriptors map to
    the same signature.
    """
    tokens = [
        t for t in normalize_text(title).split()
        if t not in STOPWORDS and not is_variant_descriptor(t)
    ]
    counts = Counter(tokens)
    return " ".join(
        f"{token}*{n}" if n > 1 else token
        for token, n in sorted(counts.items())
    )


def weak_group_key(card: ProductCard) -> Optional[str]:
    if not card.brand or not card.title:
        return None
    brand = normalize_text(card.brand)
    signature = title_signature(card.title)
    if not brand or not signature:
        return None
    return f"weak|{brand}|{signature}"


def group_key(card: Optional[ProductCard]) -> Optional[str]:
    """Strong key from parent/variation group, else weak brand+title key."""
    if card is None:
        return None
    if card.parent_asin:
        return f"parent|{card.parent_asin}"
    if card.variation_group:
        return f"variation|{card.variation_group}"
    return weak_group_key(card)


def dedupe_variations(rows: List[CandidateRow]) -> DedupeResult:
    """
    Partition rank-ordered rows into kept and removed variants.

    Args:
        rows: Candidate rows ordered by rank ascending

    Returns:
        DedupeResult; kept and removed are ordered subsets of rows
    """
    result = DedupeResult()

    for row in rows:
        key = group_key(row.card)
        if key is None:
            continue
        result.group_key_by_asin[row.asin] = key
        result.group_count_by_key[key] = result.group_count_by_key.get(key, 0) + 1

    survivor_by_key: Dict[str, CandidateRow] = {}
    for row in rows:
        key = result.group_key_by_asin.get(row.asin)
        if key is None:
            result.kept.append(row)
            continue

        # Rows arrive rank-ascending, so the first row seen is the lowest rank
        survivor = survivor_by_key.get(key)
        if survivor is not None:
            result.removed.append(row)
            result.siblings_by_asin.setdefault(survivor.asin, []).append(row.asin)
            continue

        survivor_by_key[key] = row
        result.kept.append(row)

    if result.removed:
        logger.debug(
            f"Deduplicated {len(rows)} rows: kept {len(result.kept)}, "
            f"removed {len(result.removed)}"
        )
    return result
