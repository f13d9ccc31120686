"""
Product Card Extraction

Normalizes catalog product payloads into a canonical ProductCard.

Each card field is resolved by an ordered tuple of accessors. The first
accessor that yields a non-blank string wins; later ones are not consulted.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from ranksheet.models import ProductCard

logger = logging.getLogger(__name__)


class UpstreamBrand(BaseModel):
    """Brand object as returned by the catalog provider."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None


class UpstreamProduct(BaseModel):
    """Catalog product payload. `metadata` holds the raw PA-API item."""
    model_config = ConfigDict(extra="allow")

    asin: str
    title: Optional[str] = None
    featuredImage: Optional[str] = None
    parentAsin: Optional[str] = None
    variationGroup: Optional[str] = None
    brand: Optional[UpstreamBrand] = None
    metadata: Optional[Dict[str, Any]] = None


Accessor = Callable[[UpstreamProduct], Optional[str]]
PathPart = Union[str, int]


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _metadata_path(*path: PathPart) -> Accessor:
    """Accessor reading a nested path from product.metadata."""

    def read(product: UpstreamProduct) -> Optional[str]:
        cur: Any = product.metadata
        for key in path:
            if isinstance(key, int):
                if not isinstance(cur, list) or key >= len(cur):
                    return None
                cur = cur[key]
            else:
                if not isinstance(cur, dict):
                    return None
                cur = cur.get(key)
        return _clean(cur)

    read.__name__ = "metadata." + ".".join(str(p) for p in path)
    return read


def _title(product: UpstreamProduct) -> Optional[str]:
    return _clean(product.title)


def _brand_name(product: UpstreamProduct) -> Optional[str]:
    return _clean(product.brand.name) if product.brand else None


def _featured_image(product: UpstreamProduct) -> Optional[str]:
    return _clean(product.featuredImage)


TITLE_ACCESSORS: Tuple[Accessor, ...] = (
    _title,
    _metadata_path("ItemInfo", "Title", "DisplayValue"),
    _metadata_path("ItemInfo", "Title", "DisplayValues", 0),
)

BRAND_ACCESSORS: Tuple[Accessor, ...] = (
    _brand_name,
    _metadata_path("ItemInfo", "ByLineInfo", "Brand", "DisplayValue"),
    _metadata_path("ItemInfo", "ByLineInfo", "Manufacturer", "DisplayValue"),
)

IMAGE_ACCESSORS: Tuple[Accessor, ...] = (
    _featured_image,
    _metadata_path("Images", "Primary", "Large", "URL"),
    _metadata_path("Images", "Primary", "Medium", "URL"),
    _metadata_path("Images", "Primary", "Small", "URL"),
)


def first_present(product: UpstreamProduct, accessors: Sequence[Accessor]) -> Optional[str]:
    """Return the first non-empty value produced by the accessors."""
    for accessor in accessors:
        value = accessor(product)
        if value is not None:
            return value
    return None


def extract_product_card(product: Union[UpstreamProduct, Dict[str, Any]]) -> ProductCard:
    """
    Build a ProductCard from a catalog payload.

    Args:
        product: UpstreamProduct or a raw dict in the provider's shape

    Returns:
        ProductCard with every unresolvable field set to None
    """
    if isinstance(product, dict):
        product = UpstreamProduct.model_validate(product)

    return ProductCard(
        asin=product.asin.strip(),
        title=first_present(product, TITLE_ACCESSORS),
        brand=first_present(product, BRAND_ACCESSORS),
        image=first_present(product, IMAGE_ACCESSORS),
        parent_asin=_clean(product.parentAsin),
        variation_group=_clean(product.variationGroup),
    )
