"""
Checkout Schemas
================

Canonical data structures flowing through the bundle checkout pipeline.

FLOW:
-----
PackLine[] --(resolved via CatalogEntry)--> BundleSelection[]
           --(aggregated under)--> BundleDefinition
           --(exchanged for)--> bundle token (opaque str)
           --(embedded in)--> CartItem

WIRE FORMATS:
-------------
- BundleDefinition.to_dict() is the camelCase payload the Recharge bundle
  endpoints expect (externalProductId / externalVariantId / selections).
- CartItem.to_dict() is the literal item posted to Shopify's /cart/add.js.
  The bundle token rides in the ``_rb_id`` line-item property.

All Shopify identifiers are numeric strings; the catalog sentinel is never
allowed to reach either wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TypedDict
import logging

logger = logging.getLogger(__name__)

BUNDLE_TOKEN_PROPERTY = "_rb_id"


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

class PackLineDict(TypedDict, total=False):
    packKey: str
    qty: int


class BundleSelectionDict(TypedDict):
    collectionId: str
    externalProductId: str
    externalVariantId: str
    quantity: int


class BundleDefinitionDict(TypedDict):
    externalProductId: str
    externalVariantId: str
    selections: List[BundleSelectionDict]


class CartItemDict(TypedDict, total=False):
    id: str
    quantity: int
    properties: Dict[str, str]
    selling_plan: int


# =============================================================================
# DATACLASS DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class PackLine:
    """One requested quantity of one catalog pack."""
    pack_key: str
    qty: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PackLine":
        pack_key = data.get("packKey", data.get("pack_key", ""))
        try:
            qty = int(data.get("qty", 0) or 0)
        except (TypeError, ValueError):
            qty = 0
        return cls(pack_key=str(pack_key or ""), qty=qty)

    def to_dict(self) -> PackLineDict:
        return {"packKey": self.pack_key, "qty": self.qty}


@dataclass(frozen=True)
class CatalogEntry:
    variant_id: str
    product_id: str
    collection_id: str


@dataclass(frozen=True)
class BundleParent:
    """The purchasable container product every bundle is sold under."""
    product_id: str
    variant_id: str
    selling_plan_id: str


@dataclass(frozen=True)
class BundleSelection:
    collection_id: str
    product_id: str
    variant_id: str
    quantity: int

    def to_dict(self) -> BundleSelectionDict:
        return {
            "collectionId": self.collection_id,
            "externalProductId": self.product_id,
            "externalVariantId": self.variant_id,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class BundleDefinition:
    """Bundle-definition request sent to the subscription bundle service."""
    product_id: str
    variant_id: str
    selections: tuple = ()

    def to_dict(self) -> BundleDefinitionDict:
        return {
            "externalProductId": self.product_id,
            "externalVariantId": self.variant_id,
            "selections": [s.to_dict() for s in self.selections],
        }


@dataclass
class CartItem:
    """Bundle parent line. Quantity is always 1; the token carries the mix."""
    variant_id: str
    bundle_token: str
    selling_plan: Optional[int] = None
    quantity: int = field(default=1, init=False)

    def to_dict(self) -> CartItemDict:
        item: CartItemDict = {
            "id": self.variant_id,
            "quantity": self.quantity,
            "properties": {BUNDLE_TOKEN_PROPERTY: self.bundle_token},
        }
        if self.selling_plan is not None:
            item["selling_plan"] = self.selling_plan
        return item


def parse_pack_lines(raw: Any) -> List[PackLine]:
    """Coerce a loosely-typed list of line dicts into PackLine objects.

    Non-dict entries are skipped; quantity coercion failures become 0 and are
    dropped later by the pipeline like any other non-positive line.
    """
    if not raw:
        return []
    lines: List[PackLine] = []
    for item in raw:
        if isinstance(item, PackLine):
            lines.append(item)
        elif isinstance(item, Mapping):
            lines.append(PackLine.from_dict(item))
        else:
            logger.debug("Skipping non-mapping pack line: %r", item)
    return lines
