"""
Identifier Catalog
Static map from internal pack keys to Shopify variant/product/collection IDs,
plus the bundle parent product and the subscribe & save selling plan.

The catalog is produced offline by ``scripts/populate_catalog.py`` and loaded
once as read-only configuration. Unresolved values (the sentinel, NOT_FOUND,
blanks) are a normal runtime state: callers must check ``is_resolved`` before
sending any identifier to Shopify or Recharge.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from schemas import BundleParent, CatalogEntry
from services.errors import CatalogLoadError
from settings import CATALOG_SENTINEL

logger = logging.getLogger(__name__)

GID_PREFIX = "gid://shopify/"


def normalize_identifier(value: Any) -> str:
    """Render a raw ID as a string, reducing Shopify GIDs to their numeric tail."""
    if value is None:
        return CATALOG_SENTINEL
    text = str(value).strip()
    if not text:
        return CATALOG_SENTINEL
    if text.startswith(GID_PREFIX):
        text = text.rsplit("/", 1)[-1]
    return text


def is_resolved(value: Optional[str]) -> bool:
    """Only plain numeric strings are real Shopify identifiers."""
    return bool(value) and str(value).isdigit()


def entry_is_resolved(entry: Optional[CatalogEntry]) -> bool:
    if entry is None:
        return False
    return all(
        is_resolved(v) for v in (entry.variant_id, entry.product_id, entry.collection_id)
    )


class IdentifierCatalog:
    """Read-only pack catalog."""

    def __init__(
        self,
        bundle_parent: BundleParent,
        packs: Mapping[str, CatalogEntry],
        source: Optional[str] = None,
    ) -> None:
        self._bundle_parent = bundle_parent
        self._packs = MappingProxyType(dict(packs))
        self.source = source

    @classmethod
    def from_document(cls, document: Mapping[str, Any], source: Optional[str] = None) -> "IdentifierCatalog":
        if not isinstance(document, Mapping):
            raise CatalogLoadError("Catalog document must be a JSON object.")
        raw_packs = document.get("packs")
        if not isinstance(raw_packs, Mapping):
            raise CatalogLoadError("Catalog document has no 'packs' mapping.")

        packs: Dict[str, CatalogEntry] = {}
        for pack_key, raw in raw_packs.items():
            if not isinstance(raw, Mapping):
                raise CatalogLoadError(f"Catalog entry for {pack_key!r} must be an object.")
            packs[str(pack_key)] = CatalogEntry(
                variant_id=normalize_identifier(raw.get("variantId")),
                product_id=normalize_identifier(raw.get("productId")),
                collection_id=normalize_identifier(raw.get("collectionId")),
            )

        parent = BundleParent(
            product_id=normalize_identifier(document.get("bundle_product_id")),
            variant_id=normalize_identifier(document.get("bundle_variant_id")),
            selling_plan_id=normalize_identifier(document.get("selling_plan_id")),
        )
        return cls(parent, packs, source=source)

    def lookup(self, pack_key: str) -> Optional[CatalogEntry]:
        return self._packs.get(pack_key)

    def bundle_parent(self) -> BundleParent:
        return self._bundle_parent

    def is_configured(self) -> bool:
        parent = self._bundle_parent
        return is_resolved(parent.product_id) and is_resolved(parent.variant_id)

    def subscription_available(self) -> bool:
        return is_resolved(self._bundle_parent.selling_plan_id)

    def pack_keys(self) -> List[str]:
        return list(self._packs.keys())

    def unresolved_packs(self) -> List[str]:
        return [key for key, entry in self._packs.items() if not entry_is_resolved(entry)]

    def __len__(self) -> int:
        return len(self._packs)

    def __contains__(self, pack_key: object) -> bool:
        return pack_key in self._packs

    def summary(self) -> Dict[str, Any]:
        parent = self._bundle_parent
        return {
            "configured": self.is_configured(),
            "bundle_parent": {
                "product_id": parent.product_id,
                "variant_id": parent.variant_id,
                "selling_plan_id": parent.selling_plan_id,
            },
            "pack_count": len(self._packs),
            "unresolved_packs": self.unresolved_packs(),
            "subscription_available": self.subscription_available(),
        }


def load_catalog(path: Union[str, Path]) -> IdentifierCatalog:
    """Load the persisted catalog JSON document."""
    catalog_path = Path(path)
    try:
        document = json.loads(catalog_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise CatalogLoadError(f"Catalog file not found: {catalog_path}") from e
    except json.JSONDecodeError as e:
        raise CatalogLoadError(f"Catalog file {catalog_path} is not valid JSON: {e}") from e

    catalog = IdentifierCatalog.from_document(document, source=str(catalog_path))
    unresolved = catalog.unresolved_packs()
    logger.info(
        "Loaded catalog from %s | packs=%d unresolved=%d configured=%s",
        catalog_path,
        len(catalog),
        len(unresolved),
        catalog.is_configured(),
    )
    if unresolved:
        logger.warning("Catalog has unresolved packs: %s", ", ".join(unresolved))
    return catalog


def catalog_template(pack_keys: Iterable[str]) -> Dict[str, Any]:
    """All-sentinel catalog document for a store that has not been populated yet."""
    return {
        "bundle_product_id": CATALOG_SENTINEL,
        "bundle_variant_id": CATALOG_SENTINEL,
        "selling_plan_id": CATALOG_SENTINEL,
        "packs": {
            key: {
                "variantId": CATALOG_SENTINEL,
                "productId": CATALOG_SENTINEL,
                "collectionId": CATALOG_SENTINEL,
            }
            for key in pack_keys
        },
    }
