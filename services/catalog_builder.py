"""
Catalog Builder
Resolves the Identifier Catalog once, offline, from the Shopify Admin API and
writes the JSON document the checkout service loads at startup.

One configurable job (store, API version, pack definitions, output path)
covers every store; there is no per-version copy of this logic.

The Recharge selling plan cannot be resolved from the Shopify Admin API in
this flow. It is kept from an existing output file when present, otherwise
left as the sentinel for an operator to fill in from the Recharge portal.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from services.catalog import catalog_template, is_resolved, normalize_identifier
from services.errors import CatalogBuildError
from services.shopify_admin import ShopifyAdminClient
from settings import CATALOG_SENTINEL

logger = logging.getLogger(__name__)

DEFAULT_BUNDLE_HANDLE = "build-your-own-bundle"


@dataclass(frozen=True)
class PackDefinition:
    """Where a pack lives in the store: product handle, variant option text, collection."""
    pack_key: str
    product_handle: str
    pack_option: str
    collection_handle: Optional[str] = None


DEFAULT_PACK_DEFINITIONS: tuple = (
    PackDefinition("MIX60_6", "mix60-dual-carb-drink", "6 pack", "byob-energy-drink-powders"),
    PackDefinition("MIX60_12", "mix60-dual-carb-drink", "12 pack", "byob-energy-drink-powders"),
    PackDefinition("MIX90_6", "mix90-dual-carb-drink", "6 pack", "byob-energy-drink-powders"),
    PackDefinition("MIX90_12", "mix90-dual-carb-drink", "12 pack", "byob-energy-drink-powders"),
    PackDefinition("MIX90_CAFF_6", "mix90-caffeine-dual-carb-drink", "6 pack", "byob-energy-drink-powders"),
    PackDefinition("MIX90_CAFF_12", "mix90-caffeine-dual-carb-drink", "12 pack", "byob-energy-drink-powders"),
    PackDefinition("MIXPLUS_15", "byob-mix-pink-grapefruit-dual-carb-electrolyte-mix", "556g tub"),
    PackDefinition("MIXPLUS_25", "byob-mix-pink-grapefruit-dual-carb-electrolyte-mix", "926g tub"),
    PackDefinition("GEL30_6", "vq-byob-gel30-dual-carb-energy-gel-1x-copy", "6 pack"),
    PackDefinition("GEL30_12", "vq-byob-gel30-dual-carb-energy-gel-1x-copy", "12 pack"),
    PackDefinition("GEL30_CAFF_6", "vq-byob-gel30-caffeine-energy-gel-1x-copy", "6 pack"),
    PackDefinition("GEL30_CAFF_12", "vq-byob-gel30-caffeine-energy-gel-1x-copy", "12 pack"),
    PackDefinition("GEL50_12", "gel50-dual-carb-energy-gel-citrus-fruits-copy", "12 pack"),
    PackDefinition("BAR30_12", "bar30-high-carb-rice-energy-bar", "12 pack"),
    PackDefinition("BAR50_6", "bar50-variety-pack-energy-bars", "6 pack", "byob-high-carb-bars"),
    PackDefinition("BAR50_12", "bar50-variety-pack-energy-bars", "12 pack", "byob-high-carb-bars"),
    PackDefinition("SLT07_500_T12", "slt07-hydration-tablets-mild-berry-500mg", "Tube of 12"),
    PackDefinition("SLT07_500_B3", "slt07-hydration-tablets-mild-berry-500mg", "Box of 3"),
    PackDefinition("SLT07_500_B6", "slt07-hydration-tablets-mild-berry-500mg", "Box of 6"),
    PackDefinition("SLT07_1000_T12", "slt07-hydration-tablets-mild-citrus", "Tube of 12"),
    PackDefinition("SLT07_1000_B3", "slt07-hydration-tablets-mild-citrus", "Box of 3"),
    PackDefinition("SLT07_1000_B6", "slt07-hydration-tablets-mild-citrus", "Box of 6"),
    PackDefinition("SLTPLUS_30", "slt-plus", "Box (30 servings)"),
)


@dataclass
class CatalogBuildReport:
    output_path: Optional[str]
    document: Dict[str, Any]
    unresolved_packs: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unresolved_packs


def find_variant(product: Optional[Dict[str, Any]], pack_option: str) -> Optional[Dict[str, Any]]:
    """Pick the variant for a pack option.

    Title contains the option text, else any string field contains it, else
    the first variant. Matching is case-insensitive.
    """
    if not product:
        return None
    variants = product.get("variants") or []
    if not variants:
        return None
    needle = pack_option.lower()
    for variant in variants:
        if needle in str(variant.get("title") or "").lower():
            return variant
    for variant in variants:
        if any(isinstance(v, str) and needle in v.lower() for v in variant.values()):
            return variant
    return variants[0]


def _unresolved_entry() -> Dict[str, str]:
    return {"variantId": CATALOG_SENTINEL, "productId": CATALOG_SENTINEL, "collectionId": CATALOG_SENTINEL}


def _existing_selling_plan(output_path: Optional[Path]) -> str:
    if output_path is None or not output_path.exists():
        return CATALOG_SENTINEL
    try:
        existing = json.loads(output_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read existing catalog %s: %s", output_path, e)
        return CATALOG_SENTINEL
    plan = normalize_identifier(existing.get("selling_plan_id"))
    return plan if is_resolved(plan) else CATALOG_SENTINEL


class CatalogBuilder:
    """Builds the catalog document pack by pack."""

    def __init__(
        self,
        admin: ShopifyAdminClient,
        pack_definitions: Sequence[PackDefinition] = DEFAULT_PACK_DEFINITIONS,
        *,
        bundle_handle: str = DEFAULT_BUNDLE_HANDLE,
    ) -> None:
        self.admin = admin
        self.pack_definitions = list(pack_definitions)
        self.bundle_handle = bundle_handle

    async def resolve_pack(self, definition: PackDefinition) -> Dict[str, str]:
        product = await self.admin.get_product(definition.product_handle)
        if not product:
            logger.warning(
                "  %-20s product not found (handle: %s)", definition.pack_key, definition.product_handle
            )
            return _unresolved_entry()

        variant = find_variant(product, definition.pack_option)
        variant_id = normalize_identifier(variant.get("id") if variant else None)
        product_id = normalize_identifier(product.get("id"))

        if definition.collection_handle:
            collection_id = await self.admin.get_collection_id(definition.collection_handle)
        else:
            collection_id = await self.admin.get_first_collection_id(product_id)

        entry = {
            "variantId": variant_id,
            "productId": product_id,
            "collectionId": normalize_identifier(collection_id),
        }
        logger.info(
            "  %-20s variantId=%s productId=%s collectionId=%s",
            definition.pack_key,
            entry["variantId"],
            entry["productId"],
            entry["collectionId"],
        )
        return entry

    async def build(self, output_path: Optional[Union[str, Path]] = None) -> CatalogBuildReport:
        path = Path(output_path) if output_path else None
        logger.info("Fetching Shopify data from %s (API %s)", self.admin.store, self.admin.api_version)

        bundle_product = await self.admin.get_product(self.bundle_handle)
        if not bundle_product:
            raise CatalogBuildError(f"Could not find product with handle {self.bundle_handle}")
        variants = bundle_product.get("variants") or []
        bundle_product_id = normalize_identifier(bundle_product.get("id"))
        bundle_variant_id = normalize_identifier(variants[0].get("id") if variants else None)
        logger.info("Bundle product ID: %s variant ID: %s", bundle_product_id, bundle_variant_id)

        selling_plan_id = _existing_selling_plan(path)
        if not is_resolved(selling_plan_id):
            logger.info(
                "Selling plan left as %s: copy it from the Recharge portal "
                "(Subscriptions > Selling plans)", CATALOG_SENTINEL
            )

        logger.info("Resolving pack variants…")
        packs: Dict[str, Dict[str, str]] = {}
        for definition in self.pack_definitions:
            packs[definition.pack_key] = await self.resolve_pack(definition)

        document: Dict[str, Any] = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "store": self.admin.store,
            "bundle_product_id": bundle_product_id,
            "bundle_variant_id": bundle_variant_id,
            "selling_plan_id": selling_plan_id,
            "packs": packs,
        }
        unresolved = [
            key for key, ids in packs.items() if not all(is_resolved(v) for v in ids.values())
        ]

        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
            logger.info("Written to %s", path)

        if unresolved:
            logger.warning("Packs with unresolved IDs (fix manually): %s", ", ".join(unresolved))
        else:
            logger.info("All packs resolved successfully.")

        return CatalogBuildReport(
            output_path=str(path) if path else None,
            document=document,
            unresolved_packs=unresolved,
        )


def write_catalog_template(
    output_path: Union[str, Path],
    pack_definitions: Sequence[PackDefinition] = DEFAULT_PACK_DEFINITIONS,
) -> Path:
    """Write an all-sentinel catalog for hand editing; never overwrites an existing file."""
    path = Path(output_path)
    if path.exists():
        raise CatalogBuildError(f"{path} already exists; not replacing it with a blank template")
    document = catalog_template(d.pack_key for d in pack_definitions)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote blank catalog for %d packs to %s", len(document["packs"]), path)
    return path
