"""
Checkout Schemas Package
Provides the data structures shared by the catalog and checkout pipeline.
"""

from .checkout_schemas import (
    # Wire dicts
    PackLineDict,
    BundleSelectionDict,
    BundleDefinitionDict,
    CartItemDict,

    # Dataclasses
    PackLine,
    CatalogEntry,
    BundleParent,
    BundleSelection,
    BundleDefinition,
    CartItem,

    # Constants
    BUNDLE_TOKEN_PROPERTY,

    # Helper functions
    parse_pack_lines,
)
