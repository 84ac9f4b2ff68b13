"""
Process-wide checkout wiring: catalog, shared HTTP clients and the in-flight guard.
Routers build a per-request pipeline from it so every buyer gets their own cart cookie
while concurrent submissions still share one guard.
"""
from __future__ import annotations

import logging
from typing import Optional

from services.catalog import IdentifierCatalog, load_catalog
from services.checkout_pipeline import BundleCheckoutPipeline
from services.concurrency_control import InFlightGuard
from services.recharge_client import RechargeBundleClient, SubscriptionBundleClient
from services.shopify_cart import ShopifyCartClient
from settings import CATALOG_PATH

logger = logging.getLogger(__name__)


class CheckoutRuntime:
    def __init__(
        self,
        catalog: IdentifierCatalog,
        bundle_client: SubscriptionBundleClient,
        cart_client: ShopifyCartClient,
        guard: Optional[InFlightGuard] = None,
    ) -> None:
        self.catalog = catalog
        self.bundle_client = bundle_client
        self.cart_client = cart_client
        self.guard = guard or InFlightGuard()

    def pipeline_for(self, cart_cookie: Optional[str] = None) -> BundleCheckoutPipeline:
        return BundleCheckoutPipeline(
            self.catalog,
            self.bundle_client,
            self.cart_client.with_cart_cookie(cart_cookie),
            guard=self.guard,
        )

    async def aclose(self) -> None:
        closer = getattr(self.bundle_client, "aclose", None)
        if closer is not None:
            await closer()
        await self.cart_client.aclose()


_runtime: Optional[CheckoutRuntime] = None


def get_checkout_runtime() -> CheckoutRuntime:
    """FastAPI dependency; loads the catalog on first use."""
    global _runtime
    if _runtime is None:
        catalog = load_catalog(CATALOG_PATH)
        _runtime = CheckoutRuntime(catalog, RechargeBundleClient(), ShopifyCartClient())
        logger.info("Checkout runtime initialized | catalog=%s", CATALOG_PATH)
    return _runtime


async def shutdown_checkout_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.aclose()
        _runtime = None
