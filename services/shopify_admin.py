"""
Shopify Admin REST client used by the offline catalog builder.
Read-only: products, custom/smart collections and collects by handle.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from services.errors import ShopifyAdminError
from settings import SHOPIFY_API_VERSION, sanitize_store_domain
from utils import retry_async

logger = logging.getLogger(__name__)


class ShopifyAdminClient:
    """Memoizing Admin API reader; one instance per builder run."""

    def __init__(
        self,
        store: str,
        token: str,
        api_version: str = SHOPIFY_API_VERSION,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 30.0,
    ) -> None:
        domain = sanitize_store_domain(store)
        if not domain:
            raise ValueError("Shopify store domain is required")
        self.store = domain
        self.api_version = api_version
        self.base_url = f"https://{domain}/admin/api/{api_version}"
        self._headers = {"X-Shopify-Access-Token": token, "Content-Type": "application/json"}
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._products: Dict[str, Optional[Dict[str, Any]]] = {}
        self._collections: Dict[str, Optional[str]] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @retry_async(max_retries=3, base_delay=1.0)
    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        res = await self._client.get(self.base_url + path, params=params, headers=self._headers)
        if not res.is_success:
            raise ShopifyAdminError(res.status_code, path)
        return res.json()

    async def get_product(self, handle: str) -> Optional[Dict[str, Any]]:
        if handle in self._products:
            return self._products[handle]
        data = await self.get("/products.json", {"handle": handle})
        products = data.get("products") or []
        self._products[handle] = products[0] if products else None
        return self._products[handle]

    async def get_collection_id(self, handle: str) -> Optional[str]:
        """Custom collections first, then smart collections."""
        if handle in self._collections:
            return self._collections[handle]
        collection_id: Optional[str] = None
        for kind in ("custom_collections", "smart_collections"):
            data = await self.get(f"/{kind}.json", {"handle": handle})
            found = data.get(kind) or []
            if found:
                collection_id = str(found[0]["id"])
                break
        self._collections[handle] = collection_id
        return collection_id

    async def get_first_collection_id(self, product_id: str) -> Optional[str]:
        data = await self.get("/collects.json", {"product_id": product_id, "limit": 1})
        collects = data.get("collects") or []
        if not collects or not collects[0].get("collection_id"):
            return None
        return str(collects[0]["collection_id"])
