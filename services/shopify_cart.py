"""
Shopify storefront cart client (AJAX Cart API: /cart/add.js).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from settings import CHECKOUT_HTTP_TIMEOUT_S, STORE_ROOT, normalize_store_root

logger = logging.getLogger(__name__)


@dataclass
class CartResponse:
    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ShopifyCartClient:
    """Posts cart mutations on behalf of a buyer.

    ``cart_cookie`` is the buyer's ``cart`` cookie; without it Shopify starts
    a fresh cart for every request.
    """

    def __init__(
        self,
        store_root: str = STORE_ROOT,
        *,
        cart_cookie: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = CHECKOUT_HTTP_TIMEOUT_S,
    ) -> None:
        self.store_root = normalize_store_root(store_root)
        self.cart_cookie = cart_cookie
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)

    def with_cart_cookie(self, cart_cookie: Optional[str]) -> "ShopifyCartClient":
        """Same transport, different buyer."""
        clone = ShopifyCartClient(self.store_root, cart_cookie=cart_cookie, http_client=self._client)
        clone._owns_client = False
        return clone

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def cart_url(self) -> str:
        return self.store_root + "cart"

    async def add_items(self, items: List[Dict[str, Any]]) -> CartResponse:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.cart_cookie:
            headers["Cookie"] = f"cart={self.cart_cookie}"
        res = await self._client.post(
            self.store_root + "cart/add.js",
            json={"items": items},
            headers=headers,
        )
        try:
            body: Any = res.json()
        except ValueError:
            body = res.text or None
        logger.info("POST cart/add.js status=%s items=%d", res.status_code, len(items))
        return CartResponse(status_code=res.status_code, body=body)
