import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.catalog import IdentifierCatalog
from services.checkout_pipeline import BundleCheckoutPipeline
from services.recharge_client import ReadinessMixin
from services.shopify_cart import ShopifyCartClient

STORE_ROOT = "https://shop.example.com/"

CATALOG_DOCUMENT = {
    "bundle_product_id": "7134322196677",
    "bundle_variant_id": "41291293425861",
    "selling_plan_id": "743178437",
    "packs": {
        "MIX60_6": {"variantId": "111", "productId": "211", "collectionId": "311"},
        "GEL30_12": {"variantId": "112", "productId": "212", "collectionId": "312"},
        "BAR50_6": {"variantId": "FILL_ME_IN", "productId": "213", "collectionId": "313"},
    },
}


class StubBundleClient(ReadinessMixin):
    """In-memory bundle service with the real readiness poll."""

    def __init__(
        self,
        ready_after: int = 0,
        never_ready: bool = False,
        valid: Any = True,
        validate_error: Optional[Exception] = None,
        token: Optional[str] = "rb-token-1",
        token_error: Optional[Exception] = None,
        token_delay: float = 0.0,
        after_token: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ready_after = ready_after
        self.never_ready = never_ready
        self.valid = valid
        self.validate_error = validate_error
        self.token = token
        self.token_error = token_error
        self.token_delay = token_delay
        self.after_token = after_token
        self.ready_checks = 0
        self.calls: List[str] = []
        self.definitions: List[Dict[str, Any]] = []

    async def is_ready(self) -> bool:
        self.ready_checks += 1
        if self.never_ready:
            return False
        return self.ready_checks > self.ready_after

    async def validate_bundle(self, definition):
        self.calls.append("validate")
        self.definitions.append(definition)
        if self.validate_error:
            raise self.validate_error
        return self.valid

    async def get_bundle_id(self, definition):
        self.calls.append("get_bundle_id")
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        if self.token_error:
            raise self.token_error
        if self.after_token:
            self.after_token()
        return self.token


class CartRecorder:
    """MockTransport handler that records cart posts."""

    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"items": []}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(self.status_code, text=str(self.body))

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def client(self, cart_cookie: Optional[str] = None) -> ShopifyCartClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return ShopifyCartClient(STORE_ROOT, cart_cookie=cart_cookie, http_client=http)


def build_catalog(**overrides) -> IdentifierCatalog:
    document = json.loads(json.dumps(CATALOG_DOCUMENT))
    packs = overrides.pop("packs", None)
    if packs is not None:
        document["packs"] = packs
    document.update(overrides)
    return IdentifierCatalog.from_document(document)


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def bundle_client():
    return StubBundleClient()


@pytest.fixture
def cart():
    return CartRecorder()


@pytest.fixture
def make_pipeline(catalog, bundle_client, cart):
    def _make(catalog=catalog, bundle_client=bundle_client, cart=cart, **kwargs):
        kwargs.setdefault("dependency_timeout_ms", 200)
        kwargs.setdefault("poll_interval_ms", 5)
        return BundleCheckoutPipeline(catalog, bundle_client, cart.client(), **kwargs)

    return _make
