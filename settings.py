"""
Centralized configuration for the bundle checkout service.
"""
from __future__ import annotations

import os
from typing import Any, Optional

CATALOG_SENTINEL: str = os.getenv("CATALOG_SENTINEL") or "FILL_ME_IN"


def env_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to ``default`` on blanks or junk."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def sanitize_store_domain(value: Optional[Any]) -> Optional[str]:
    """Normalize a raw store domain (strip protocol, slashes, whitespace, lower-case)."""
    if value is None:
        return None
    text = str(value).strip()
    lowered = text.lower()
    if lowered.startswith("https://"):
        text = text[8:]
    elif lowered.startswith("http://"):
        text = text[7:]
    text = text.strip().strip("/\t\n\r ")
    if not text:
        return None
    return text.lower()


def normalize_store_root(value: Optional[str]) -> str:
    """Storefront routes root, always ending with a slash (``/`` when unset)."""
    text = (value or "").strip()
    if not text:
        return "/"
    if not text.endswith("/"):
        text += "/"
    return text


CATALOG_PATH: str = os.getenv("CATALOG_PATH") or "catalog/variant_map.json"
STORE_ROOT: str = normalize_store_root(os.getenv("STORE_ROOT") or "https://styrkr.com/")

# Recharge bundle service
RECHARGE_API_URL: str = (os.getenv("RECHARGE_API_URL") or "https://api.rechargeapps.com/storefront").rstrip("/")
RECHARGE_API_TOKEN: str = os.getenv("RECHARGE_API_TOKEN", "")

# Readiness poll for the subscription bundle service
CHECKOUT_SDK_TIMEOUT_MS: int = env_int("CHECKOUT_SDK_TIMEOUT_MS", 8000)
CHECKOUT_SDK_POLL_INTERVAL_MS: int = env_int("CHECKOUT_SDK_POLL_INTERVAL_MS", 100)
CHECKOUT_HTTP_TIMEOUT_S: float = float(env_int("CHECKOUT_HTTP_TIMEOUT_S", 15))

# Shopify Admin API (catalog builder only)
SHOPIFY_STORE: Optional[str] = sanitize_store_domain(os.getenv("SHOPIFY_STORE"))
SHOPIFY_TOKEN: str = os.getenv("SHOPIFY_TOKEN", "")
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION") or "2025-10"

# Third-party bundle builder page that understands ?prefill=
BYOB_PREFILL_URL: str = os.getenv("BYOB_PREFILL_URL") or "https://styrkr.com/products/build-your-own-bundle"
