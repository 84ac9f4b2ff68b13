#!/usr/bin/env python3
"""
Populate the Identifier Catalog from the Shopify Admin API.

Usage:
  SHOPIFY_STORE=styrkr.myshopify.com SHOPIFY_TOKEN=shpat_xxx \
    python scripts/populate_catalog.py
  python scripts/populate_catalog.py --template --output catalog/variant_map.json
  python scripts/populate_catalog.py --store styrkr.myshopify.com --token shpat_xxx \
    --api-version 2025-10 --output catalog/variant_map.json

The selling plan ID is not available from the Admin API here; copy it from the
Recharge merchant portal (Subscriptions > Selling plans) into the output file.
Re-running keeps a selling plan that was already filled in.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

from services.catalog_builder import DEFAULT_BUNDLE_HANDLE, CatalogBuilder, write_catalog_template
from services.errors import CatalogBuildError, ShopifyAdminError
from services.shopify_admin import ShopifyAdminClient
from settings import CATALOG_PATH, SHOPIFY_API_VERSION, sanitize_store_domain

logger = logging.getLogger("populate_catalog")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve Shopify IDs for every bundle pack.")
    parser.add_argument("--store", default=os.getenv("SHOPIFY_STORE"), help="shop domain, e.g. styrkr.myshopify.com")
    parser.add_argument("--token", default=os.getenv("SHOPIFY_TOKEN"), help="Admin API access token")
    parser.add_argument("--api-version", default=SHOPIFY_API_VERSION)
    parser.add_argument("--output", default=CATALOG_PATH)
    parser.add_argument("--bundle-handle", default=DEFAULT_BUNDLE_HANDLE)
    parser.add_argument(
        "--template",
        action="store_true",
        help="write a blank FILL_ME_IN catalog to --output without calling Shopify",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    admin = ShopifyAdminClient(args.store, args.token, args.api_version)
    try:
        report = await CatalogBuilder(admin, bundle_handle=args.bundle_handle).build(args.output)
    except (CatalogBuildError, ShopifyAdminError) as e:
        logger.error("%s", e)
        return 1
    finally:
        await admin.aclose()
    return 0 if report.complete else 2


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    if args.template:
        try:
            write_catalog_template(args.output)
        except CatalogBuildError as e:
            logger.error("%s", e)
            return 1
        return 0
    if not sanitize_store_domain(args.store) or not args.token:
        logger.error("Set SHOPIFY_STORE and SHOPIFY_TOKEN (or pass --store/--token).")
        return 1
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
