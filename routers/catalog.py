"""
Catalog Router
Read-only view of the Identifier Catalog so operators can see what still needs filling in.
"""
from fastapi import APIRouter, Depends
import logging

from services.checkout_runtime import CheckoutRuntime, get_checkout_runtime

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/catalog")
async def get_catalog_status(runtime: CheckoutRuntime = Depends(get_checkout_runtime)):
    """Configuration status of the bundle parent and every pack."""
    summary = runtime.catalog.summary()
    if summary["unresolved_packs"]:
        logger.info("Catalog status requested | unresolved=%d", len(summary["unresolved_packs"]))
    return summary
