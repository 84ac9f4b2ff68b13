"""
Checkout Router
Bundle definition preview, full Recharge bundle checkout, and BYOB prefill links and plans.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from schemas import PackLine
from services.checkout_pipeline import build_bundle_definition
from services.checkout_runtime import CheckoutRuntime, get_checkout_runtime
from services.errors import CheckoutError, PrefillDecodeError
from services.prefill import build_prefill_url, decode_prefill, encode_prefill, plan_prefill
from settings import BYOB_PREFILL_URL

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_LINES = 100


class PackLineModel(BaseModel):
    pack_key: str = Field(..., alias="packKey", min_length=1, max_length=64)
    qty: int = Field(0, ge=0, le=999)

    model_config = ConfigDict(populate_by_name=True)

    def to_line(self) -> PackLine:
        return PackLine(pack_key=self.pack_key, qty=self.qty)


class LinesRequest(BaseModel):
    lines: List[PackLineModel] = Field(default_factory=list, max_length=MAX_LINES)

    def pack_lines(self) -> List[PackLine]:
        return [line.to_line() for line in self.lines]


class SubmitRequest(LinesRequest):
    subscribe: bool = True
    context_id: Optional[str] = Field(None, alias="contextId", max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class PrefillLinkRequest(LinesRequest):
    base_url: Optional[str] = Field(None, alias="baseUrl", max_length=2048)

    model_config = ConfigDict(populate_by_name=True)


@router.post("/checkout/bundle-definition")
async def preview_bundle_definition(
    request: LinesRequest,
    runtime: CheckoutRuntime = Depends(get_checkout_runtime),
):
    """Resolve lines against the catalog without touching Recharge or the cart."""
    try:
        definition, warnings = build_bundle_definition(runtime.catalog, request.pack_lines())
    except CheckoutError as e:
        raise HTTPException(status_code=422, detail={"reason": e.reason, "message": str(e)})
    return {"definition": definition.to_dict(), "warnings": warnings}


@router.post("/checkout/submit")
async def submit_checkout(
    request: SubmitRequest,
    http_request: Request,
    runtime: CheckoutRuntime = Depends(get_checkout_runtime),
):
    """
    Run a full bundle checkout for the calling buyer.
    The buyer's ``cart`` cookie is forwarded so the bundle lands in their cart.
    """
    cart_cookie = http_request.cookies.get("cart")
    context_id = request.context_id or cart_cookie
    rid = getattr(http_request.state, "request_id", "-")
    logger.info(
        "[checkout] submit lines=%d subscribe=%s context=%s rid=%s",
        len(request.lines),
        request.subscribe,
        context_id,
        rid,
    )

    pipeline = runtime.pipeline_for(cart_cookie)
    result = await pipeline.submit(
        request.pack_lines(),
        request.subscribe,
        context_id=context_id,
    )

    payload = {
        "ok": result.ok,
        "state": result.state.value,
        "reason": result.reason,
        "messages": [{"message": m, "isError": e} for m, e in result.messages],
        "warnings": result.warnings,
        "redirectUrl": result.redirect_url,
    }
    if result.reason == "busy":
        return JSONResponse(status_code=409, content=payload)
    return payload


@router.post("/prefill-link")
async def create_prefill_link(request: PrefillLinkRequest):
    """Link to the bundle builder page with the selection pre-filled."""
    lines = request.pack_lines()
    if not any(line.qty > 0 for line in lines):
        raise HTTPException(status_code=400, detail="No bundle lines with a positive quantity")
    return {
        "url": build_prefill_url(lines, request.base_url or BYOB_PREFILL_URL),
        "token": encode_prefill(lines),
    }


class PrefillRowModel(BaseModel):
    attrs: Dict[str, str] = Field(default_factory=dict)
    text: str = ""


class PrefillPlanRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)
    rows: List[PrefillRowModel] = Field(default_factory=list, max_length=500)


@router.post("/prefill-plan")
async def create_prefill_plan(request: PrefillPlanRequest):
    """
    Decode a prefill token and pick the builder row for each line.
    ``rowIndex`` is null where no matcher accepted any row.
    """
    try:
        lines = decode_prefill(request.token)
    except PrefillDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    rows = [row.model_dump() for row in request.rows]
    plan = plan_prefill(rows, lines)
    matches = []
    for line in lines:
        row = plan.get(line.pack_key)
        index = next((i for i, candidate in enumerate(rows) if candidate is row), None)
        matches.append({"packKey": line.pack_key, "qty": line.qty, "rowIndex": index})
    return {"lines": [line.to_dict() for line in lines], "matches": matches}
