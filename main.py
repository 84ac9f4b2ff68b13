"""
FastAPI Application Entry Point
Bundle Checkout Service - adds catalog-resolved pack bundles to the buyer's
Shopify cart as one Recharge fixed-price bundle line item.
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import os
from contextvars import ContextVar
from dotenv import load_dotenv
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable

# Settings read the environment at import time
load_dotenv()

from routers import catalog, checkout
from services.checkout_runtime import get_checkout_runtime, shutdown_checkout_runtime
from services.errors import ConfigurationError
from settings import CATALOG_PATH, CHECKOUT_SDK_TIMEOUT_MS, RECHARGE_API_URL, STORE_ROOT

SERVICE_NAME = "bundle-checkout"

# Request id of the request being served, stamped on every log line it produces
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


# ---- Logging: one JSON object per line on stdout ----
class CheckoutLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "service": SERVICE_NAME,
            "logger": record.name,
            "rid": request_id_var.get(),
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(level: str) -> None:
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(CheckoutLogFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers = [stream]
    root_logger.setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    # Recharge and cart calls are logged by the pipeline; per-request httpx lines are noise
    logging.getLogger("httpx").setLevel(logging.WARNING)


configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Bundle Checkout API",
    description="Resolves pack selections against the Identifier Catalog and adds them to the Shopify cart as a Recharge bundle",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# The storefront theme calls the API from the shop's own origin
storefront_origin = STORE_ROOT.rstrip("/")
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
if storefront_origin.startswith("http") and storefront_origin not in cors_origins:
    cors_origins.append(storefront_origin)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins or ["http://localhost:3000"],
    allow_credentials=True,  # the buyer's cart cookie rides along
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or _uuid.uuid4().hex
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        started = time.monotonic()
        try:
            response = await call_next(request)
            took_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {took_ms}ms")
        except Exception:
            logger.exception(f"{request.method} {request.url.path} crashed")
            raise
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-Id"] = request_id
        return response

app.add_middleware(RequestIDMiddleware)


@app.get("/")
async def root():
    return {"ok": True, "service": SERVICE_NAME, "docs": "/api/docs"}

@app.get("/healthz")
async def healthz():
    """Liveness only; checkout readiness is /api/health."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Can this process take a checkout right now: catalog loaded and bundle parent filled in."""
    try:
        runtime = get_checkout_runtime()
    except ConfigurationError as e:
        return {
            "status": "catalog_unavailable",
            "checkout_ready": False,
            "catalog": {"path": CATALOG_PATH, "error": str(e)},
        }
    ready = runtime.catalog.is_configured()
    return {
        "status": "ready" if ready else "catalog_unconfigured",
        "checkout_ready": ready,
        "catalog": {
            "path": CATALOG_PATH,
            "packs": len(runtime.catalog),
            "unresolved_packs": len(runtime.catalog.unresolved_packs()),
            "subscription_available": runtime.catalog.subscription_available(),
        },
        "checkouts_in_flight": runtime.guard.active_count,
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Rejected {request.url.path} body: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "error": "Validation failed"})

@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Checkout unavailable, catalog problem: {exc}")
    return JSONResponse(status_code=503, content={"error": str(exc), "reason": exc.reason})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

# --- Routers ---
app.include_router(catalog.router, prefix="/api", tags=["catalog"])
app.include_router(checkout.router, prefix="/api", tags=["checkout"])


@app.on_event("startup")
async def load_catalog_on_startup():
    logger.info(
        f"Bundle checkout starting | catalog={CATALOG_PATH} store={STORE_ROOT} "
        f"recharge={RECHARGE_API_URL} sdk_wait={CHECKOUT_SDK_TIMEOUT_MS}ms"
    )
    try:
        runtime = get_checkout_runtime()
    except ConfigurationError as e:
        logger.error(f"Catalog not loaded, checkouts will get 503 until it is fixed: {e}")
        return
    if not runtime.catalog.is_configured():
        logger.warning("Bundle parent product/variant still FILL_ME_IN; every checkout will fail fast")
    unresolved = runtime.catalog.unresolved_packs()
    if unresolved:
        logger.warning(f"{len(unresolved)} pack(s) will be skipped at checkout: {', '.join(unresolved)}")

@app.on_event("shutdown")
async def close_checkout_clients():
    logger.info("Bundle checkout stopping; closing Recharge and cart clients")
    await shutdown_checkout_runtime()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production"
    )
