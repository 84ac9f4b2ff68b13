"""
Recharge bundle service client.

The pipeline only talks to the ``SubscriptionBundleClient`` protocol; the
handle is injected, so readiness is an explicit ``is_ready`` /
``wait_until_ready`` contract instead of an ambient global.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from services.deadlines import MIN_TICK_S, Deadline
from services.errors import DependencyTimeoutError, RechargeServiceError
from settings import (
    CHECKOUT_HTTP_TIMEOUT_S,
    CHECKOUT_SDK_POLL_INTERVAL_MS,
    CHECKOUT_SDK_TIMEOUT_MS,
    RECHARGE_API_TOKEN,
    RECHARGE_API_URL,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class SubscriptionBundleClient(Protocol):
    dependency_name: str

    async def is_ready(self) -> bool: ...

    async def wait_until_ready(
        self,
        timeout_ms: int = CHECKOUT_SDK_TIMEOUT_MS,
        interval_ms: int = CHECKOUT_SDK_POLL_INTERVAL_MS,
    ) -> None: ...

    async def validate_bundle(self, definition: Dict[str, Any]) -> bool: ...

    async def get_bundle_id(self, definition: Dict[str, Any]) -> str: ...


class ReadinessMixin:
    """Bounded readiness poll shared by every bundle client implementation."""

    dependency_name: str = "Recharge SDK"

    async def is_ready(self) -> bool:  # pragma: no cover - overridden
        raise NotImplementedError

    async def wait_until_ready(
        self,
        timeout_ms: int = CHECKOUT_SDK_TIMEOUT_MS,
        interval_ms: int = CHECKOUT_SDK_POLL_INTERVAL_MS,
    ) -> None:
        deadline = Deadline.from_ms(timeout_ms)
        interval_s = max(interval_ms, 1) / 1000.0
        checks = 0
        while True:
            checks += 1
            if await self._check_ready(deadline):
                if checks > 1:
                    logger.info(
                        "%s ready after %dms", self.dependency_name, deadline.elapsed_ms()
                    )
                return
            if deadline.expired:
                logger.warning(
                    "%s not ready after %dms (bound %dms)",
                    self.dependency_name,
                    deadline.elapsed_ms(),
                    timeout_ms,
                )
                raise DependencyTimeoutError(self.dependency_name, timeout_ms)
            await asyncio.sleep(deadline.next_tick(interval_s))

    async def _check_ready(self, deadline: Deadline) -> bool:
        """One ``is_ready`` call, cut off at the deadline; a cut-off check counts as not ready."""
        try:
            return await asyncio.wait_for(
                self.is_ready(), timeout=max(deadline.remaining(), MIN_TICK_S)
            )
        except asyncio.TimeoutError:
            logger.debug("%s readiness check outlived the wait bound", self.dependency_name)
            return False


class RechargeBundleClient(ReadinessMixin):
    """httpx-backed client for Recharge's fixed-price bundle endpoints."""

    def __init__(
        self,
        base_url: str = RECHARGE_API_URL,
        api_token: str = RECHARGE_API_TOKEN,
        *,
        readiness_path: str = "/",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = CHECKOUT_HTTP_TIMEOUT_S,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.readiness_path = readiness_path
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_token:
            headers["X-Recharge-Access-Token"] = api_token
        self._headers = headers
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._ready = False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def is_ready(self) -> bool:
        if self._ready:
            return True
        try:
            res = await self._client.get(self.base_url + self.readiness_path, headers=self._headers)
        except httpx.HTTPError as e:
            logger.debug("Recharge readiness check failed: %s", e)
            return False
        self._ready = res.is_success
        return self._ready

    async def _post(self, path: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        url = self.base_url + path
        try:
            res = await self._client.post(url, json=definition, headers=self._headers)
        except httpx.HTTPError as e:
            raise RechargeServiceError(f"Request to {path} failed: {e}") from e
        if not res.is_success:
            raise RechargeServiceError(
                f"Recharge returned HTTP {res.status_code} on {path}: {res.text[:200]}",
                status_code=res.status_code,
            )
        try:
            body = res.json()
        except ValueError as e:
            raise RechargeServiceError(f"Recharge returned non-JSON body on {path}") from e
        if not isinstance(body, dict):
            raise RechargeServiceError(f"Recharge returned unexpected payload on {path}")
        return body

    async def validate_bundle(self, definition: Dict[str, Any]) -> bool:
        body = await self._post("/bundles/validate", definition)
        return body.get("valid") is True

    async def get_bundle_id(self, definition: Dict[str, Any]) -> str:
        body = await self._post("/bundles/bundle_id", definition)
        bundle_id = body.get("id")
        if not bundle_id:
            raise RechargeServiceError("Recharge response did not include a bundle id")
        return str(bundle_id)
