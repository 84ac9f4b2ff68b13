"""
Bundle Checkout Pipeline
Turns (packKey, qty) lines into a Recharge fixed-price bundle in the Shopify cart.

Flow
----
1. Preconditions: non-empty input, configured bundle parent
2. Wait for the bundle service to report ready (bounded poll)
3. Resolve lines against the Identifier Catalog
4. Validate the bundle definition (non-fatal, see below)
5. Exchange the definition for a bundle token (_rb_id)
6. Build the cart item (selling plan when subscribing and configured)
7. POST /cart/add.js
8. Report success and signal the redirect to /cart

FIXED-PRICE BUNDLES
-------------------
Recharge's validate endpoint spuriously rejects fixed-price bundles whose
collections it does not recognise. Validation failures are therefore logged
and recorded as warnings, and the attempt continues to token acquisition.
This is an accepted delivery risk pending product-owner review. Token
acquisition itself is fatal: nothing can be added to the cart without it.

No step is retried automatically; the caller may re-submit.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

import httpx

from schemas import BundleDefinition, BundleParent, BundleSelection, CartItem, PackLine
from services.catalog import IdentifierCatalog, entry_is_resolved, is_resolved
from services.concurrency_control import InFlightGuard
from services.errors import (
    CartSubmissionError,
    CheckoutBusyError,
    CheckoutCancelledError,
    CheckoutError,
    ConfigurationError,
    NoValidSelectionsError,
    TokenAcquisitionError,
    ValidationWarning,
)
from services.recharge_client import SubscriptionBundleClient
from services.shopify_cart import ShopifyCartClient
from services.status import StatusReporter, StatusSink
from settings import CHECKOUT_SDK_POLL_INTERVAL_MS, CHECKOUT_SDK_TIMEOUT_MS

logger = logging.getLogger(__name__)

RedirectCallback = Callable[[str], None]


class CheckoutState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_DEPENDENCY = "waiting_for_dependency"
    RESOLVING_SELECTIONS = "resolving_selections"
    VALIDATING_BUNDLE = "validating_bundle"
    ACQUIRING_TOKEN = "acquiring_token"
    SUBMITTING_CART = "submitting_cart"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CheckoutResult:
    """Outcome of one ``submit`` call."""
    state: CheckoutState = CheckoutState.IDLE
    reason: Optional[str] = None
    error: Optional[CheckoutError] = None
    definition: Optional[BundleDefinition] = None
    bundle_token: Optional[str] = None
    cart_item: Optional[CartItem] = None
    redirect_url: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    messages: List[Tuple[str, bool]] = field(default_factory=list)
    transitions: List[CheckoutState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is CheckoutState.COMPLETED

    def enter(self, state: CheckoutState) -> None:
        self.state = state
        self.transitions.append(state)

    def fail(self, error: CheckoutError) -> None:
        self.error = error
        self.reason = error.reason
        self.enter(CheckoutState.FAILED)


def resolve_selections(
    catalog: IdentifierCatalog, lines: Sequence[PackLine]
) -> Tuple[List[BundleSelection], List[str]]:
    """Map positive-quantity lines to bundle selections.

    Returns ``(selections, skipped_pack_keys)``; absent and sentinel-valued
    catalog entries are skipped, never submitted.
    """
    selections: List[BundleSelection] = []
    skipped: List[str] = []
    for line in lines:
        if not line.qty or line.qty <= 0:
            continue
        entry = catalog.lookup(line.pack_key)
        if not entry_is_resolved(entry):
            skipped.append(line.pack_key)
            continue
        selections.append(
            BundleSelection(
                collection_id=entry.collection_id,
                product_id=entry.product_id,
                variant_id=entry.variant_id,
                quantity=int(line.qty),
            )
        )
    return selections, skipped


def skipped_pack_message(catalog: IdentifierCatalog, pack_key: str) -> str:
    if catalog.lookup(pack_key) is None:
        return f"No catalog entry for pack {pack_key}; skipping."
    return f"Catalog entry for pack {pack_key} is not filled in; skipping."


def has_positive_lines(lines: Sequence[PackLine]) -> bool:
    return any(line.qty and line.qty > 0 for line in lines)


def check_preconditions(catalog: IdentifierCatalog, lines: Sequence[PackLine]) -> None:
    if not lines or not has_positive_lines(lines):
        raise ConfigurationError("No bundle lines to add.", reason="empty_input")
    if not catalog.is_configured():
        raise ConfigurationError(
            "Variant map not configured. Run the catalog builder or fill in the bundle product IDs.",
            reason="catalog_unconfigured",
        )


def build_bundle_definition(
    catalog: IdentifierCatalog, lines: Sequence[PackLine]
) -> Tuple[BundleDefinition, List[str]]:
    """Resolve lines into a bundle definition without any network call.

    Raises ConfigurationError for empty input or an unconfigured catalog and
    NoValidSelectionsError when nothing resolves.
    """
    check_preconditions(catalog, lines)
    selections, skipped = resolve_selections(catalog, lines)
    warnings = [skipped_pack_message(catalog, key) for key in skipped]
    if not selections:
        raise NoValidSelectionsError(
            "Could not map pack selections to Shopify variants. Check the catalog entries."
        )
    parent = catalog.bundle_parent()
    definition = BundleDefinition(
        product_id=parent.product_id,
        variant_id=parent.variant_id,
        selections=tuple(selections),
    )
    return definition, warnings


def build_cart_item(parent: BundleParent, bundle_token: str, subscribe: bool) -> Tuple[CartItem, bool]:
    """Returns ``(cart_item, downgraded)``; downgraded means subscribe was asked but no plan exists."""
    if subscribe and is_resolved(parent.selling_plan_id):
        return CartItem(parent.variant_id, bundle_token, selling_plan=int(parent.selling_plan_id)), False
    return CartItem(parent.variant_id, bundle_token), bool(subscribe)


def _format_error_body(body: Any) -> str:
    if body is None or body == "":
        return ""
    if isinstance(body, (dict, list)):
        return json.dumps(body)
    return str(body)


class BundleCheckoutPipeline:
    """Runs checkout attempts against an injected catalog, bundle client and cart client."""

    def __init__(
        self,
        catalog: IdentifierCatalog,
        bundle_client: SubscriptionBundleClient,
        cart_client: ShopifyCartClient,
        *,
        guard: Optional[InFlightGuard] = None,
        on_redirect: Optional[RedirectCallback] = None,
        dependency_timeout_ms: int = CHECKOUT_SDK_TIMEOUT_MS,
        poll_interval_ms: int = CHECKOUT_SDK_POLL_INTERVAL_MS,
    ) -> None:
        self.catalog = catalog
        self.bundle_client = bundle_client
        self.cart_client = cart_client
        self.guard = guard or InFlightGuard()
        self.on_redirect = on_redirect
        self.dependency_timeout_ms = dependency_timeout_ms
        self.poll_interval_ms = poll_interval_ms
        # Callers without a context of their own share this instance's slot only
        self.default_context = f"pipeline-{uuid.uuid4().hex[:12]}"

    async def submit(
        self,
        lines: Sequence[PackLine],
        subscribe: bool = True,
        on_status: Optional[StatusSink] = None,
        *,
        context_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CheckoutResult:
        """Run one checkout attempt. Never raises; inspect the result or the status sink."""
        reporter = StatusReporter(on_status)
        result = CheckoutResult(messages=reporter.messages)
        result.transitions.append(CheckoutState.IDLE)

        context_id = context_id or self.default_context
        if not self.guard.try_acquire(context_id):
            reporter.error("Busy: a checkout is already in progress. Please wait.")
            result.fail(CheckoutBusyError("Checkout already in progress."))
            return result

        try:
            await self._run(list(lines or []), subscribe, reporter, result, cancel_event)
        except CheckoutError as e:
            reporter.error(str(e))
            result.fail(e)
        except Exception as e:
            logger.exception("Unexpected checkout failure")
            error = CheckoutError(f"Checkout failed: {e}", reason="unexpected")
            reporter.error(str(error))
            result.fail(error)
        finally:
            self.guard.release(context_id)

        logger.info(
            "Checkout attempt finished | state=%s reason=%s context=%s",
            result.state.value,
            result.reason,
            context_id,
        )
        return result

    async def _run(
        self,
        lines: List[PackLine],
        subscribe: bool,
        reporter: StatusReporter,
        result: CheckoutResult,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        check_preconditions(self.catalog, lines)

        # 1. Bundle service readiness
        self._check_cancelled(cancel_event)
        result.enter(CheckoutState.WAITING_FOR_DEPENDENCY)
        reporter.info("Connecting to Recharge…")
        await self._guarded(
            self.bundle_client.wait_until_ready(self.dependency_timeout_ms, self.poll_interval_ms),
            cancel_event,
        )

        # 2. Selections
        self._check_cancelled(cancel_event)
        result.enter(CheckoutState.RESOLVING_SELECTIONS)
        definition, skipped = build_bundle_definition(self.catalog, lines)
        for message in skipped:
            reporter.warning(message)
        result.definition = definition
        payload = definition.to_dict()

        # 3. Validation (non-fatal)
        result.enter(CheckoutState.VALIDATING_BUNDLE)
        reporter.info("Validating bundle…")
        try:
            valid = await self._guarded(self.bundle_client.validate_bundle(payload), cancel_event)
        except CheckoutCancelledError:
            raise
        except Exception as e:
            self._record_validation_warning(result, f"validateBundle raised {type(e).__name__}: {e}")
        else:
            if valid is not True:
                self._record_validation_warning(result, f"validateBundle returned {valid!r}")

        # 4. Bundle token
        result.enter(CheckoutState.ACQUIRING_TOKEN)
        reporter.info("Generating bundle ID…")
        try:
            token = await self._guarded(self.bundle_client.get_bundle_id(payload), cancel_event)
        except CheckoutCancelledError:
            raise
        except Exception as e:
            raise TokenAcquisitionError(
                f"getBundleId failed: {e}. Check that collection/product/variant IDs in the catalog are correct."
            ) from e
        if not token:
            raise TokenAcquisitionError("getBundleId returned an empty bundle id.")
        result.bundle_token = str(token)

        # 5. Cart item
        cart_item, downgraded = build_cart_item(self.catalog.bundle_parent(), result.bundle_token, subscribe)
        if downgraded:
            reporter.info("Subscribe & save is not configured for this store; adding as a one-time purchase.")
        result.cart_item = cart_item

        # 6. Cart
        self._check_cancelled(cancel_event)
        result.enter(CheckoutState.SUBMITTING_CART)
        reporter.info("Adding to cart…")
        try:
            response = await self._guarded(self.cart_client.add_items([cart_item.to_dict()]), cancel_event)
        except httpx.HTTPError as e:
            raise CartSubmissionError(None, f"{type(e).__name__}: {e}") from e
        if not response.ok:
            raise CartSubmissionError(response.status_code, _format_error_body(response.body))

        # 7. Done
        result.enter(CheckoutState.COMPLETED)
        reporter.info("Added to cart! Redirecting…")
        result.redirect_url = self.cart_client.cart_url()
        self._signal_redirect(result.redirect_url)

    def _record_validation_warning(self, result: CheckoutResult, detail: str) -> None:
        message = f"{ValidationWarning.__name__}: {detail}; continuing anyway."
        logger.warning("[Checkout] %s", message)
        result.warnings.append(message)

    def _signal_redirect(self, url: str) -> None:
        if self.on_redirect is None:
            return
        try:
            self.on_redirect(url)
        except Exception:
            # Cart is already committed; a broken redirect hook must not flip the outcome.
            logger.exception("Redirect callback failed for %s", url)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CheckoutCancelledError("Checkout cancelled.")

    @staticmethod
    async def _guarded(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event]) -> Any:
        """Await ``awaitable`` unless ``cancel_event`` fires first."""
        if cancel_event is None:
            return await awaitable
        if cancel_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CheckoutCancelledError("Checkout cancelled.")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Abandoned checkout step raised after cancel: %s", e)
        raise CheckoutCancelledError("Checkout cancelled.")
