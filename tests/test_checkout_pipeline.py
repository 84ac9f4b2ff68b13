"""
Tests for the bundle checkout pipeline.

Each test drives one full ``submit`` against an in-memory bundle service and a
mocked Shopify cart endpoint.
"""

import asyncio
import time

import httpx
import pytest

from conftest import STORE_ROOT, CartRecorder, StubBundleClient, build_catalog
from schemas import BundleParent, PackLine
from services.checkout_pipeline import (
    CheckoutState,
    build_bundle_definition,
    build_cart_item,
    resolve_selections,
)
from services.checkout_runtime import CheckoutRuntime
from services.errors import (
    CartSubmissionError,
    ConfigurationError,
    DependencyTimeoutError,
    NoValidSelectionsError,
    TokenAcquisitionError,
)


def run(coro):
    return asyncio.run(coro)


class TestPreconditions:

    def test_empty_lines_fail_without_network(self, make_pipeline, bundle_client, cart):
        result = run(make_pipeline().submit([], True))

        assert result.state is CheckoutState.FAILED
        assert result.reason == "empty_input"
        assert isinstance(result.error, ConfigurationError)
        assert bundle_client.ready_checks == 0
        assert bundle_client.calls == []
        assert cart.requests == []

    def test_all_zero_qty_is_empty_input(self, make_pipeline, bundle_client, cart):
        lines = [PackLine("MIX60_6", 0), PackLine("GEL30_12", -1)]
        result = run(make_pipeline().submit(lines))

        assert result.reason == "empty_input"
        assert bundle_client.ready_checks == 0
        assert cart.requests == []

    def test_unconfigured_catalog_is_rejected(self, make_pipeline, bundle_client, cart):
        catalog = build_catalog(bundle_product_id="FILL_ME_IN")
        result = run(make_pipeline(catalog=catalog).submit([PackLine("MIX60_6", 1)]))

        assert result.reason == "catalog_unconfigured"
        assert isinstance(result.error, ConfigurationError)
        assert bundle_client.ready_checks == 0
        assert cart.requests == []


class TestHappyPath:

    def test_subscribe_adds_selling_plan_and_redirects(self, make_pipeline, bundle_client, cart):
        redirects = []
        statuses = []
        pipeline = make_pipeline(on_redirect=redirects.append)

        result = run(pipeline.submit(
            [PackLine("MIX60_6", 2), PackLine("GEL30_12", 1)],
            True,
            lambda msg, is_error: statuses.append((msg, is_error)),
        ))

        assert result.ok
        assert result.transitions == [
            CheckoutState.IDLE,
            CheckoutState.WAITING_FOR_DEPENDENCY,
            CheckoutState.RESOLVING_SELECTIONS,
            CheckoutState.VALIDATING_BUNDLE,
            CheckoutState.ACQUIRING_TOKEN,
            CheckoutState.SUBMITTING_CART,
            CheckoutState.COMPLETED,
        ]
        assert bundle_client.calls == ["validate", "get_bundle_id"]

        assert len(cart.requests) == 1
        request = cart.requests[0]
        assert str(request.url) == STORE_ROOT + "cart/add.js"
        assert request.headers["accept"] == "application/json"
        assert cart.payloads[0] == {
            "items": [{
                "id": "41291293425861",
                "quantity": 1,
                "properties": {"_rb_id": "rb-token-1"},
                "selling_plan": 743178437,
            }]
        }

        assert redirects == [STORE_ROOT + "cart"]
        assert result.redirect_url == STORE_ROOT + "cart"
        assert statuses[-1] == ("Added to cart! Redirecting…", False)
        assert not any(is_error for _, is_error in statuses)

    def test_bundle_definition_payload(self, make_pipeline, bundle_client):
        run(make_pipeline().submit([PackLine("MIX60_6", 2)], False))

        assert bundle_client.definitions[0] == {
            "externalProductId": "7134322196677",
            "externalVariantId": "41291293425861",
            "selections": [{
                "collectionId": "311",
                "externalProductId": "211",
                "externalVariantId": "111",
                "quantity": 2,
            }],
        }

    def test_one_time_purchase_has_no_selling_plan(self, make_pipeline, cart):
        result = run(make_pipeline().submit([PackLine("MIX60_6", 1)], False))

        assert result.ok
        assert "selling_plan" not in cart.payloads[0]["items"][0]

    def test_unknown_pack_is_skipped_with_warning(self, make_pipeline, bundle_client, cart):
        statuses = []
        lines = [PackLine("MIX60_6", 2), PackLine("UNKNOWN", 1)]

        result = run(make_pipeline().submit(lines, True, lambda m, e: statuses.append((m, e))))

        assert result.ok
        selections = bundle_client.definitions[0]["selections"]
        assert len(selections) == 1
        assert selections[0]["quantity"] == 2
        warnings = [m for m, e in statuses if "UNKNOWN" in m]
        assert len(warnings) == 1
        assert not any(e for m, e in statuses if "UNKNOWN" in m)
        assert len(cart.requests) == 1

    def test_dependency_ready_after_a_few_polls(self, make_pipeline, cart):
        client = StubBundleClient(ready_after=3)
        result = run(make_pipeline(bundle_client=client).submit([PackLine("MIX60_6", 1)]))

        assert result.ok
        assert client.ready_checks == 4


class TestResolution:

    def test_all_unresolved_is_distinct_from_empty_input(self, make_pipeline, bundle_client, cart):
        lines = [PackLine("UNKNOWN", 1), PackLine("BAR50_6", 3)]
        result = run(make_pipeline().submit(lines))

        assert result.state is CheckoutState.FAILED
        assert result.reason == "no_valid_selections"
        assert isinstance(result.error, NoValidSelectionsError)
        assert bundle_client.calls == []
        assert cart.requests == []

    def test_resolve_selections_skips_sentinel_entries(self, catalog):
        selections, skipped = resolve_selections(
            catalog, [PackLine("BAR50_6", 1), PackLine("GEL30_12", 4), PackLine("MIX60_6", 0)]
        )
        assert [s.variant_id for s in selections] == ["112"]
        assert skipped == ["BAR50_6"]

    def test_duplicate_pack_keys_are_kept_in_order(self, catalog):
        selections, skipped = resolve_selections(
            catalog, [PackLine("MIX60_6", 1), PackLine("GEL30_12", 2), PackLine("MIX60_6", 3)]
        )
        assert [(s.variant_id, s.quantity) for s in selections] == [("111", 1), ("112", 2), ("111", 3)]
        assert skipped == []

    def test_build_bundle_definition_reports_warnings(self, catalog):
        definition, warnings = build_bundle_definition(
            catalog, [PackLine("MIX60_6", 1), PackLine("NOPE", 1), PackLine("BAR50_6", 1)]
        )
        assert len(definition.selections) == 1
        assert warnings == [
            "No catalog entry for pack NOPE; skipping.",
            "Catalog entry for pack BAR50_6 is not filled in; skipping.",
        ]


class TestSubscriptionDowngrade:

    def test_unresolved_selling_plan_downgrades_to_one_time(self, make_pipeline, cart):
        catalog = build_catalog(selling_plan_id="FILL_ME_IN")
        statuses = []

        result = run(make_pipeline(catalog=catalog).submit(
            [PackLine("MIX60_6", 1)], True, lambda m, e: statuses.append((m, e))
        ))

        assert result.ok
        assert "selling_plan" not in cart.payloads[0]["items"][0]
        downgrade = [m for m, e in statuses if "one-time" in m]
        assert len(downgrade) == 1
        assert not any(e for _, e in statuses)

    def test_build_cart_item_flags_downgrade(self):
        parent = BundleParent("1", "2", "FILL_ME_IN")
        item, downgraded = build_cart_item(parent, "tok", subscribe=True)
        assert downgraded is True
        assert item.selling_plan is None

        item, downgraded = build_cart_item(parent, "tok", subscribe=False)
        assert downgraded is False


class TestBundleService:

    def test_validation_exception_is_not_fatal(self, make_pipeline, cart):
        client = StubBundleClient(validate_error=RuntimeError("collection not recognised"))
        result = run(make_pipeline(bundle_client=client).submit([PackLine("MIX60_6", 1)]))

        assert result.ok
        assert client.calls == ["validate", "get_bundle_id"]
        assert len(result.warnings) == 1
        assert "collection not recognised" in result.warnings[0]
        assert len(cart.requests) == 1

    def test_validation_false_is_not_fatal(self, make_pipeline):
        client = StubBundleClient(valid=False)
        result = run(make_pipeline(bundle_client=client).submit([PackLine("MIX60_6", 1)]))

        assert result.ok
        assert "returned False" in result.warnings[0]

    def test_token_failure_is_fatal_and_skips_cart(self, make_pipeline, cart):
        client = StubBundleClient(token_error=RuntimeError("boom"))
        statuses = []

        result = run(make_pipeline(bundle_client=client).submit(
            [PackLine("MIX60_6", 1)], True, lambda m, e: statuses.append((m, e))
        ))

        assert result.state is CheckoutState.FAILED
        assert result.reason == "token_acquisition"
        assert isinstance(result.error, TokenAcquisitionError)
        assert cart.requests == []
        assert statuses[-1][1] is True
        assert "getBundleId failed: boom" in statuses[-1][0]

    def test_empty_token_is_fatal(self, make_pipeline, cart):
        client = StubBundleClient(token="")
        result = run(make_pipeline(bundle_client=client).submit([PackLine("MIX60_6", 1)]))

        assert result.reason == "token_acquisition"
        assert cart.requests == []

    def test_dependency_timeout(self, make_pipeline, cart):
        client = StubBundleClient(never_ready=True)
        pipeline = make_pipeline(bundle_client=client, dependency_timeout_ms=150, poll_interval_ms=10)

        started = time.monotonic()
        result = run(pipeline.submit([PackLine("MIX60_6", 1)]))
        elapsed = time.monotonic() - started

        assert result.reason == "dependency_timeout"
        assert isinstance(result.error, DependencyTimeoutError)
        assert "Recharge SDK" in str(result.error)
        assert "150ms" in str(result.error)
        assert 0.12 <= elapsed < 1.0
        assert client.calls == []
        assert cart.requests == []


class TestCartSubmission:

    def test_non_2xx_carries_status_and_body(self, make_pipeline, bundle_client):
        cart = CartRecorder(status_code=422, body={"status": 422, "description": "Sold out"})
        redirects = []
        pipeline = make_pipeline(cart=cart, on_redirect=redirects.append)

        result = run(pipeline.submit([PackLine("MIX60_6", 1)]))

        assert result.reason == "cart_submission"
        assert isinstance(result.error, CartSubmissionError)
        assert result.error.status_code == 422
        assert "Sold out" in str(result.error)
        assert "HTTP 422" in str(result.error)
        assert result.redirect_url is None
        assert redirects == []

    def test_transport_error_is_a_cart_submission_error(self, make_pipeline):
        class UnreachableCart(CartRecorder):
            def __call__(self, request):
                self.requests.append(request)
                raise httpx.ConnectError("connection refused", request=request)

        cart = UnreachableCart()
        result = run(make_pipeline(cart=cart).submit([PackLine("MIX60_6", 1)]))

        assert result.reason == "cart_submission"
        assert isinstance(result.error, CartSubmissionError)
        assert result.error.status_code is None
        assert "ConnectError" in str(result.error)
        assert result.messages[-1] == (str(result.error), True)
        assert len(cart.requests) == 1

    def test_redirect_callback_failure_keeps_success(self, make_pipeline):
        def broken(url):
            raise RuntimeError("no window")

        result = run(make_pipeline(on_redirect=broken).submit([PackLine("MIX60_6", 1)]))
        assert result.ok


class TestConcurrency:

    def test_sequential_submits_are_independent(self, make_pipeline, cart):
        pipeline = make_pipeline()
        first = run(pipeline.submit([PackLine("MIX60_6", 1)]))
        second = run(pipeline.submit([PackLine("MIX60_6", 1)]))

        assert first.ok and second.ok
        assert len(cart.requests) == 2

    def test_concurrent_submit_same_context_is_busy(self, make_pipeline, cart):
        client = StubBundleClient(ready_after=5)
        pipeline = make_pipeline(bundle_client=client)
        busy_statuses = []

        async def scenario():
            first = asyncio.ensure_future(pipeline.submit([PackLine("MIX60_6", 1)], context_id="cart-a"))
            await asyncio.sleep(0)
            second = await pipeline.submit(
                [PackLine("MIX60_6", 1)],
                context_id="cart-a",
                on_status=lambda m, e: busy_statuses.append((m, e)),
            )
            return await first, second

        first, second = run(scenario())

        assert first.ok
        assert second.reason == "busy"
        assert busy_statuses[0][0].startswith("Busy")
        assert busy_statuses[0][1] is True
        assert len(cart.requests) == 1
        assert not pipeline.guard.is_active("cart-a")

    def test_different_contexts_run_concurrently(self, make_pipeline, cart):
        pipeline = make_pipeline(bundle_client=StubBundleClient(ready_after=2))

        async def scenario():
            return await asyncio.gather(
                pipeline.submit([PackLine("MIX60_6", 1)], context_id="a"),
                pipeline.submit([PackLine("GEL30_12", 1)], context_id="b"),
            )

        results = run(scenario())
        assert all(r.ok for r in results)
        assert len(cart.requests) == 2

    def test_buyers_without_context_do_not_block_each_other(self, catalog, cart):
        runtime = CheckoutRuntime(catalog, StubBundleClient(ready_after=2), cart.client())

        async def scenario():
            return await asyncio.gather(
                runtime.pipeline_for(None).submit([PackLine("MIX60_6", 1)]),
                runtime.pipeline_for(None).submit([PackLine("GEL30_12", 1)]),
            )

        results = run(scenario())
        assert [r.state for r in results] == [CheckoutState.COMPLETED, CheckoutState.COMPLETED]
        assert len(cart.requests) == 2
        assert runtime.guard.active_count == 0

    def test_same_pipeline_without_context_is_busy(self, make_pipeline, cart):
        pipeline = make_pipeline(bundle_client=StubBundleClient(ready_after=3))

        async def scenario():
            return await asyncio.gather(
                pipeline.submit([PackLine("MIX60_6", 1)]),
                pipeline.submit([PackLine("MIX60_6", 1)]),
            )

        first, second = run(scenario())
        assert first.ok
        assert second.reason == "busy"
        assert len(cart.requests) == 1


class TestCancellation:

    def test_cancel_during_dependency_wait(self, make_pipeline, cart):
        client = StubBundleClient(never_ready=True)
        pipeline = make_pipeline(bundle_client=client, dependency_timeout_ms=5000, poll_interval_ms=10)

        async def scenario():
            cancel = asyncio.Event()
            task = asyncio.ensure_future(pipeline.submit([PackLine("MIX60_6", 1)], cancel_event=cancel))
            await asyncio.sleep(0.05)
            cancel.set()
            return await task

        started = time.monotonic()
        result = run(scenario())

        assert result.reason == "cancelled"
        assert time.monotonic() - started < 1.0
        assert client.calls == []
        assert cart.requests == []

    def test_cancel_while_bundle_id_request_is_pending(self, make_pipeline, cart):
        client = StubBundleClient(token_delay=2.0)
        pipeline = make_pipeline(bundle_client=client)

        async def scenario():
            cancel = asyncio.Event()
            task = asyncio.ensure_future(pipeline.submit([PackLine("MIX60_6", 1)], cancel_event=cancel))
            while "get_bundle_id" not in client.calls:
                await asyncio.sleep(0.005)
            cancel.set()
            return await task

        started = time.monotonic()
        result = run(scenario())

        assert result.reason == "cancelled"
        assert result.bundle_token is None
        assert time.monotonic() - started < 1.0
        assert CheckoutState.SUBMITTING_CART not in result.transitions
        assert cart.requests == []

    def test_cancel_after_token_stops_before_cart(self, make_pipeline, cart):
        client = StubBundleClient()
        pipeline = make_pipeline(bundle_client=client)

        async def scenario():
            cancel = asyncio.Event()
            client.after_token = cancel.set
            return await pipeline.submit([PackLine("MIX60_6", 1)], cancel_event=cancel)

        result = run(scenario())

        assert result.reason == "cancelled"
        assert result.bundle_token == "rb-token-1"
        assert result.transitions[-2] is CheckoutState.ACQUIRING_TOKEN
        assert cart.requests == []

    def test_pre_cancelled_event_fails_before_any_call(self, make_pipeline, bundle_client, cart):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            return await make_pipeline().submit([PackLine("MIX60_6", 1)], cancel_event=cancel)

        result = run(scenario())
        assert result.reason == "cancelled"
        assert bundle_client.ready_checks == 0
        assert cart.requests == []


@pytest.mark.parametrize("lines", [
    [PackLine("MIX60_6", 1)],
    [PackLine("GEL30_12", 5), PackLine("UNKNOWN", 2)],
    [PackLine("BAR50_6", 1), PackLine("MIX60_6", 3), PackLine("GEL30_12", 0)],
])
def test_any_resolvable_line_reaches_cart(lines, make_pipeline):
    result = run(make_pipeline().submit(lines))
    assert CheckoutState.SUBMITTING_CART in result.transitions
