"""Tests for live bid routing and proxying."""
import httpx
import pytest

from conftest import (
    API_KEY,
    CUSTOMER_RUNTIME,
    MANAGED_RUNTIME,
    FakeUpstream,
    json_reply,
    network_error,
    timeout_error,
)
from mediation_edge.models.runtime_binding import RuntimeBinding
from mediation_edge.services.bid_proxy import BidGateway, BidProxy
from mediation_edge.services.binding_store import derive_tenant_id, hash_api_key
from mediation_edge.services.routing import RoutingConfig

BID_BODY = b'{"placementId":"chat_from_answer_v1","messages":[]}'
CALLER_HEADERS = [
    ("content-type", "application/json"),
    ("authorization", "bearer sk_test_runtime_key"),
    ("origin", "https://chat.customer.org"),
    ("connection", "keep-alive"),
    ("sec-fetch-mode", "cors"),
    ("x-trace-id", "trace-1"),
]


def _gateway(store, upstream, settings, **routing) -> BidGateway:
    config = RoutingConfig(**routing) if routing else RoutingConfig(managed_default_base_url=MANAGED_RUNTIME)
    return BidGateway(store, BidProxy(transport=upstream.transport, timeout=1.0), config, settings)


async def _bind_verified(store):
    key_hash = hash_api_key(API_KEY)
    await store.save(API_KEY, RuntimeBinding(
        key_hash=key_hash,
        tenant_id=derive_tenant_id(key_hash),
        runtime_base_url=CUSTOMER_RUNTIME,
        bind_status="verified",
        verified_at="2026-01-01T00:00:00.000Z",
    ))


@pytest.mark.asyncio
async def test_unbound_key_is_forwarded_to_managed_default(store, settings):
    upstream = FakeUpstream(json_reply({"ad": {"title": "Shoes"}, "url": "https://ads.example/x"}))
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, CALLER_HEADERS)

    assert result.status_code == 200
    assert result.runtime_source == "managed_default"
    assert result.body["landingUrl"] == "https://ads.example/x"
    assert result.body["ad"]["landingUrl"] == "https://ads.example/x"

    request = upstream.requests[0]
    assert str(request.url) == "https://managed.mediation.dev/api/v2/bid"
    assert request.content == BID_BODY
    assert request.headers["authorization"] == "Bearer sk_test_runtime_key"
    assert request.headers["x-forwarded-origin"] == "https://chat.customer.org"
    assert request.headers["x-trace-id"] == "trace-1"
    assert "origin" not in request.headers
    assert "sec-fetch-mode" not in request.headers


@pytest.mark.asyncio
async def test_verified_key_is_forwarded_to_customer(store, settings):
    await _bind_verified(store)
    upstream = FakeUpstream(json_reply({"landingUrl": "https://ads.example/x"}))

    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, CALLER_HEADERS)

    assert result.runtime_source == "customer"
    assert str(upstream.requests[0].url) == "https://runtime.customer.org/api/v2/bid"


@pytest.mark.asyncio
async def test_missing_api_key_is_401(store, settings):
    upstream = FakeUpstream()
    result = await _gateway(store, upstream, settings).live_bid(None, BID_BODY, [])
    assert result.status_code == 401
    assert result.body["error"]["code"] == "API_KEY_REQUIRED"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_no_route_is_503(store, settings):
    upstream = FakeUpstream()
    result = await _gateway(store, upstream, settings, fallback_disabled=True).live_bid(API_KEY, BID_BODY, [])
    assert result.status_code == 503
    assert result.body["error"]["code"] == "MANAGED_RUNTIME_NOT_CONFIGURED"
    assert result.body["error"]["bindStatus"] == "unbound"
    assert result.body["error"]["nextActions"]


@pytest.mark.asyncio
async def test_upstream_no_fill_is_structured(store, settings):
    upstream = FakeUpstream(json_reply({"filled": False, "reasonCode": "BUDGET_EXHAUSTED", "auctionId": "a1"}))
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])

    assert result.status_code == 200
    assert result.body["filled"] is False
    assert result.body["reasonCode"] == "BUDGET_EXHAUSTED"
    assert result.body["nextAction"]
    assert result.body["auctionId"] == "a1"


@pytest.mark.asyncio
async def test_missing_landing_url_is_bid_invalid_response(store, settings):
    upstream = FakeUpstream(json_reply({"filled": True, "ad": {"title": "Shoes"}}))
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert result.status_code == 502
    assert result.body["error"]["code"] == "BID_INVALID_RESPONSE"
    assert result.body["error"]["runtimeSource"] == "managed_default"


@pytest.mark.asyncio
async def test_upstream_error_json_passes_through(store, settings):
    upstream = FakeUpstream(json_reply({"error": "placement unknown"}, status=422))
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert result.status_code == 422
    assert result.body == {"error": "placement unknown"}


@pytest.mark.asyncio
async def test_non_json_upstream_is_raw_passthrough(store, settings):
    upstream = FakeUpstream(lambda request: httpx.Response(
        200, content=b"<ad/>", headers={"content-type": "application/xml"}
    ))
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert result.raw == b"<ad/>"
    assert result.media_type == "application/xml"


@pytest.mark.asyncio
async def test_network_failure_codes_depend_on_route(store, settings):
    upstream = FakeUpstream(network_error)
    managed = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert managed.status_code == 503
    assert managed.body["error"]["code"] == "MANAGED_RUNTIME_UNAVAILABLE"

    await _bind_verified(store)
    customer = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert customer.status_code == 502
    assert customer.body["error"]["code"] == "NETWORK_BLOCKED"


@pytest.mark.asyncio
async def test_timeout_is_504(store, settings):
    upstream = FakeUpstream(timeout_error)
    result = await _gateway(store, upstream, settings).live_bid(API_KEY, BID_BODY, [])
    assert result.status_code == 504
    assert result.body["error"]["code"] == "PROXY_UPSTREAM_TIMEOUT"


# ── best effort ──

@pytest.mark.asyncio
async def test_best_effort_filled(store, settings):
    upstream = FakeUpstream(json_reply({"bid": {"clickUrl": "https://ads.example/c"}}))
    body = await _gateway(store, upstream, settings).best_effort_bid(API_KEY, BID_BODY, [])
    assert body["filled"] is True
    assert body["landingUrl"] == "https://ads.example/c"
    assert body["runtimeSource"] == "managed_default"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler,reason",
    [
        (network_error, "MANAGED_RUNTIME_UNAVAILABLE"),
        (timeout_error, "PROXY_UPSTREAM_TIMEOUT"),
        (json_reply({"filled": True}), "BID_INVALID_RESPONSE"),
        (json_reply({"error": "down"}, status=500), "UPSTREAM_5XX"),
        (lambda request: httpx.Response(200, text="plain"), "BID_INVALID_RESPONSE"),
    ],
)
async def test_best_effort_degrades_to_no_fill(store, settings, handler, reason):
    upstream = FakeUpstream(handler)
    body = await _gateway(store, upstream, settings).best_effort_bid(API_KEY, BID_BODY, [])
    assert body["filled"] is False
    assert body["reasonCode"] == reason
    assert body["nextAction"]
    assert body["requestId"]


@pytest.mark.asyncio
async def test_best_effort_without_key_or_route(store, settings):
    upstream = FakeUpstream()
    assert (await _gateway(store, upstream, settings).best_effort_bid("", BID_BODY, []))["reasonCode"] == (
        "API_KEY_REQUIRED"
    )
    body = await _gateway(store, upstream, settings, fallback_disabled=True).best_effort_bid(API_KEY, BID_BODY, [])
    assert body["reasonCode"] == "MANAGED_RUNTIME_NOT_CONFIGURED"
    assert body["bindStatus"] == "unbound"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_best_effort_survives_unexpected_errors(store, settings):
    class BrokenStore:
        async def get(self, authorization, tenant_id=""):
            raise RuntimeError("boom")

    upstream = FakeUpstream()
    gateway = BidGateway(BrokenStore(), BidProxy(transport=upstream.transport), RoutingConfig(), settings)
    body = await gateway.best_effort_bid(API_KEY, BID_BODY, [])
    assert body["filled"] is False
    assert body["reasonCode"] == "INTERNAL_ERROR"
