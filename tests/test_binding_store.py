"""Unit tests for the binding store, its caches and the control-plane client."""
import asyncio
import json

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import API_KEY, CUSTOMER_RUNTIME, FakeUpstream, json_reply, make_store, network_error
from mediation_edge.models.runtime_binding import (
    BIND_STATUS_PENDING,
    BIND_STATUS_VERIFIED,
    RuntimeBinding,
)
from mediation_edge.services.binding_store import (
    InMemoryBindingCache,
    RedisBindingCache,
    derive_tenant_id,
    extract_api_key,
    hash_api_key,
    normalize_authorization,
)
from mediation_edge.services.control_plane_client import ControlPlaneClient

CONTROL_PLANE = "https://cp.mediation.dev/api"


def _binding(**overrides) -> RuntimeBinding:
    values = dict(
        key_hash=hash_api_key(API_KEY),
        tenant_id=derive_tenant_id(hash_api_key(API_KEY)),
        runtime_base_url=CUSTOMER_RUNTIME,
        placement_id="chat_from_answer_v1",
        bind_status=BIND_STATUS_PENDING,
    )
    values.update(overrides)
    return RuntimeBinding(**values)


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.data = {}
        self.ttls = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("redis down")
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise RedisConnectionError("redis down")
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.data.pop(key, None)


# ── Key handling ──

def test_authorization_normalization():
    assert normalize_authorization("  bearer   sk_live_1 ") == "Bearer sk_live_1"
    assert normalize_authorization("sk_live_1") == "Bearer sk_live_1"
    assert normalize_authorization("Bearer ") == ""
    assert normalize_authorization(None) == ""
    assert extract_api_key("Bearer") == ""
    assert extract_api_key("  bearer  ") == ""
    assert extract_api_key("bearerish_key") == "bearerish_key"
    assert extract_api_key("BEARER sk_live_1") == "sk_live_1"


def test_key_hash_ignores_bearer_prefix():
    assert hash_api_key("Bearer sk_live_1") == hash_api_key("sk_live_1") == hash_api_key("bearer  sk_live_1 ")
    assert len(hash_api_key("sk_live_1")) == 64


def test_tenant_id_is_derived_from_hash():
    key_hash = hash_api_key("sk_live_1")
    assert derive_tenant_id(key_hash, "v2") == f"tenant_{key_hash[:16]}_v2"


# ── Model ──

def test_verified_binding_requires_timestamp():
    with pytest.raises(ValueError):
        _binding(bind_status=BIND_STATUS_VERIFIED)


def test_non_verified_binding_drops_verified_at():
    assert _binding(verified_at="2026-01-01T00:00:00.000Z").verified_at == ""


def test_evolve_keeps_key_hash_and_bumps_updated_at():
    binding = _binding(updated_at="2026-01-01T00:00:00.000Z")
    changed = binding.evolve(key_hash="other", last_probe_code="EGRESS_BLOCKED")
    assert changed.key_hash == binding.key_hash
    assert changed.last_probe_code == "EGRESS_BLOCKED"
    assert changed.updated_at != binding.updated_at


def test_from_dict_accepts_camel_and_snake_case():
    camel = _binding().to_dict()
    assert camel["runtimeBaseUrl"] == CUSTOMER_RUNTIME
    assert RuntimeBinding.from_dict(camel) == _binding()
    snake = {"key_hash": "abc", "tenant_id": "t", "bind_status": "failed", "last_probe_http_status": "404"}
    restored = RuntimeBinding.from_dict(snake)
    assert restored.bind_status == "failed"
    assert restored.last_probe_http_status == 404


# ── Caches ──

@pytest.mark.asyncio
async def test_in_memory_cache_set_get_delete():
    cache = InMemoryBindingCache(ttl=30)
    await cache.set("k", _binding())
    assert await cache.get("k") == _binding()
    await cache.delete("k")
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_redis_cache_stores_json_with_ttl():
    redis = FakeRedis()
    cache = RedisBindingCache(client=redis, ttl=30)
    await cache.set("abc", _binding())

    stored = json.loads(redis.data["mediation:binding:abc"])
    assert stored["runtimeBaseUrl"] == CUSTOMER_RUNTIME
    assert redis.ttls["mediation:binding:abc"] == 30
    assert await cache.get("abc") == _binding()


@pytest.mark.asyncio
async def test_redis_cache_errors_are_misses():
    cache = RedisBindingCache(client=FakeRedis(fail=True))
    await cache.set("abc", _binding())
    assert await cache.get("abc") is None


# ── Store ──

@pytest.mark.asyncio
async def test_save_then_get_without_control_plane():
    store = make_store()
    assert await store.get(API_KEY) is None

    saved = await store.save(API_KEY, _binding())
    assert saved == _binding()
    assert await store.get("bearer sk_test_runtime_key") == _binding()


@pytest.mark.asyncio
async def test_save_rejects_foreign_binding():
    with pytest.raises(ValueError):
        await make_store().save(API_KEY, _binding(key_hash="someone-else"))


@pytest.mark.asyncio
async def test_cache_is_keyed_by_hash_not_raw_key():
    store = make_store()
    await store.save(API_KEY, _binding())
    assert await store.cache.get(hash_api_key(API_KEY)) is not None
    assert await store.cache.get(API_KEY) is None


@pytest.mark.asyncio
async def test_remote_binding_wins_over_local_copy():
    remote = {
        "binding": {
            "keyHash": "ignored",
            "runtimeBaseUrl": CUSTOMER_RUNTIME,
            "bindStatus": "verified",
            "verifiedAt": "2026-01-01T00:00:00.000Z",
            "lastProbeCode": "VERIFIED",
        }
    }
    control_plane = FakeUpstream(json_reply(remote))
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))

    binding = await store.get(API_KEY, tenant_id="tenant_x")

    assert binding.bind_status == BIND_STATUS_VERIFIED
    assert binding.key_hash == hash_api_key(API_KEY)
    assert binding.tenant_id == "tenant_x"
    request = control_plane.requests[0]
    assert str(request.url) == "https://cp.mediation.dev/api/v1/public/runtime-domain/binding"
    assert request.headers["authorization"] == API_KEY


@pytest.mark.asyncio
async def test_remote_404_means_unbound():
    control_plane = FakeUpstream(json_reply({"error": "not found"}, status=404))
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))
    assert await store.get(API_KEY) is None


@pytest.mark.asyncio
async def test_remote_failure_degrades_to_local_copy():
    control_plane = FakeUpstream(json_reply({"binding": {}}))
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))
    await store.save(API_KEY, _binding())
    await store.cache.delete(hash_api_key(API_KEY))

    control_plane.handler = json_reply({"error": "boom"}, status=500)
    assert await store.get(API_KEY) == _binding()

    control_plane.handler = network_error
    assert await store.get(API_KEY) == _binding()


@pytest.mark.asyncio
async def test_connect_errors_are_retried_once():
    control_plane = FakeUpstream(network_error)
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))
    assert await store.get(API_KEY) is None
    assert len(control_plane.requests) == 2


@pytest.mark.asyncio
async def test_write_through_reconciles_echo():
    def echo(request: httpx.Request) -> httpx.Response:
        sent = json.loads(request.content)["binding"]
        return httpx.Response(200, json={"binding": dict(sent, keyHash="ignored", placementId="p_remote")})

    control_plane = FakeUpstream(echo)
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))

    saved = await store.save(API_KEY, _binding())

    assert control_plane.requests[0].method == "PUT"
    assert saved.placement_id == "p_remote"
    assert saved.key_hash == hash_api_key(API_KEY)
    assert (await store.get(API_KEY)).placement_id == "p_remote"


@pytest.mark.asyncio
async def test_failed_remote_write_keeps_local_snapshot():
    control_plane = FakeUpstream(json_reply({"error": "read only"}, status=503))
    store = make_store(ControlPlaneClient(CONTROL_PLANE, transport=control_plane.transport))

    saved = await store.save(API_KEY, _binding())

    assert saved == _binding()
    assert await store.get(API_KEY) == _binding()


class SlowCache(InMemoryBindingCache):
    """Cache whose writes take a while and record how many overlap."""

    def __init__(self, delay: float = 0.05):
        super().__init__(ttl=30)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def set(self, key_hash, binding):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            await super().set(key_hash, binding)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_cache_writes_for_different_keys_do_not_serialize():
    cache = SlowCache()
    store = make_store()
    store.cache = cache
    keys = [f"Bearer sk_live_{i}" for i in range(3)]

    saved = await asyncio.gather(*(
        store.save(key, _binding(key_hash=hash_api_key(key), placement_id=f"p_{i}"))
        for i, key in enumerate(keys)
    ))

    assert cache.max_active == 3
    assert [binding.placement_id for binding in saved] == ["p_0", "p_1", "p_2"]
    for i, key in enumerate(keys):
        assert (await store.get(key)).placement_id == f"p_{i}"


@pytest.mark.asyncio
async def test_concurrent_saves_across_keys_keep_each_snapshot_whole():
    store = make_store()
    store.cache = SlowCache(delay=0.01)
    first, second = "Bearer sk_live_a", "Bearer sk_live_b"
    snapshots = {
        first: [
            _binding(key_hash=hash_api_key(first), placement_id="a1", last_probe_code="EGRESS_BLOCKED"),
            _binding(
                key_hash=hash_api_key(first),
                placement_id="a2",
                bind_status=BIND_STATUS_VERIFIED,
                verified_at="2026-01-01T00:00:00.000Z",
                last_probe_code="VERIFIED",
            ),
        ],
        second: [
            _binding(key_hash=hash_api_key(second), placement_id="b1", last_probe_code="DNS_NOT_CONFIGURED"),
        ],
    }

    await asyncio.gather(*(
        store.save(key, binding) for key, bindings in snapshots.items() for binding in bindings
    ))

    assert await store.get(first) in snapshots[first]
    assert await store.get(second) == snapshots[second][0]
