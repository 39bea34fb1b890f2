"""Pytest configuration and fakes shared by the test suite."""
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from mediation_edge.config import Settings
from mediation_edge.services.binding_store import BindingStore, InMemoryBindingCache
from mediation_edge.services.control_plane_client import ControlPlaneClient
from mediation_edge.services.probes import BidProber
from mediation_edge.services.verification import RuntimeVerifier

API_KEY = "Bearer sk_test_runtime_key"
GATEWAY = "gw.mediation.dev"
CUSTOMER_DOMAIN = "runtime.customer.org"
CUSTOMER_RUNTIME = f"https://{CUSTOMER_DOMAIN}"
MANAGED_RUNTIME = "https://managed.mediation.dev"


def make_settings(**overrides) -> Settings:
    values: Dict[str, Any] = {
        "RUNTIME_GATEWAY_HOSTNAME": GATEWAY,
        "TLS_TIMEOUT_SECONDS": 1.0,
        "BINDING_STORE_TIMEOUT_SECONDS": 1.0,
        "UPSTREAM_TIMEOUT_SECONDS": 1.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_store(control_plane: Optional[ControlPlaneClient] = None) -> BindingStore:
    """Store with no reachable control plane unless one is given."""
    return BindingStore(
        control_plane or ControlPlaneClient(""),
        cache=InMemoryBindingCache(ttl=30),
        remote_timeout=1.0,
    )


class FakeDnsResolver:
    """Answers from a fixed ``{rdtype: [values]}`` table; missing types raise."""

    def __init__(self, records: Optional[Dict[str, List[str]]] = None):
        self.records = records if records is not None else {"A": ["203.0.113.10"], "CNAME": [GATEWAY]}
        self.calls: List[Tuple[str, str]] = []

    async def resolve(self, hostname: str, rdtype: str) -> List[str]:
        self.calls.append((hostname, rdtype))
        if rdtype not in self.records:
            raise LookupError(f"no {rdtype} record for {hostname}")
        return list(self.records[rdtype])


class FakeTlsDialer:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[Tuple[str, int]] = []

    async def handshake(self, hostname: str, port: int) -> None:
        self.calls.append((hostname, port))
        if self.error is not None:
            raise self.error


class FakeUpstream:
    """
    httpx ``MockTransport`` wrapper recording every outbound request.

    ``handler`` may return an ``httpx.Response`` or raise an ``httpx`` error.
    """

    def __init__(self, handler: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.handler = handler or json_reply({"landingUrl": "https://ads.example/x"})
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


def json_reply(payload: Any, status: int = 200, headers: Optional[Dict[str, str]] = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload, headers=headers)
    return handler


def network_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def timeout_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("runtime too slow", request=request)


# --- Per-test fixtures ---

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> BindingStore:
    return make_store()


@pytest.fixture
def dns_resolver() -> FakeDnsResolver:
    return FakeDnsResolver()


@pytest.fixture
def tls_dialer() -> FakeTlsDialer:
    return FakeTlsDialer()


@pytest.fixture
def runtime() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def verifier(store, dns_resolver, tls_dialer, runtime, settings) -> RuntimeVerifier:
    return RuntimeVerifier(
        store=store,
        dns_resolver=dns_resolver,
        tls_dialer=tls_dialer,
        prober=BidProber(transport=runtime.transport, timeout=1.0),
        settings=settings,
    )


@pytest.fixture
async def app():
    from mediation_edge.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """ASGI client; tests install their own ``dependency_overrides`` on ``app``."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
