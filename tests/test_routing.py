"""Unit tests for runtime route resolution."""
import pytest

from conftest import API_KEY, CUSTOMER_RUNTIME, MANAGED_RUNTIME, make_settings
from mediation_edge.models.runtime_binding import RuntimeBinding
from mediation_edge.services.binding_store import hash_api_key
from mediation_edge.services.failures import MANAGED_RUNTIME_NOT_CONFIGURED
from mediation_edge.services.routing import (
    RUNTIME_SOURCE_CUSTOMER,
    RUNTIME_SOURCE_MANAGED_DEFAULT,
    RUNTIME_SOURCE_MANAGED_FALLBACK,
    RouteDecision,
    RouteFailure,
    RoutingConfig,
    resolve_route,
)

CONFIG = RoutingConfig(managed_fallback_base_url=MANAGED_RUNTIME, managed_default_base_url=MANAGED_RUNTIME)


def _binding(status: str, **extra) -> RuntimeBinding:
    return RuntimeBinding(
        key_hash=hash_api_key(API_KEY),
        tenant_id="tenant_x",
        runtime_base_url=CUSTOMER_RUNTIME,
        bind_status=status,
        **extra,
    )


def test_verified_binding_routes_to_customer():
    route = resolve_route(_binding("verified", verified_at="2026-01-01T00:00:00.000Z"), CONFIG)
    assert isinstance(route, RouteDecision)
    assert route.runtime_source == RUNTIME_SOURCE_CUSTOMER
    assert route.bid_url == "https://runtime.customer.org/api/v2/bid"
    assert route.is_managed is False


@pytest.mark.parametrize("status", ["pending", "failed"])
def test_unverified_binding_uses_managed_fallback(status):
    route = resolve_route(_binding(status), CONFIG)
    assert route.runtime_source == RUNTIME_SOURCE_MANAGED_FALLBACK
    assert route.runtime_base_url == MANAGED_RUNTIME
    assert route.bind_status == status
    assert route.customer_runtime_base_url == CUSTOMER_RUNTIME


def test_disabled_fallback_is_a_routing_failure():
    config = RoutingConfig(managed_fallback_base_url=MANAGED_RUNTIME, fallback_disabled=True)
    route = resolve_route(_binding("pending"), config)
    assert isinstance(route, RouteFailure)
    assert route.code == MANAGED_RUNTIME_NOT_CONFIGURED
    assert route.bind_status == "pending"
    assert route.next_actions


def test_no_binding_uses_managed_default():
    route = resolve_route(None, CONFIG)
    assert route.runtime_source == RUNTIME_SOURCE_MANAGED_DEFAULT
    assert route.bind_status == "unbound"


def test_no_binding_and_nothing_configured():
    route = resolve_route(None, RoutingConfig())
    assert isinstance(route, RouteFailure)
    assert route.bind_status == "unbound"
    assert route.code == MANAGED_RUNTIME_NOT_CONFIGURED


def test_config_from_settings_strips_api_suffix():
    config = RoutingConfig.from_settings(make_settings(MANAGED_RUNTIME_BASE_URL="https://managed.mediation.dev/api/"))
    assert config.managed_fallback_base_url == MANAGED_RUNTIME
    assert config.managed_default_base_url == MANAGED_RUNTIME


def test_managed_default_falls_back_to_runtime_api_then_control_plane():
    config = RoutingConfig.from_settings(make_settings(
        RUNTIME_API_BASE_URL="https://runtime-api.mediation.dev",
        CONTROL_PLANE_API_BASE_URL="https://cp.mediation.dev",
    ))
    assert config.managed_fallback_base_url == ""
    assert config.managed_default_base_url == "https://runtime-api.mediation.dev"

    config = RoutingConfig.from_settings(make_settings(CONTROL_PLANE_API_BASE_URL="https://cp.mediation.dev\\n"))
    assert config.managed_default_base_url == "https://cp.mediation.dev"
