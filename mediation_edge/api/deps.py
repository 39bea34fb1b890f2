"""
Service providers for FastAPI ``Depends``.

Each provider builds its service once per process from ``settings``; tests
swap them through ``app.dependency_overrides``.
"""
from functools import lru_cache

from mediation_edge.config import settings
from mediation_edge.services.binding_store import (
    BindingCache,
    BindingStore,
    InMemoryBindingCache,
    RedisBindingCache,
)
from mediation_edge.services.bid_proxy import BidGateway, BidProxy
from mediation_edge.services.control_plane_client import ControlPlaneClient
from mediation_edge.services.passthrough import ControlPlanePassthrough
from mediation_edge.services.request_enrichment import EnrichmentDefaults
from mediation_edge.services.probes import BidProber, DnspythonResolver, SslTlsDialer
from mediation_edge.services.routing import RoutingConfig
from mediation_edge.services.upstream import resolve_control_plane_base_url
from mediation_edge.services.verification import RuntimeVerifier


def _binding_cache() -> BindingCache:
    if settings.BINDING_CACHE_REDIS_URL:
        return RedisBindingCache(settings.BINDING_CACHE_REDIS_URL, ttl=settings.BINDING_CACHE_TTL_SECONDS)
    return InMemoryBindingCache(
        ttl=settings.BINDING_CACHE_TTL_SECONDS,
        maxsize=settings.BINDING_CACHE_MAX_ENTRIES,
    )


@lru_cache
def get_binding_store() -> BindingStore:
    client = ControlPlaneClient(
        resolve_control_plane_base_url(settings),
        timeout=settings.BINDING_STORE_TIMEOUT_SECONDS,
    )
    return BindingStore(client, cache=_binding_cache(), remote_timeout=settings.BINDING_STORE_TIMEOUT_SECONDS)


@lru_cache
def get_verifier() -> RuntimeVerifier:
    return RuntimeVerifier(
        store=get_binding_store(),
        dns_resolver=DnspythonResolver(lifetime=settings.TLS_TIMEOUT_SECONDS / 2),
        tls_dialer=SslTlsDialer(),
        prober=BidProber(timeout=settings.UPSTREAM_TIMEOUT_SECONDS),
        settings=settings,
    )


@lru_cache
def get_bid_gateway() -> BidGateway:
    return BidGateway(
        store=get_binding_store(),
        proxy=BidProxy(timeout=settings.UPSTREAM_TIMEOUT_SECONDS),
        routing=RoutingConfig.from_settings(settings),
        settings=settings,
    )


@lru_cache
def get_passthrough() -> ControlPlanePassthrough:
    return ControlPlanePassthrough(
        resolve_control_plane_base_url(settings),
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        defaults=EnrichmentDefaults(
            environment=settings.DEFAULT_ENVIRONMENT,
            key_name=settings.DEFAULT_KEY_NAME,
        ),
    )
