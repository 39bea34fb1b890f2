"""
Runtime routing decision.

``resolve_route`` is pure: given a binding (or None) and the routing config it
returns where a live bid goes, without any I/O.

Precedence:
  1. verified binding with a runtime URL   → customer
  2. any other binding                     → managed_fallback (if configured and enabled)
  3. no binding                            → managed_default (if configured)
  otherwise                                → MANAGED_RUNTIME_NOT_CONFIGURED
"""

from dataclasses import dataclass
from typing import List, Optional, Union

from mediation_edge.config import Settings
from mediation_edge.models.runtime_binding import BIND_STATUS_UNBOUND, RuntimeBinding
from mediation_edge.services.failures import MANAGED_RUNTIME_NOT_CONFIGURED, next_actions_for
from mediation_edge.services.upstream import (
    normalize_upstream_base_url,
    resolve_runtime_api_base_url,
    strip_api_suffix,
)

RUNTIME_SOURCE_CUSTOMER = "customer"
RUNTIME_SOURCE_MANAGED_FALLBACK = "managed_fallback"
RUNTIME_SOURCE_MANAGED_DEFAULT = "managed_default"

RUNTIME_SOURCE_HEADER = "X-Mediation-Runtime-Source"


@dataclass(frozen=True)
class RoutingConfig:
    managed_fallback_base_url: str = ""      # origin, no /api
    managed_default_base_url: str = ""       # origin, no /api
    fallback_disabled: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoutingConfig":
        managed = strip_api_suffix(normalize_upstream_base_url(settings.MANAGED_RUNTIME_BASE_URL))
        default = managed or strip_api_suffix(resolve_runtime_api_base_url(settings))
        return cls(
            managed_fallback_base_url=managed,
            managed_default_base_url=default,
            fallback_disabled=settings.MANAGED_RUNTIME_FALLBACK_DISABLED,
        )


@dataclass(frozen=True)
class RouteDecision:
    runtime_source: str
    runtime_base_url: str
    bind_status: str
    customer_runtime_base_url: str = ""

    @property
    def is_managed(self) -> bool:
        return self.runtime_source != RUNTIME_SOURCE_CUSTOMER

    @property
    def bid_url(self) -> str:
        return f"{self.runtime_base_url.rstrip('/')}/api/v2/bid"


@dataclass(frozen=True)
class RouteFailure:
    bind_status: str
    code: str = MANAGED_RUNTIME_NOT_CONFIGURED
    message: str = ""

    @property
    def next_actions(self) -> List[str]:
        return next_actions_for(self.code)


def resolve_route(binding: Optional[RuntimeBinding], config: RoutingConfig) -> Union[RouteDecision, RouteFailure]:
    if binding is not None and binding.is_verified:
        return RouteDecision(
            runtime_source=RUNTIME_SOURCE_CUSTOMER,
            runtime_base_url=binding.runtime_base_url,
            bind_status=binding.bind_status,
            customer_runtime_base_url=binding.runtime_base_url,
        )

    if binding is not None:
        if config.managed_fallback_base_url and not config.fallback_disabled:
            return RouteDecision(
                runtime_source=RUNTIME_SOURCE_MANAGED_FALLBACK,
                runtime_base_url=config.managed_fallback_base_url,
                bind_status=binding.bind_status,
                customer_runtime_base_url=binding.runtime_base_url,
            )
        return RouteFailure(
            bind_status=binding.bind_status,
            message=(
                f"Runtime domain is {binding.bind_status} and no managed fallback runtime is available. "
                "Finish runtime verification or configure a managed runtime."
            ),
        )

    if config.managed_default_base_url:
        return RouteDecision(
            runtime_source=RUNTIME_SOURCE_MANAGED_DEFAULT,
            runtime_base_url=config.managed_default_base_url,
            bind_status=BIND_STATUS_UNBOUND,
        )
    return RouteFailure(
        bind_status=BIND_STATUS_UNBOUND,
        message="No runtime domain is bound to this API key and no managed runtime is configured.",
    )
