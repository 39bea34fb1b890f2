"""
Live bid proxy.

``BidProxy`` forwards one bid to a resolved runtime and normalizes the answer.
``BidGateway`` ties binding lookup, routing and the proxy together for the two
public bid endpoints:

  - ``live_bid``        (/v2/bid)  real HTTP errors for caller-integration problems
  - ``best_effort_bid`` (/ad/bid)  never fails; degrades to a ``filled: false`` body
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

from mediation_edge.config import Settings
from mediation_edge.logging_config import current_request_id, tenant_id_ctx
from mediation_edge.middleware.metrics import record_bid_route
from mediation_edge.services.bid_payload import normalize_bid_payload
from mediation_edge.services.binding_store import (
    BindingStore,
    derive_tenant_id,
    hash_api_key,
    normalize_authorization,
)
from mediation_edge.services.failures import (
    API_KEY_REQUIRED,
    BID_INVALID_RESPONSE,
    MANAGED_RUNTIME_UNAVAILABLE,
    NETWORK_BLOCKED,
    NO_FILL,
    PROXY_UPSTREAM_TIMEOUT,
    Failure,
)
from mediation_edge.services.probes import classify_http_status
from mediation_edge.services.routing import RouteDecision, RouteFailure, RoutingConfig, resolve_route
from mediation_edge.services.upstream import filter_request_headers

logger = logging.getLogger("mediation.bid_proxy")

INTERNAL_ERROR = "INTERNAL_ERROR"
DEFAULT_NO_FILL_ACTION = "No ad matched this request; continue without an ad."


@dataclass
class ProxyResult:
    status_code: int
    runtime_source: str = ""
    body: Any = None                 # JSON-serializable body
    raw: Optional[bytes] = None      # non-JSON passthrough
    media_type: str = "application/json"
    failure: Optional[Failure] = None
    landing_url: str = ""


def no_fill_body(reason_code: str, next_action: str = "", runtime_source: str = "", **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "filled": False,
        "reasonCode": reason_code,
        "nextAction": next_action or DEFAULT_NO_FILL_ACTION,
        "requestId": current_request_id(),
    }
    if runtime_source:
        body["runtimeSource"] = runtime_source
    body.update(extra)
    return body


def _failure_result(failure: Failure, runtime_source: str = "", **extra) -> ProxyResult:
    if runtime_source:
        extra["runtimeSource"] = runtime_source
    return ProxyResult(
        status_code=failure.status_code,
        runtime_source=runtime_source,
        body=failure.to_error_body(**extra),
        failure=failure,
    )


class BidProxy:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 10.0):
        self._transport = transport
        self.timeout = timeout

    async def forward(
        self,
        route: RouteDecision,
        body: bytes,
        headers: Iterable[Tuple[str, str]],
        authorization: str,
    ) -> ProxyResult:
        source = route.runtime_source
        upstream_headers = filter_request_headers(headers, authorization=authorization)
        upstream_headers.setdefault("content-type", "application/json")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            ) as client:
                response = await client.post(route.bid_url, content=body, headers=upstream_headers)
        except httpx.TimeoutException:
            logger.warning("Bid upstream %s timed out (%s)", route.bid_url, source)
            return _failure_result(
                Failure(PROXY_UPSTREAM_TIMEOUT, f"runtime did not answer within {self.timeout:g}s"), source
            )
        except httpx.HTTPError as e:
            code = MANAGED_RUNTIME_UNAVAILABLE if route.is_managed else NETWORK_BLOCKED
            logger.warning("Bid upstream %s unreachable (%s): %s", route.bid_url, source, e)
            return _failure_result(Failure(code, f"{e.__class__.__name__}: {e}"), source)

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            return ProxyResult(
                status_code=response.status_code,
                runtime_source=source,
                raw=response.content,
                media_type=content_type or "application/octet-stream",
            )

        try:
            payload = response.json()
        except ValueError:
            return _failure_result(Failure(BID_INVALID_RESPONSE, "runtime sent malformed JSON"), source)

        if not response.is_success:
            return ProxyResult(status_code=response.status_code, runtime_source=source, body=payload)
        if not isinstance(payload, dict):
            return _failure_result(Failure(BID_INVALID_RESPONSE, "runtime bid is not a JSON object"), source)

        if payload.get("filled") is False:
            return ProxyResult(
                status_code=200,
                runtime_source=source,
                body=dict(no_fill_body(
                    str(payload.get("reasonCode") or NO_FILL),
                    str(payload.get("nextAction") or ""),
                    source,
                ), **{k: v for k, v in payload.items() if k not in ("reasonCode", "nextAction", "filled")}),
            )

        normalized, landing_url = normalize_bid_payload(payload)
        if not landing_url:
            return _failure_result(Failure(BID_INVALID_RESPONSE, "runtime bid has no landing URL"), source)
        return ProxyResult(
            status_code=response.status_code,
            runtime_source=source,
            body=normalized,
            landing_url=landing_url,
        )


class BidGateway:
    def __init__(self, store: BindingStore, proxy: BidProxy, routing: RoutingConfig, settings: Settings):
        self.store = store
        self.proxy = proxy
        self.routing = routing
        self.settings = settings

    async def route_for(self, authorization: str):
        """``(binding, RouteDecision | RouteFailure)`` for an already-normalized key."""
        tenant_id = derive_tenant_id(hash_api_key(authorization), self.settings.TENANT_ID_EPOCH)
        tenant_id_ctx.set(tenant_id)
        binding = await self.store.get(authorization, tenant_id)
        return binding, resolve_route(binding, self.routing)

    async def live_bid(
        self,
        authorization: Optional[str],
        body: bytes,
        headers: Iterable[Tuple[str, str]],
    ) -> ProxyResult:
        auth = normalize_authorization(authorization)
        if not auth:
            return _failure_result(Failure(API_KEY_REQUIRED, "Authorization: Bearer <api key> is required"))

        _, route = await self.route_for(auth)
        if isinstance(route, RouteFailure):
            return _failure_result(Failure(route.code, route.message), bindStatus=route.bind_status)

        record_bid_route(route.runtime_source)
        return await self.proxy.forward(route, body, headers, auth)

    async def best_effort_bid(
        self,
        authorization: Optional[str],
        body: bytes,
        headers: Iterable[Tuple[str, str]],
    ) -> Dict[str, Any]:
        """Bid that can only ever produce a filled or a no-fill body."""
        auth = normalize_authorization(authorization)
        if not auth:
            return no_fill_body(API_KEY_REQUIRED, "Send the API key as 'Authorization: Bearer <key>'.")

        source = ""
        try:
            _, route = await self.route_for(auth)
            if isinstance(route, RouteFailure):
                return no_fill_body(route.code, route.next_actions[0], bindStatus=route.bind_status)

            source = route.runtime_source
            record_bid_route(source)
            result = await self.proxy.forward(route, body, headers, auth)
        except Exception:
            logger.exception("Best-effort bid failed unexpectedly")
            return no_fill_body(INTERNAL_ERROR, "Ad service hit an internal error; continue without an ad.", source)

        if result.failure is not None:
            return no_fill_body(result.failure.code, result.failure.next_actions[0], source)
        if result.raw is not None or not isinstance(result.body, dict):
            return no_fill_body(BID_INVALID_RESPONSE, "Runtime returned a non-JSON bid.", source)
        if not 200 <= result.status_code < 300:
            code = classify_http_status(result.status_code) or BID_INVALID_RESPONSE
            return no_fill_body(code, Failure(code).next_actions[0], source)
        if result.body.get("filled") is False:
            return result.body
        return dict(result.body, filled=True, landingUrl=result.landing_url, runtimeSource=source)
