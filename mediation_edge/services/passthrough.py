"""
Forwarding of dashboard API calls to the control plane.

Bodies pass through byte-for-byte except for the few dashboard POSTs that
``request_enrichment`` fills in.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import httpx

from mediation_edge.services.failures import (
    PROXY_TARGET_NOT_CONFIGURED,
    PROXY_UPSTREAM_FETCH_FAILED,
    PROXY_UPSTREAM_TIMEOUT,
    Failure,
)
from mediation_edge.services.request_enrichment import EnrichmentDefaults, enrich_request
from mediation_edge.services.upstream import (
    build_upstream_url,
    filter_request_headers,
    filter_response_headers,
    rewrite_proxy_query_path,
)

logger = logging.getLogger("mediation.passthrough")

_BODYLESS_METHODS = ("GET", "HEAD")


@dataclass
class PassthroughResult:
    status_code: int
    content: bytes = b""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    failure: Optional[Failure] = None


class ControlPlanePassthrough:
    def __init__(
        self,
        api_base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        defaults: Optional[EnrichmentDefaults] = None,
    ):
        self.api_base_url = api_base_url
        self._transport = transport
        self.timeout = timeout
        self.defaults = defaults or EnrichmentDefaults()

    async def forward(
        self,
        method: str,
        path: str,
        query: str,
        headers: Iterable[Tuple[str, str]],
        body: bytes = b"",
    ) -> PassthroughResult:
        if not self.api_base_url:
            failure = Failure(
                PROXY_TARGET_NOT_CONFIGURED,
                "Set MEDIATION_CONTROL_PLANE_API_BASE_URL (or MEDIATION_CONTROL_PLANE_API_PROXY_TARGET) "
                "to your control-plane API origin.",
            )
            return PassthroughResult(status_code=failure.status_code, failure=failure)

        method = method.upper()
        path, query = rewrite_proxy_query_path(path, query)
        url = build_upstream_url(self.api_base_url, path, query)
        forward_headers = filter_request_headers(headers)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            ) as client:
                forward_headers, body = await enrich_request(
                    client, self.api_base_url, method, path, forward_headers, body, self.defaults
                )
                response = await client.request(
                    method,
                    url,
                    headers=forward_headers,
                    content=None if method in _BODYLESS_METHODS else (body or None),
                )
        except httpx.TimeoutException:
            logger.warning("Control plane timed out for %s %s", method, path)
            failure = Failure(PROXY_UPSTREAM_TIMEOUT, "Upstream API request timed out.")
            return PassthroughResult(status_code=502, failure=failure)
        except httpx.HTTPError as e:
            logger.warning("Control plane unreachable for %s %s: %s", method, path, e)
            failure = Failure(PROXY_UPSTREAM_FETCH_FAILED, "Failed to reach upstream API.")
            return PassthroughResult(status_code=502, failure=failure)

        return PassthroughResult(
            status_code=response.status_code,
            content=response.content,
            headers=filter_response_headers(response.headers.multi_items()),
        )
