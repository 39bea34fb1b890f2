"""
Runtime failure taxonomy.

Every verification, probe, routing and proxy failure is described by one
``Failure`` value: a fine-grained ``code``, the HTTP status that code maps to on
the live path, the coarse ``legacy_code`` older dashboard clients understand,
and a free-text ``detail``. ``ProbeError`` is the single exception that carries
a ``Failure`` out of the probe primitives.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

# ── Verification / probe codes ──
DNS_ENOTFOUND = "DNS_ENOTFOUND"
CNAME_MISMATCH = "CNAME_MISMATCH"
TLS_INVALID = "TLS_INVALID"
AUTH_401_403 = "AUTH_401_403"
ENDPOINT_404 = "ENDPOINT_404"
METHOD_405 = "METHOD_405"
UPSTREAM_5XX = "UPSTREAM_5XX"
EGRESS_BLOCKED = "EGRESS_BLOCKED"
CORS_BLOCKED = "CORS_BLOCKED"
BID_INVALID_RESPONSE_JSON = "BID_INVALID_RESPONSE_JSON"
LANDING_URL_MISSING = "LANDING_URL_MISSING"
PROBE_HEADERS_INVALID = "PROBE_HEADERS_INVALID"
RUNTIME_DOMAIN_NOT_BOUND = "RUNTIME_DOMAIN_NOT_BOUND"

# ── Routing / proxy codes ──
MANAGED_RUNTIME_NOT_CONFIGURED = "MANAGED_RUNTIME_NOT_CONFIGURED"
MANAGED_RUNTIME_UNAVAILABLE = "MANAGED_RUNTIME_UNAVAILABLE"
RUNTIME_ROUTE_UNAVAILABLE = "RUNTIME_ROUTE_UNAVAILABLE"
API_KEY_REQUIRED = "API_KEY_REQUIRED"
PROXY_UPSTREAM_TIMEOUT = "PROXY_UPSTREAM_TIMEOUT"
PROXY_UPSTREAM_FETCH_FAILED = "PROXY_UPSTREAM_FETCH_FAILED"
PROXY_TARGET_NOT_CONFIGURED = "PROXY_TARGET_NOT_CONFIGURED"

# ── Legacy (coarse) codes ──
NETWORK_BLOCKED = "NETWORK_BLOCKED"
AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
BID_INVALID_RESPONSE = "BID_INVALID_RESPONSE"

VERIFIED = "VERIFIED"
NO_FILL = "NO_FILL"

LEGACY_CODES: Dict[str, str] = {
    AUTH_401_403: AUTH_FORBIDDEN,
    EGRESS_BLOCKED: NETWORK_BLOCKED,
    CORS_BLOCKED: NETWORK_BLOCKED,
    UPSTREAM_5XX: NETWORK_BLOCKED,
    ENDPOINT_404: BID_INVALID_RESPONSE,
    METHOD_405: BID_INVALID_RESPONSE,
    BID_INVALID_RESPONSE_JSON: BID_INVALID_RESPONSE,
    LANDING_URL_MISSING: BID_INVALID_RESPONSE,
}

_HTTP_STATUS: Dict[str, int] = {
    API_KEY_REQUIRED: 401,
    AUTH_401_403: 401,
    MANAGED_RUNTIME_NOT_CONFIGURED: 503,
    RUNTIME_ROUTE_UNAVAILABLE: 503,
    MANAGED_RUNTIME_UNAVAILABLE: 503,
    NETWORK_BLOCKED: 502,
    BID_INVALID_RESPONSE: 502,
    PROXY_UPSTREAM_FETCH_FAILED: 502,
    PROXY_UPSTREAM_TIMEOUT: 504,
    PROXY_TARGET_NOT_CONFIGURED: 500,
}

NEXT_ACTIONS: Dict[str, List[str]] = {
    DNS_ENOTFOUND: [
        "Create an A/AAAA or CNAME record for the runtime domain and wait for DNS propagation.",
    ],
    CNAME_MISMATCH: [
        "Use a public HTTPS domain you control (no localhost, private IPs or example domains).",
        "Point the domain's CNAME at the runtime gateway hostname.",
    ],
    TLS_INVALID: [
        "Install a valid certificate for the runtime domain that covers the exact hostname.",
        "Make sure port 443 is open and serves the full certificate chain.",
    ],
    AUTH_401_403: [
        "Send the API key as 'Authorization: Bearer <key>'.",
        "Allow this API key on the runtime, or add the runtime's own auth header to probeHeaders.",
    ],
    ENDPOINT_404: [
        "Expose POST /api/v2/bid on the runtime domain.",
    ],
    METHOD_405: [
        "Allow the POST method on /api/v2/bid.",
    ],
    UPSTREAM_5XX: [
        "Check the runtime's logs; it returned a server error for the probe bid.",
    ],
    EGRESS_BLOCKED: [
        "Allow inbound traffic from the edge proxy (firewall, WAF or bot protection).",
        "Confirm the runtime answers POST /api/v2/bid from outside your network.",
    ],
    CORS_BLOCKED: [
        "Allow the dashboard origin in the runtime's CORS policy.",
    ],
    BID_INVALID_RESPONSE_JSON: [
        "Return a JSON object from /api/v2/bid with Content-Type application/json.",
    ],
    LANDING_URL_MISSING: [
        "Include a landingUrl (or url/link/clickUrl) field in the bid response.",
    ],
    PROBE_HEADERS_INVALID: [
        "Send at most 2 probe headers named 'authorization' or prefixed with 'x-' / 'cf-'.",
        "Keep probe header names and values short and free of line breaks.",
    ],
    RUNTIME_DOMAIN_NOT_BOUND: [
        "Run verify-and-bind with your runtime domain first.",
    ],
    MANAGED_RUNTIME_NOT_CONFIGURED: [
        "Verify a runtime domain for this API key, or ask the operator to configure a managed runtime.",
    ],
    MANAGED_RUNTIME_UNAVAILABLE: [
        "The managed runtime did not answer; retry shortly.",
    ],
    NETWORK_BLOCKED: [
        "The runtime could not be reached from the edge proxy; re-run the runtime probe.",
    ],
    BID_INVALID_RESPONSE: [
        "Return a JSON bid containing a landingUrl from the runtime.",
    ],
    API_KEY_REQUIRED: [
        "Send the API key as 'Authorization: Bearer <key>'.",
    ],
    PROXY_UPSTREAM_TIMEOUT: [
        "The upstream did not answer in time; retry the request.",
    ],
}

DEFAULT_NEXT_ACTIONS = ["Re-run the runtime probe and contact support if the problem persists."]


def legacy_code_for(code: str) -> str:
    return LEGACY_CODES.get(code, code)


def next_actions_for(code: Optional[str]) -> List[str]:
    if not code:
        return []
    return list(NEXT_ACTIONS.get(code, DEFAULT_NEXT_ACTIONS))


@dataclass(frozen=True)
class Failure:
    """Tagged failure value shared by probes, routing and the proxy."""

    code: str
    detail: str = ""
    http_status: Optional[int] = None
    legacy_code: str = ""

    def __post_init__(self):
        if not self.legacy_code:
            object.__setattr__(self, "legacy_code", legacy_code_for(self.code))

    @property
    def status_code(self) -> int:
        """HTTP status used when this failure ends a live request."""
        return _HTTP_STATUS.get(self.code, 502)

    @property
    def next_actions(self) -> List[str]:
        return next_actions_for(self.code)

    def codes(self) -> Dict[str, str]:
        """``failureCode`` plus ``legacyCode`` when the two differ."""
        out = {"failureCode": self.code}
        if self.legacy_code != self.code:
            out["legacyCode"] = self.legacy_code
        return out

    def to_error_body(self, message: str = "", **extra) -> dict:
        error = {
            "code": self.code,
            "message": message or self.detail or self.code,
            "nextActions": self.next_actions,
        }
        if self.legacy_code != self.code:
            error["legacyCode"] = self.legacy_code
        error.update(extra)
        return {"error": error}


class ProbeError(Exception):
    """Raised by a probe primitive on hard failure; carries the ``Failure``."""

    def __init__(self, code: str, detail: str = "", http_status: Optional[int] = None):
        self.failure = Failure(code=code, detail=detail, http_status=http_status)
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def code(self) -> str:
        return self.failure.code
