"""
Runtime probe primitives.

Three independent, timeout-bounded checks against a customer runtime:

  1. DNS + CNAME  (``check_dns``)      → DNS_ENOTFOUND / CNAME_MISMATCH
  2. TLS handshake (``check_tls``)     → TLS_INVALID
  3. Bid probe    (``BidProber``)      → ENDPOINT_404 / METHOD_405 / AUTH_401_403 /
                                         UPSTREAM_5XX / EGRESS_BLOCKED /
                                         BID_INVALID_RESPONSE_JSON / LANDING_URL_MISSING

Network access goes through injected collaborators (``DnsResolver``,
``TlsDialer``, an ``httpx`` transport) so tests never touch the network.
Hard failures raise ``ProbeError``.
"""

import asyncio
import base64
import binascii
import json
import logging
import re
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import dns.asyncresolver
import httpx

from mediation_edge.services.bid_payload import normalize_bid_payload
from mediation_edge.services.failures import (
    AUTH_401_403,
    BID_INVALID_RESPONSE_JSON,
    CNAME_MISMATCH,
    CORS_BLOCKED,
    DNS_ENOTFOUND,
    EGRESS_BLOCKED,
    ENDPOINT_404,
    LANDING_URL_MISSING,
    METHOD_405,
    PROBE_HEADERS_INVALID,
    TLS_INVALID,
    UPSTREAM_5XX,
    VERIFIED,
    ProbeError,
)

logger = logging.getLogger("mediation.probe")

BID_PATH = "/api/v2/bid"
PROBE_USER_ID = "runtime_probe_user"
PROBE_CHAT_ID = "runtime_probe_chat"
PROBE_TRANSCRIPT = (
    {"role": "user", "content": "Which running shoes are good for a first marathon?"},
    {"role": "assistant", "content": "Look for cushioned trainers with a stable, roomy fit."},
)
_MAX_DETAIL_CHARS = 500

_HEADER_TOKEN_RE = re.compile(r"^[a-z0-9!#$%&'*+.^_`|~-]+$")
_ALLOWED_HEADER_PREFIXES = ("x-", "cf-")


# ═══════════════════════════════════════════
#  Probe result
# ═══════════════════════════════════════════

@dataclass(frozen=True)
class ProbeResult:
    source: str                      # server | browser
    ok: bool
    code: str
    http_status: Optional[int] = None
    detail: str = ""
    landing_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "ok": self.ok,
            "code": self.code,
            "httpStatus": self.http_status,
            "detail": self.detail,
            "landingUrl": self.landing_url,
        }

    @classmethod
    def from_error(cls, error: ProbeError, source: str = "server") -> "ProbeResult":
        return cls(
            source=source,
            ok=False,
            code=error.code,
            http_status=error.failure.http_status,
            detail=error.failure.detail,
        )

    @classmethod
    def from_client(cls, data: Any) -> Optional["ProbeResult"]:
        """Parse a browser-side probe result reported by the dashboard."""
        if not isinstance(data, dict):
            return None
        ok = data.get("ok") is True
        code = str(data.get("code") or "").strip().upper() or (VERIFIED if ok else CORS_BLOCKED)
        status = data.get("httpStatus")
        return cls(
            source="browser",
            ok=ok,
            code=code,
            http_status=status if isinstance(status, int) and not isinstance(status, bool) else None,
            detail=str(data.get("detail") or "")[:_MAX_DETAIL_CHARS],
            landing_url=str(data.get("landingUrl") or "").strip(),
        )


# ═══════════════════════════════════════════
#  DNS + CNAME
# ═══════════════════════════════════════════

class DnsResolver(Protocol):
    async def resolve(self, hostname: str, rdtype: str) -> List[str]:
        """Return record values (trailing dots stripped); raise on lookup failure."""


class DnspythonResolver:
    """``DnsResolver`` backed by dnspython's asyncio resolver."""

    def __init__(self, lifetime: float = 4.0):
        self.lifetime = lifetime
        self._resolver: Optional[dns.asyncresolver.Resolver] = None

    async def resolve(self, hostname: str, rdtype: str) -> List[str]:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.lifetime = self.lifetime
        answer = await self._resolver.resolve(hostname, rdtype)
        return [rdata.to_text().strip('"').rstrip(".").lower() for rdata in answer]


@dataclass
class DnsCheck:
    dns_ok: bool
    cname_ok: bool
    addresses: List[str] = field(default_factory=list)
    cname_targets: List[str] = field(default_factory=list)


async def _resolve_quietly(resolver: DnsResolver, hostname: str, rdtype: str) -> List[str]:
    try:
        return await resolver.resolve(hostname, rdtype)
    except Exception as e:
        logger.debug("DNS %s lookup for %s failed: %s", rdtype, hostname, e)
        return []


def cname_matches_gateway(target: str, gateway_hostname: str) -> bool:
    gateway = gateway_hostname.strip().lower().rstrip(".")
    target = target.strip().lower().rstrip(".")
    if not gateway or not target:
        return False
    return target == gateway or target.endswith("." + gateway)


async def _check_dns(
    hostname: str,
    resolver: DnsResolver,
    gateway_hostname: str,
    require_gateway_cname: bool,
) -> DnsCheck:
    a_records, aaaa_records, cname_targets = await asyncio.gather(
        _resolve_quietly(resolver, hostname, "A"),
        _resolve_quietly(resolver, hostname, "AAAA"),
        _resolve_quietly(resolver, hostname, "CNAME"),
    )
    addresses = a_records + aaaa_records
    if not addresses and not cname_targets:
        raise ProbeError(DNS_ENOTFOUND, f"{hostname} has no A, AAAA or CNAME record")

    cname_ok = any(cname_matches_gateway(t, gateway_hostname) for t in cname_targets)
    if require_gateway_cname and not cname_ok:
        raise ProbeError(
            CNAME_MISMATCH,
            f"{hostname} must CNAME to {gateway_hostname} (found: {', '.join(cname_targets) or 'none'})",
        )
    return DnsCheck(dns_ok=True, cname_ok=cname_ok, addresses=addresses, cname_targets=cname_targets)


async def check_dns(
    hostname: str,
    resolver: DnsResolver,
    gateway_hostname: str = "",
    require_gateway_cname: bool = False,
    timeout: float = 8.0,
) -> DnsCheck:
    """Resolve A/AAAA/CNAME for ``hostname``; a missing gateway CNAME is fatal only in strict mode."""
    try:
        return await asyncio.wait_for(
            _check_dns(hostname, resolver, gateway_hostname, require_gateway_cname),
            timeout,
        )
    except asyncio.TimeoutError:
        raise ProbeError(DNS_ENOTFOUND, f"DNS lookup for {hostname} timed out after {timeout:g}s")


# ═══════════════════════════════════════════
#  TLS
# ═══════════════════════════════════════════

class TlsDialer(Protocol):
    async def handshake(self, hostname: str, port: int) -> None:
        """Complete a verified TLS handshake with SNI=hostname; raise on failure."""


class SslTlsDialer:
    """``TlsDialer`` using asyncio streams and the system trust store."""

    async def handshake(self, hostname: str, port: int) -> None:
        context = ssl.create_default_context()
        _, writer = await asyncio.open_connection(
            hostname, port, ssl=context, server_hostname=hostname
        )
        writer.close()
        try:
            await writer.wait_closed()
        except (ssl.SSLError, OSError) as e:
            # Handshake already succeeded; a dirty close says nothing about the certificate.
            logger.debug("TLS close for %s reported: %s", hostname, e)


@dataclass
class TlsCheck:
    tls_ok: bool
    connect_ok: bool


async def check_tls(hostname: str, dialer: TlsDialer, timeout: float = 8.0, port: int = 443) -> TlsCheck:
    try:
        await asyncio.wait_for(dialer.handshake(hostname, port), timeout)
    except asyncio.TimeoutError:
        raise ProbeError(TLS_INVALID, f"TLS handshake with {hostname}:{port} timed out after {timeout:g}s")
    except Exception as e:
        raise ProbeError(TLS_INVALID, f"TLS handshake with {hostname}:{port} failed: {e}")
    return TlsCheck(tls_ok=True, connect_ok=True)


# ═══════════════════════════════════════════
#  Probe headers
# ═══════════════════════════════════════════

def sanitize_probe_headers(raw: Any, max_count: int = 2, max_bytes: int = 2048) -> Dict[str, str]:
    """
    Validate custom headers to replay on runtime probes.

    Allowed keys: ``authorization`` or anything prefixed ``x-`` / ``cf-``.
    At most ``max_count`` entries and ``max_bytes`` combined. Violations raise
    ``PROBE_HEADERS_INVALID`` before any network call.
    """
    if raw is None or raw == {}:
        return {}
    if not isinstance(raw, dict):
        raise ProbeError(PROBE_HEADERS_INVALID, "probeHeaders must be an object")
    if len(raw) > max_count:
        raise ProbeError(PROBE_HEADERS_INVALID, f"at most {max_count} probe headers are allowed")

    headers: Dict[str, str] = {}
    total_bytes = 0
    for raw_key, raw_value in raw.items():
        key = str(raw_key or "").strip().lower()
        if not key or not _HEADER_TOKEN_RE.match(key):
            raise ProbeError(PROBE_HEADERS_INVALID, f"invalid header name {raw_key!r}")
        if key != "authorization" and not key.startswith(_ALLOWED_HEADER_PREFIXES):
            raise ProbeError(
                PROBE_HEADERS_INVALID,
                f"header {key!r} is not allowed; use 'authorization' or an x-/cf- header",
            )
        if key in headers:
            raise ProbeError(PROBE_HEADERS_INVALID, f"duplicate header {key!r}")
        if not isinstance(raw_value, str):
            raise ProbeError(PROBE_HEADERS_INVALID, f"header {key!r} must have a string value")
        value = raw_value.strip()
        if not value or "\r" in value or "\n" in value:
            raise ProbeError(PROBE_HEADERS_INVALID, f"header {key!r} has an empty or multi-line value")
        total_bytes += len(f"{key}: {value}".encode("utf-8"))
        headers[key] = value

    if total_bytes > max_bytes:
        raise ProbeError(PROBE_HEADERS_INVALID, f"probe headers exceed {max_bytes} bytes")
    return headers


def encode_probe_headers(headers: Dict[str, str]) -> str:
    if not headers:
        return ""
    raw = json.dumps(headers, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_probe_headers(blob: str) -> Dict[str, str]:
    """Inverse of ``encode_probe_headers``; an unreadable blob yields no headers."""
    if not blob:
        return {}
    try:
        decoded = json.loads(base64.urlsafe_b64decode(blob.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError) as e:
        logger.warning("Stored probe headers are unreadable, ignoring them: %s", e)
        return {}
    if not isinstance(decoded, dict):
        return {}
    return {str(k): str(v) for k, v in decoded.items()}


# ═══════════════════════════════════════════
#  Bid probe
# ═══════════════════════════════════════════

def build_probe_payload(placement_id: str) -> Dict[str, Any]:
    return {
        "placementId": placement_id,
        "userId": PROBE_USER_ID,
        "chatId": PROBE_CHAT_ID,
        "messages": [dict(m) for m in PROBE_TRANSCRIPT],
    }


def classify_http_status(status: int) -> Optional[str]:
    """Failure code for a non-2xx probe response, None for 2xx."""
    if 200 <= status < 300:
        return None
    if status == 404:
        return ENDPOINT_404
    if status == 405:
        return METHOD_405
    if status in (401, 403):
        return AUTH_401_403
    if status >= 500:
        return UPSTREAM_5XX
    return EGRESS_BLOCKED


class BidProber:
    """Sends the synthetic bid to ``{runtime}/api/v2/bid`` and validates the reply."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self._transport = transport
        self.timeout = timeout

    async def probe(
        self,
        runtime_base_url: str,
        authorization: str,
        placement_id: str,
        probe_headers: Optional[Dict[str, str]] = None,
    ) -> ProbeResult:
        url = f"{runtime_base_url.rstrip('/')}{BID_PATH}"
        headers = httpx.Headers({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": authorization,
        })
        for key, value in (probe_headers or {}).items():
            headers[key] = value

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            ) as client:
                response = await client.post(url, json=build_probe_payload(placement_id), headers=headers)
        except httpx.TimeoutException:
            raise ProbeError(EGRESS_BLOCKED, f"bid probe to {url} timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise ProbeError(EGRESS_BLOCKED, f"bid probe to {url} failed: {e.__class__.__name__}: {e}")

        status = response.status_code
        code = classify_http_status(status)
        if code:
            raise ProbeError(code, f"runtime answered HTTP {status}", http_status=status)

        try:
            payload = response.json()
        except ValueError:
            raise ProbeError(BID_INVALID_RESPONSE_JSON, "bid response is not valid JSON", http_status=status)
        if not isinstance(payload, dict):
            raise ProbeError(BID_INVALID_RESPONSE_JSON, "bid response is not a JSON object", http_status=status)

        _, landing_url = normalize_bid_payload(payload)
        if not landing_url:
            raise ProbeError(LANDING_URL_MISSING, "bid response has no landing URL", http_status=status)

        return ProbeResult(
            source="server",
            ok=True,
            code=VERIFIED,
            http_status=status,
            detail="bid probe returned a landing URL",
            landing_url=landing_url,
        )
