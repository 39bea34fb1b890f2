"""Normalize a user-supplied runtime domain into a safe public HTTPS origin."""

import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

from mediation_edge.services.failures import CNAME_MISMATCH

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

# Placeholder / special-use names that can never host a customer runtime.
RESERVED_DOMAINS = (
    "example.com",
    "example.net",
    "example.org",
    "example",
    "invalid",
    "test",
    "localhost",
    "local",
)


@dataclass(frozen=True)
class NormalizedDomain:
    ok: bool
    hostname: str = ""
    runtime_base_url: str = ""
    failure_code: Optional[str] = None


def _rejected() -> NormalizedDomain:
    return NormalizedDomain(ok=False, failure_code=CNAME_MISMATCH)


def _is_reserved_name(hostname: str) -> bool:
    return any(
        hostname == reserved or hostname.endswith("." + reserved)
        for reserved in RESERVED_DOMAINS
    )


def _is_private_ip(hostname: str) -> Optional[bool]:
    """True/False for IP literals, None when ``hostname`` is a name."""
    try:
        addr = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_unspecified
        or addr.is_multicast
    )


def normalize_runtime_domain(raw: Any) -> NormalizedDomain:
    """
    Turn ``raw`` (bare host, host/path or full URL) into ``https://<host>``.

    Anything that is not a public https host fails with ``CNAME_MISMATCH``:
    other schemes, localhost, ``*.local``, private/loopback/link-local IPs and
    reserved placeholder domains.
    """
    value = str(raw or "").strip()
    if not value:
        return _rejected()
    if not _SCHEME_RE.match(value):
        value = f"https://{value}"

    try:
        parsed = urlsplit(value)
        port = parsed.port
    except ValueError:
        return _rejected()

    if parsed.scheme.lower() != "https":
        return _rejected()

    hostname = (parsed.hostname or "").strip().lower().rstrip(".")
    if not hostname:
        return _rejected()

    private = _is_private_ip(hostname)
    if private is True:
        return _rejected()
    if private is None:
        if "." not in hostname or _is_reserved_name(hostname):
            return _rejected()

    netloc = f"[{hostname}]" if ":" in hostname else hostname
    if port and port != 443:
        netloc = f"{netloc}:{port}"
    return NormalizedDomain(ok=True, hostname=hostname, runtime_base_url=f"https://{netloc}")
