"""Upstream URL and header helpers shared by every outbound proxy call."""

from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

from mediation_edge.config import Settings

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

BROWSER_ONLY_REQUEST_HEADERS = frozenset({
    "origin",
    "referer",
    "sec-fetch-dest",
    "sec-fetch-mode",
    "sec-fetch-site",
    "sec-fetch-user",
    "access-control-request-method",
    "access-control-request-headers",
})


def normalize_upstream_base_url(raw: Optional[str]) -> str:
    """
    ``https://cp.example.com`` → ``https://cp.example.com/api``.

    Keeps an existing ``/api`` suffix, appends it to any other path, drops
    query and fragment. Returns ``""`` for anything that is not http(s).
    """
    value = str(raw or "").strip()
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return ""
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return ""

    path = parsed.path.rstrip("/")
    if not path.endswith("/api"):
        path = f"{path}/api"
    return urlunsplit((parsed.scheme.lower(), parsed.netloc, path, "", ""))


def strip_api_suffix(api_base_url: str) -> str:
    return api_base_url[: -len("/api")] if api_base_url.endswith("/api") else api_base_url


def resolve_control_plane_base_url(settings: Settings) -> str:
    for candidate in (settings.CONTROL_PLANE_API_BASE_URL, settings.CONTROL_PLANE_API_PROXY_TARGET):
        normalized = normalize_upstream_base_url(candidate)
        if normalized:
            return normalized
    return ""


def resolve_runtime_api_base_url(settings: Settings) -> str:
    """Explicit runtime API override, falling back to the control plane."""
    return normalize_upstream_base_url(settings.RUNTIME_API_BASE_URL) or resolve_control_plane_base_url(settings)


def build_upstream_url(api_base_url: str, path: str, query: str = "") -> str:
    """Join ``/api``-relative ``path`` onto ``api_base_url``, keeping ``query``."""
    base = urlsplit(api_base_url)
    suffix = path if path.startswith("/") else f"/{path}"
    if suffix == "/":
        suffix = ""
    return urlunsplit((base.scheme, base.netloc, f"{base.path.rstrip('/')}{suffix}", query, ""))


def rewrite_proxy_query_path(path: str, query: str) -> Tuple[str, str]:
    """
    ``("", "__path=v1%2Fdashboard%2Fme&x=1")`` → ``("v1/dashboard/me", "x=1")``.

    Hosts that can only route the bare ``/api`` index carry the real path in
    ``__path``; anything else passes through unchanged.
    """
    if path.strip("/"):
        return path, query
    params = parse_qsl(query, keep_blank_values=True)
    raw = next((value for key, value in params if key == "__path"), "").strip()
    if not raw:
        return path, query
    rest = [(key, value) for key, value in params if key != "__path"]
    return unquote(raw).lstrip("/"), urlencode(rest)


def filter_request_headers(
    headers: Iterable[Tuple[str, str]],
    authorization: Optional[str] = None,
) -> Dict[str, str]:
    """
    Drop hop-by-hop and browser-only CORS headers from an incoming request.

    The caller's ``Origin`` survives as ``x-forwarded-origin``. When
    ``authorization`` is given it replaces whatever the caller sent.
    """
    out: Dict[str, str] = {}
    origin = ""
    for key, value in headers:
        name = key.lower()
        if name == "origin":
            origin = value.strip()
        if name in HOP_BY_HOP_HEADERS or name in BROWSER_ONLY_REQUEST_HEADERS:
            continue
        if authorization is not None and name == "authorization":
            continue
        out[name] = f"{out[name]}, {value}" if name in out else value

    if origin:
        out["x-forwarded-origin"] = origin
    if authorization is not None:
        out["authorization"] = authorization
    return out


def filter_response_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Upstream response headers minus hop-by-hop ones; repeated ``set-cookie`` kept."""
    return [
        (key, value)
        for key, value in headers
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-encoding"
    ]
