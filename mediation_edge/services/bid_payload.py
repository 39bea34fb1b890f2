"""Landing URL extraction for the many bid response shapes runtimes return."""

import copy
import re
from typing import Any, Dict, Optional, Tuple

LANDING_URL_FIELDS = (
    "landingUrl",
    "url",
    "link",
    "redirectUrl",
    "targetUrl",
    "clickUrl",
    "destinationUrl",
)
NESTED_CONTAINERS = ("bid", "data")
MESSAGE_FIELDS = ("reasonMessage", "message")

_EMBEDDED_URL_RE = re.compile(r"https?://[^\s\"'<>)\]]+", re.I)


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _from_fields(source: Any) -> str:
    if not isinstance(source, dict):
        return ""
    for field in LANDING_URL_FIELDS:
        value = _text(source.get(field))
        if value:
            return value
    return ""


def _from_messages(source: Any) -> str:
    if not isinstance(source, dict):
        return ""
    for field in MESSAGE_FIELDS:
        match = _EMBEDDED_URL_RE.search(_text(source.get(field)))
        if match:
            return match.group(0).rstrip(".,;:!?")
    return ""


def extract_landing_url(payload: Any) -> str:
    """First non-empty landing URL candidate, or ``""``.

    Order: explicit fields at the top level, then under ``bid`` / ``data``,
    then the first http(s) URL embedded in ``reasonMessage`` / ``message``.
    """
    if not isinstance(payload, dict):
        return ""

    found = _from_fields(payload)
    if found:
        return found
    for container in NESTED_CONTAINERS:
        found = _from_fields(payload.get(container))
        if found:
            return found

    found = _from_messages(payload)
    if found:
        return found
    for container in NESTED_CONTAINERS:
        found = _from_messages(payload.get(container))
        if found:
            return found
    return ""


def normalize_bid_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    """Return ``(copy_with_landing_url, landing_url)``; the input is left untouched."""
    normalized = copy.deepcopy(payload) if isinstance(payload, dict) else {}
    landing_url = extract_landing_url(normalized)
    if not landing_url:
        return normalized, None

    normalized["landingUrl"] = landing_url
    ad = normalized.get("ad")
    if isinstance(ad, dict):
        ad["landingUrl"] = landing_url
    return normalized, landing_url
