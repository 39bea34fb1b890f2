"""
Dashboard request enrichment for the control-plane passthrough.

Only three POST endpoints are touched:

  v1/public/dashboard/register      generate an accountId when none is given
  v1/public/quick-start/verify      fill accountId/appId from the session, default environment
  v1/public/credentials/keys        fill accountId/appId from the session, default environment/name

Legacy scope aliases are dropped from those bodies. Anything else, including
non-JSON or non-object bodies, is forwarded untouched.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from mediation_edge.services.upstream import build_upstream_url

logger = logging.getLogger("mediation.passthrough")

REGISTER_PATH = "v1/public/dashboard/register"
QUICK_START_VERIFY_PATH = "v1/public/quick-start/verify"
CREATE_KEY_PATH = "v1/public/credentials/keys"
SESSION_PATH = "v1/public/dashboard/me"

LEGACY_SCOPE_ALIASES = ("account_id", "organizationId", "organization_id", "app_id")
JSON_CONTENT_TYPE = "application/json; charset=utf-8"

_SEED_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class EnrichmentDefaults:
    environment: str = "prod"
    key_name: str = "runtime-prod"


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _first_text(*values: Any) -> str:
    for value in values:
        text = _text(value)
        if text:
            return text
    return ""


def read_account_id(source: Any) -> str:
    if not isinstance(source, dict):
        return ""
    return _first_text(
        source.get("accountId"),
        source.get("account_id"),
        source.get("organizationId"),
        source.get("organization_id"),
    )


def read_app_id(source: Any) -> str:
    if not isinstance(source, dict):
        return ""
    return _first_text(source.get("appId"), source.get("app_id"))


def make_generated_account_id(seed: str = "") -> str:
    """``"Alice.Smith"`` → ``org_alice_smith_<6 chars>``."""
    normalized = _SEED_RE.sub("_", _text(seed).lower()).strip("_")[:20].rstrip("_")
    return f"org_{normalized or 'user'}_{uuid.uuid4().hex[:6]}"


def _parse_json_object(body: bytes) -> Optional[Dict[str, Any]]:
    raw = body.decode("utf-8", errors="replace").strip() if body else ""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def fetch_session_scope(
    client: httpx.AsyncClient,
    api_base_url: str,
    headers: Dict[str, str],
) -> Dict[str, str]:
    """``{accountId, appId}`` of the dashboard session; ``{}`` on any failure."""
    try:
        response = await client.get(build_upstream_url(api_base_url, SESSION_PATH), headers=headers)
    except httpx.HTTPError as e:
        logger.info("Session scope lookup failed: %s", e)
        return {}
    if not response.is_success or "application/json" not in response.headers.get("content-type", "").lower():
        return {}
    try:
        payload = response.json()
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}

    scope, user = payload.get("scope"), payload.get("user")
    return {
        "accountId": _first_text(read_account_id(scope), read_account_id(user)),
        "appId": _first_text(read_app_id(scope), read_app_id(user)),
    }


async def enrich_request(
    client: httpx.AsyncClient,
    api_base_url: str,
    method: str,
    path: str,
    headers: Dict[str, str],
    body: bytes,
    defaults: EnrichmentDefaults = EnrichmentDefaults(),
) -> Tuple[Dict[str, str], bytes]:
    """Return the ``(headers, body)`` to forward; unchanged unless the body was rewritten."""
    route = path.strip("/")
    if method.upper() != "POST" or route not in (REGISTER_PATH, QUICK_START_VERIFY_PATH, CREATE_KEY_PATH):
        return headers, body

    payload = _parse_json_object(body)
    if payload is None:
        return headers, body

    mutated = any(alias in payload for alias in LEGACY_SCOPE_ALIASES)
    for alias in LEGACY_SCOPE_ALIASES:
        payload.pop(alias, None)

    if route == REGISTER_PATH and not read_account_id(payload):
        payload["accountId"] = make_generated_account_id(_text(payload.get("email")).split("@")[0])
        mutated = True

    if route in (QUICK_START_VERIFY_PATH, CREATE_KEY_PATH):
        account_id, app_id = read_account_id(payload), read_app_id(payload)
        if not account_id or not app_id:
            scope = await fetch_session_scope(client, api_base_url, headers)
            account_id = account_id or scope.get("accountId", "")
            app_id = app_id or scope.get("appId", "")
        if account_id and _text(payload.get("accountId")) != account_id:
            payload["accountId"] = account_id
            mutated = True
        if app_id and _text(payload.get("appId")) != app_id:
            payload["appId"] = app_id
            mutated = True
        if not _text(payload.get("environment")):
            payload["environment"] = defaults.environment
            mutated = True

    if route == CREATE_KEY_PATH and not _text(payload.get("name")):
        payload["name"] = defaults.key_name
        mutated = True

    if not mutated:
        return headers, body

    headers = dict(headers)
    headers.setdefault("content-type", JSON_CONTENT_TYPE)
    return headers, json.dumps(payload).encode("utf-8")
