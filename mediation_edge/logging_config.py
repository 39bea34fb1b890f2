"""
Logging setup for the edge service.

Every record passes through ``RequestContextFilter``, which stamps it with the
current request and tenant ids and scrubs API keys, probe header values and
e-mail addresses from the rendered message. Production and staging emit one
JSON object per line; development gets a single readable line.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict

from mediation_edge.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="")


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def current_request_id() -> str:
    """Request ID of the running request, or a fresh one outside a request."""
    return request_id_ctx.get() or generate_request_id()


# ── Scrubbing ──

_SECRET_FIELDS = r"authorization|api_?key|token|secret|probe_?headers(?:_?encrypted)?|x-runtime-[a-z-]+"

_SCRUBBERS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.I), r"\1***"),
    (re.compile(r"\bsk_(live|test)_[A-Za-z0-9_]+"), r"sk_\1_***"),
    (re.compile(rf'("?(?:{_SECRET_FIELDS})"?\s*[:=]\s*)"[^"]*"', re.I), r'\1"***"'),
    (re.compile(rf"('(?:{_SECRET_FIELDS})'\s*:\s*)'[^']*'", re.I), r"\1'***'"),
]

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def _mask_email(match: re.Match) -> str:
    local = match.group(1)
    tail = local[-1] if len(local) > 2 else ""
    return f"{local[0]}***{tail}@{match.group(2)}"


def mask_secrets(text: str) -> str:
    """``Bearer sk_live_abc`` → ``Bearer ***``; ``alice@x.org`` → ``a***e@x.org``."""
    for pattern, replacement in _SCRUBBERS:
        text = pattern.sub(replacement, text)
    return _EMAIL_RE.sub(_mask_email, text)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        record.msg = mask_secrets(record.getMessage())
        record.args = None
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.000Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", ""),
            "tenant_id": getattr(record, "tenant_id", ""),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = mask_secrets(self.formatException(record.exc_info))
        return json.dumps({k: v for k, v in entry.items() if v}, ensure_ascii=False, default=str)


HUMAN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(request_id)s %(tenant_id)s] %(message)s"


def setup_logging() -> None:
    """Install the single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    if settings.is_production or settings.is_staging:
        handler.setFormatter(JSONFormatter())
        level = logging.INFO
    else:
        handler.setFormatter(logging.Formatter(HUMAN_FORMAT, datefmt="%H:%M:%S"))
        level = logging.DEBUG

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in ("uvicorn.access", "httpcore", "httpx", "asyncio", "dns"):
        logging.getLogger(name).setLevel(logging.WARNING)
