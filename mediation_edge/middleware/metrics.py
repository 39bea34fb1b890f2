"""
Prometheus Metrics Middleware

Exposes:
  - http_requests_total                (counter)
  - http_request_duration_seconds      (histogram)
  - http_requests_in_progress          (gauge)
  - runtime_bid_routes_total           (counter, by runtime_source)
  - runtime_probe_results_total        (counter, by stage and code)
  - app_info                           (info)
"""

import re
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ── Metrics ──
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of in-progress requests",
    ["method"],
)
BID_ROUTES = Counter(
    "runtime_bid_routes_total",
    "Live bid requests by the runtime that served them",
    ["runtime_source"],
)
PROBE_RESULTS = Counter(
    "runtime_probe_results_total",
    "Runtime verification outcomes",
    ["stage", "code"],
)
APP_INFO = Info("app", "Application metadata")

# Passthrough paths are arbitrary; only these prefixes keep their full path as a label.
_KNOWN_PREFIXES = ("/api/v1/public/runtime-domain", "/api/v1/public/sdk", "/api/v2/bid", "/api/ad/bid")


def _normalize_path(path: str) -> str:
    """Collapse IDs and unknown passthrough paths to keep label cardinality bounded."""
    if path.startswith(_KNOWN_PREFIXES) or not path.startswith("/api"):
        return re.sub(r"/\d+", "/{id}", path)
    return "/api/{passthrough}"


def record_bid_route(runtime_source: str) -> None:
    BID_ROUTES.labels(runtime_source=runtime_source).inc()


def record_probe_result(stage: str, code: str) -> None:
    PROBE_RESULTS.labels(stage=stage, code=code).inc()


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = _normalize_path(request.url.path)

        # Skip metrics endpoint itself
        if path == "/metrics":
            return await call_next(request)

        REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            REQUEST_COUNT.labels(method=method, endpoint=path, status="500").inc()
            REQUEST_DURATION.labels(method=method, endpoint=path).observe(
                time.perf_counter() - start
            )
            REQUESTS_IN_PROGRESS.labels(method=method).dec()
            raise

        elapsed = time.perf_counter() - start
        REQUEST_COUNT.labels(method=method, endpoint=path, status=str(response.status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=path).observe(elapsed)
        REQUESTS_IN_PROGRESS.labels(method=method).dec()

        return response


def metrics_endpoint(request: Request) -> Response:
    """Expose /metrics for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def set_app_info(version: str = "1.0.0", env: str = "development") -> None:
    """Set application info metric."""
    APP_INFO.info({"version": version, "environment": env})
