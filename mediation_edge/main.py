from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediation_edge.api.api import api_router
from mediation_edge.config import settings
from mediation_edge.logging_config import setup_logging
from mediation_edge.middleware.metrics import PrometheusMiddleware, metrics_endpoint, set_app_info
from mediation_edge.middleware.request_logging import RequestLoggingMiddleware
from mediation_edge.services.routing import RUNTIME_SOURCE_HEADER

# ── Initialize structured logging ──
setup_logging()

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
)

cors_origins = ["http://localhost:3000", "http://localhost:3002"]
if settings.BACKEND_CORS_ORIGINS:
    cors_origins.extend(
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[RUNTIME_SOURCE_HEADER, "X-Request-ID"],
)

# Request logging middleware – request ID, timing, tenant context
app.add_middleware(RequestLoggingMiddleware)

# Prometheus metrics middleware – request count, latency, in-progress
app.add_middleware(PrometheusMiddleware)


@app.get("/health")
def health_check():
    return {"status": "ok", "env": settings.APP_ENV}


app.add_route("/metrics", metrics_endpoint)
set_app_info(version=settings.APP_VERSION, env=settings.APP_ENV)

# Mounted last so /health and /metrics are matched before the /api catch-all.
app.include_router(api_router, prefix=settings.API_PREFIX)
