"""
Request Logging Middleware

- Assigns a unique request_id to every request
- Sets tenant_id context from the API key (hash only, the key is never logged)
- Logs request start & end with timing
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mediation_edge.config import settings
from mediation_edge.logging_config import generate_request_id, request_id_ctx, tenant_id_ctx
from mediation_edge.services.binding_store import derive_tenant_id, hash_api_key, normalize_authorization

logger = logging.getLogger("mediation.request")


def _tenant_from_request(request: Request) -> str:
    auth = normalize_authorization(request.headers.get("authorization"))
    if not auth:
        return ""
    return derive_tenant_id(hash_api_key(auth), settings.TENANT_ID_EPOCH)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = generate_request_id()
        rid_token = request_id_ctx.set(rid)
        tenant_token = tenant_id_ctx.set(_tenant_from_request(request))
        try:
            return await self._logged(request, call_next, rid)
        finally:
            request_id_ctx.reset(rid_token)
            tenant_id_ctx.reset(tenant_token)

    async def _logged(self, request: Request, call_next, rid: str) -> Response:
        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "-"

        logger.info("→ %s %s from %s", method, path, client_ip)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            logger.exception("✗ %s %s (%.1fms, unhandled exception)", method, path, elapsed)
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid

        logger.info("← %s %s %d %.1fms", method, path, response.status_code, elapsed)
        return response
