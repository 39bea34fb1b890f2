"""
Runtime Domain Binding API

  1. verify-and-bind: DNS → TLS → bid probe, then bind the domain to the API key
  2. probe: re-run only the bid probe (optionally compared with a browser probe)

Both endpoints answer HTTP 200 for every handled outcome; the result is in the
body so the dashboard can render diagnostics.
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header

from mediation_edge.api import deps
from mediation_edge.logging_config import current_request_id
from mediation_edge.schemas.runtime_domain import RuntimeProbeRequest, VerifyAndBindRequest
from mediation_edge.services.failures import DEFAULT_NEXT_ACTIONS
from mediation_edge.services.verification import RuntimeVerifier

router = APIRouter()
logger = logging.getLogger("mediation.runtime_domain")


def _internal_error_body() -> dict:
    return {
        "status": "failed",
        "bindStage": "error",
        "failureCode": "INTERNAL_ERROR",
        "nextActions": list(DEFAULT_NEXT_ACTIONS),
        "requestId": current_request_id(),
    }


@router.post("/verify-and-bind")
async def verify_and_bind(
    body: Optional[VerifyAndBindRequest] = None,
    authorization: Optional[str] = Header(None),
    verifier: RuntimeVerifier = Depends(deps.get_verifier),
) -> Any:
    """Verify a runtime domain and bind it to the calling API key."""
    body = body or VerifyAndBindRequest()
    try:
        return await verifier.verify_and_bind(
            authorization,
            body.domain,
            placement_id=body.placement_id,
            probe_headers=body.probe_headers,
        )
    except Exception:
        logger.exception("verify-and-bind crashed for domain %r", body.domain)
        return _internal_error_body()


@router.post("/probe")
async def probe_runtime(
    body: Optional[RuntimeProbeRequest] = None,
    authorization: Optional[str] = Header(None),
    verifier: RuntimeVerifier = Depends(deps.get_verifier),
) -> Any:
    """Re-probe the bound runtime."""
    body = body or RuntimeProbeRequest()
    try:
        return await verifier.reprobe(
            authorization,
            domain=body.domain,
            placement_id=body.placement_id,
            probe_headers=body.probe_headers,
            browser_probe=body.browser_probe,
            run_browser_probe=body.run_browser_probe,
        )
    except Exception:
        logger.exception("runtime probe crashed for domain %r", body.domain)
        return _internal_error_body()
