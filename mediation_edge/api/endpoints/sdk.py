from typing import Any, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from mediation_edge.api import deps
from mediation_edge.config import settings
from mediation_edge.services.binding_store import derive_tenant_id, hash_api_key, normalize_authorization
from mediation_edge.services.bid_proxy import BidGateway
from mediation_edge.services.failures import API_KEY_REQUIRED, RUNTIME_ROUTE_UNAVAILABLE, Failure
from mediation_edge.services.routing import RUNTIME_SOURCE_HEADER, RouteFailure

router = APIRouter()


@router.get("/bootstrap")
async def sdk_bootstrap(
    authorization: Optional[str] = Header(None),
    gateway: BidGateway = Depends(deps.get_bid_gateway),
) -> Any:
    """SDK bootstrap: the runtime this API key should send bids to."""
    auth = normalize_authorization(authorization)
    if not auth:
        failure = Failure(API_KEY_REQUIRED, "Authorization: Bearer <api key> is required")
        return JSONResponse(status_code=failure.status_code, content=failure.to_error_body())

    key_hash = hash_api_key(auth)
    binding, route = await gateway.route_for(auth)
    tenant_id = (binding.tenant_id if binding else "") or derive_tenant_id(key_hash, settings.TENANT_ID_EPOCH)
    placement_id = (binding.placement_id if binding else "") or settings.DEFAULT_PLACEMENT_ID

    if isinstance(route, RouteFailure):
        failure = Failure(RUNTIME_ROUTE_UNAVAILABLE, route.message)
        body = failure.to_error_body(
            reason=route.code,
            bindStatus=route.bind_status,
            tenantId=tenant_id,
        )
        body["error"]["nextActions"] = route.next_actions
        return JSONResponse(status_code=failure.status_code, content=body)

    content = {
        "runtimeBaseUrl": route.runtime_base_url,
        "runtimeSource": route.runtime_source,
        "tenantId": tenant_id,
        "keyScope": {
            "tenantId": tenant_id,
            "keyFingerprint": key_hash[:12],
            "environment": settings.DEFAULT_ENVIRONMENT,
        },
        "bindStatus": route.bind_status,
        "placementDefaults": {"placementId": placement_id, "environment": settings.DEFAULT_ENVIRONMENT},
        "lastProbeCode": binding.last_probe_code if binding else "",
    }
    if route.customer_runtime_base_url:
        content["customerRuntimeBaseUrl"] = route.customer_runtime_base_url
    return JSONResponse(content=content, headers={RUNTIME_SOURCE_HEADER: route.runtime_source})
