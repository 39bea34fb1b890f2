from fastapi import APIRouter

from mediation_edge.api.endpoints import bid, control_plane, runtime_domain, sdk

api_router = APIRouter()
api_router.include_router(runtime_domain.router, prefix="/v1/public/runtime-domain", tags=["runtime-domain"])
api_router.include_router(sdk.router, prefix="/v1/public/sdk", tags=["sdk"])
api_router.include_router(bid.router, tags=["bid"])

# Must stay last: matches every remaining /api/* path.
api_router.include_router(control_plane.router, tags=["control-plane"])
