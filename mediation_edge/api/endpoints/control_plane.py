"""Catch-all passthrough of dashboard API calls to the control plane."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from mediation_edge.api import deps
from mediation_edge.services.passthrough import ControlPlanePassthrough

router = APIRouter()

PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@router.api_route("/{path:path}", methods=PASSTHROUGH_METHODS, include_in_schema=False)
async def control_plane_passthrough(
    path: str,
    request: Request,
    passthrough: ControlPlanePassthrough = Depends(deps.get_passthrough),
) -> Response:
    result = await passthrough.forward(
        request.method,
        path,
        request.url.query,
        request.headers.items(),
        await request.body(),
    )
    if result.failure is not None:
        return JSONResponse(
            status_code=result.status_code,
            content={"error": {"code": result.failure.code, "message": result.failure.detail}},
        )

    response = Response(content=result.content, status_code=result.status_code)
    for key, value in result.headers:
        response.headers.append(key, value)
    return response
