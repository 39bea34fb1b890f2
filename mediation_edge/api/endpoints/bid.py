"""
Live bid endpoints.

/v2/bid  forwards to the routed runtime; caller-integration problems are real
         HTTP errors (401 no key, 503 no route, 502/504 upstream).
/ad/bid  best-effort twin: always 200, failures become a ``filled: false`` body
         so an ad problem never blocks the host application's response.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from mediation_edge.api import deps
from mediation_edge.services.bid_proxy import BidGateway, ProxyResult
from mediation_edge.services.routing import RUNTIME_SOURCE_HEADER

router = APIRouter()


def _to_response(result: ProxyResult) -> Response:
    headers = {RUNTIME_SOURCE_HEADER: result.runtime_source} if result.runtime_source else None
    if result.raw is not None:
        return Response(
            content=result.raw,
            status_code=result.status_code,
            media_type=result.media_type,
            headers=headers,
        )
    return JSONResponse(content=result.body, status_code=result.status_code, headers=headers)


@router.post("/v2/bid")
async def live_bid(
    request: Request,
    gateway: BidGateway = Depends(deps.get_bid_gateway),
) -> Response:
    result = await gateway.live_bid(
        request.headers.get("authorization"),
        await request.body(),
        request.headers.items(),
    )
    return _to_response(result)


@router.post("/ad/bid")
async def best_effort_bid(
    request: Request,
    gateway: BidGateway = Depends(deps.get_bid_gateway),
) -> Response:
    body = await gateway.best_effort_bid(
        request.headers.get("authorization"),
        await request.body(),
        request.headers.items(),
    )
    source = body.get("runtimeSource")
    headers = {RUNTIME_SOURCE_HEADER: source} if source else None
    return JSONResponse(content=body, status_code=200, headers=headers)
