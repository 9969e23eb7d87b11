"""
Public API under /api/v1: unauthenticated, rate limited by the pipeline.
"""

from typing import Any

from fastapi import APIRouter, Request

from core.dependencies import ServicesDep
from models.schemas import EchoResponse, TokenRequest, TokenResponse
from services.auth_service import AuthService

router = APIRouter(prefix="/api/v1", tags=["public"])


@router.head("/ping", include_in_schema=False)
@router.get("/ping")
async def ping() -> dict[str, Any]:
    return {"pong": True}


@router.api_route("/echo", methods=["GET", "HEAD", "POST", "PUT", "PATCH"], response_model=EchoResponse)
async def echo(request: Request) -> EchoResponse:
    """
    Reflects what the pipeline made of the request: the query after
    parameter-pollution cleanup and the parsed body.
    """
    return EchoResponse(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        query_polluted=getattr(request.state, "query_polluted", {}),
        body=getattr(request.state, "body", {}),
    )


@router.post("/auth/token", response_model=TokenResponse)
async def issue_token(body: TokenRequest, services: ServicesDep) -> TokenResponse:
    """Exchange the admin credentials for a bearer token."""
    auth = AuthService(services.settings, services.logger.getChild("auth"))
    return await auth.issue_token(body.username, body.password)
