"""
Health and readiness endpoints for load balancers and Kubernetes.
No auth required; keep payload minimal for fast checks.
"""

import asyncio

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from core.dependencies import DatabaseDep, SettingsDep

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    """Minimal health payload for probes."""

    status: str = "ok"
    service: str = "pipeline-server"


class ReadinessResponse(BaseModel):
    """Readiness: one entry per dependency check."""

    ready: bool = True
    checks: dict[str, str] = {}

    model_config = {"extra": "forbid"}


@router.head("", include_in_schema=False)
@router.get("", response_model=HealthResponse)
async def health(settings: SettingsDep) -> HealthResponse:
    """
    Liveness: is the process alive.
    Used by Kubernetes livenessProbe, Docker HEALTHCHECK.
    """
    return HealthResponse(service=settings.APP_NAME)


@router.head("/ready", include_in_schema=False)
@router.get("/ready", response_model=ReadinessResponse)
async def ready(database: DatabaseDep, response: Response) -> ReadinessResponse:
    """Readiness: 503 until the database answers."""
    loop = asyncio.get_running_loop()
    db_ok = await loop.run_in_executor(None, database.ping)
    checks = {"config": "loaded", "database": "ok" if db_ok else "unavailable"}
    if not db_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=db_ok, checks=checks)


@router.head("/live", include_in_schema=False)
@router.get("/live")
async def live(response: Response) -> None:
    """
    Minimal live check: 200 with no body. For Nginx/Cloudflare health checks.
    """
    response.status_code = 200
