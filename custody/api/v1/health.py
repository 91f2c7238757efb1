from datetime import datetime, timezone
import sys

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from custody.errors import CustodyError

router = APIRouter(prefix="/api/v1", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    service: str
    network: str
    python_version: str


class ReadinessResponse(BaseModel):
    ready: bool
    checks: dict


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request) -> HealthResponse:
    settings = request.app.state.settings
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        service="custody-engine",
        network=settings.network.name,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    )


@router.get("/ready")
async def readiness_check(request: Request):
    checks = {}
    try:
        block = await request.app.state.chain_client.get_block_number()
        checks["rpc"] = f"ok (block {block})"
    except CustodyError as exc:
        checks["rpc"] = f"error: {exc.code}"
    checks["cache"] = "ok" if await request.app.state.cache.ping() else "degraded"
    checks["database"] = "ok"
    ready = checks["rpc"].startswith("ok")
    payload = ReadinessResponse(ready=ready, checks=checks)
    code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=payload.model_dump())


@router.head("/health")
async def health_head():
    return None
