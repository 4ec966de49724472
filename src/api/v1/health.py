"""Health check endpoints for Nagarika Mitra API v1.

Liveness and readiness probes.  Readiness covers the client-state cache,
the location reference set and the backend row store.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel
from redis.exceptions import RedisError

from src.models.enums import LocationLoadState
from src.services.errors import GatewayError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; does not touch downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    checks: dict[str, str] = {}
    all_ok = True

    # -- Client-state cache ------------------------------------------------
    cache = getattr(request.app.state, "cache", None)
    if cache is not None:
        try:
            await cache.set("_health_check", "ok", ttl_seconds=10)
            if await cache.get("_health_check") == "ok":
                checks["cache"] = "ok (redis)" if cache.using_redis else "ok (in-memory)"
            else:
                checks["cache"] = "degraded"
                all_ok = False
        except (RedisError, OSError) as exc:
            checks["cache"] = f"error: {exc!s}"
            all_ok = False
    else:
        checks["cache"] = "not_configured"
        all_ok = False

    # -- Location reference set --------------------------------------------
    locations = getattr(request.app.state, "locations", None)
    if locations is not None and locations.state == LocationLoadState.READY:
        checks["locations"] = f"ok ({len(locations.resolver.districts())} districts)"
    else:
        checks["locations"] = locations.state.value if locations is not None else "not_initialised"
        all_ok = False

    # -- Backend row store -------------------------------------------------
    backend = getattr(request.app.state, "backend", None)
    if backend is not None:
        try:
            await backend.select(request.app.state.settings.locations_table, limit=1)
            checks["backend"] = "ok"
        except GatewayError as exc:
            checks["backend"] = f"error: {exc.message}"
            all_ok = False
    else:
        checks["backend"] = "not_initialised"
        all_ok = False

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
