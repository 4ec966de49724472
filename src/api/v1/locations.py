"""Location cascade endpoints: districts, mandals, villages.

Public (no client session needed).  While the reference set is not
ready these return 503 with the load state, so an empty list always
means "confirmed empty" and never "not loaded".
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from src.models.enums import LocationLoadState
from src.services.location import LocationCascadeResolver, LocationDirectory

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/locations", tags=["locations"])


class LocationStatus(BaseModel):
    state: LocationLoadState
    message: str | None = None


class OptionList(BaseModel):
    state: LocationLoadState
    options: list[str]


async def _resolver(request: Request) -> LocationCascadeResolver:
    directory: LocationDirectory = request.app.state.locations
    if not directory.ready:
        await directory.load()
    if not directory.ready:
        raise HTTPException(
            status_code=503,
            detail={
                "state": directory.state.value,
                "message": directory.last_error or "Location data is unavailable.",
            },
        )
    return directory.resolver


@router.get("", response_model=LocationStatus)
async def location_status(request: Request) -> LocationStatus:
    directory: LocationDirectory = request.app.state.locations
    return LocationStatus(state=directory.state, message=directory.last_error)


@router.post("/reload", response_model=LocationStatus)
async def reload_locations(request: Request) -> LocationStatus:
    """Manual retry after ``error`` or ``timed_out``."""
    directory: LocationDirectory = request.app.state.locations
    state = await directory.load(force=True)
    return LocationStatus(state=state, message=directory.last_error)


@router.get("/districts", response_model=OptionList)
async def list_districts(request: Request) -> OptionList:
    resolver = await _resolver(request)
    return OptionList(state=LocationLoadState.READY, options=resolver.districts())


@router.get("/districts/{district}/mandals", response_model=OptionList)
async def list_mandals(district: str, request: Request) -> OptionList:
    resolver = await _resolver(request)
    return OptionList(state=LocationLoadState.READY, options=resolver.mandals_of(district))


@router.get("/districts/{district}/mandals/{mandal}/villages", response_model=OptionList)
async def list_villages(district: str, mandal: str, request: Request) -> OptionList:
    resolver = await _resolver(request)
    return OptionList(state=LocationLoadState.READY, options=resolver.villages_of(district, mandal))
