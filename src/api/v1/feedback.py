"""Citizen feedback endpoints.

Citizens submit feedback and see their own and nearby feedback;
officials see every feedback in their district with filters.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request, WebSocket

from src.api.live import authenticate_socket, pump
from src.middleware.auth import CitizenContext, OfficialContext, require_citizen, require_official
from src.models.enums import RatingBand, ServiceType
from src.models.feedback import FeedbackFilters, FeedbackRecord, FeedbackSubmission
from src.models.identity import CitizenIdentity
from src.services.feedback import FeedbackService
from src.services.query import eq
from src.services.realtime import ChangeEvent

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/feedback", tags=["feedback"])


def _service(request: Request) -> FeedbackService:
    return request.app.state.feedback


# ---------------------------------------------------------------------------
# Citizen
# ---------------------------------------------------------------------------


@router.post("", response_model=FeedbackRecord, status_code=201)
async def submit_feedback(
    body: FeedbackSubmission,
    request: Request,
    ctx: CitizenContext = Depends(require_citizen),
) -> FeedbackRecord:
    """Submit feedback; the citizen's district/mandal/village are recorded with it."""
    return await _service(request).submit(
        ctx.citizen,
        body,
        flight=ctx.client.feedback_flight,
        access_token=ctx.access_token,
    )


@router.get("/mine", response_model=list[FeedbackRecord])
async def my_feedback(request: Request, ctx: CitizenContext = Depends(require_citizen)) -> list[FeedbackRecord]:
    return await _service(request).list_mine(ctx.citizen, access_token=ctx.access_token)


@router.get("/nearby", response_model=list[FeedbackRecord])
async def nearby_feedback(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    ctx: CitizenContext = Depends(require_citizen),
) -> list[FeedbackRecord]:
    return await _service(request).list_nearby(ctx.citizen, limit=limit, access_token=ctx.access_token)


@router.get("/service-types", response_model=list[str])
async def service_types() -> list[str]:
    return [s.value for s in ServiceType]


# ---------------------------------------------------------------------------
# Official
# ---------------------------------------------------------------------------


@router.get("/district", response_model=list[FeedbackRecord])
async def district_feedback(
    request: Request,
    mandal: str | None = Query(default=None, max_length=100),
    village: str | None = Query(default=None, max_length=100),
    service_type: ServiceType | None = Query(default=None),
    rating: RatingBand | None = Query(default=None, description="low (<=2), medium (3) or high (>=4)"),
    search: str | None = Query(default=None, max_length=200),
    ctx: OfficialContext = Depends(require_official),
) -> list[FeedbackRecord]:
    filters = FeedbackFilters(
        mandal=mandal,
        village=village,
        service_type=service_type,
        rating_band=rating,
        search=search,
    )
    return await _service(request).list_for_district(ctx.official, filters, access_token=ctx.access_token)


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------


@router.websocket("/mine/live")
async def my_feedback_live(websocket: WebSocket, client_id: str = Query(...)) -> None:
    """Push the citizen's own feedback rows as they are inserted or updated."""
    resolved = await authenticate_socket(websocket, client_id)
    if resolved is None:
        return
    _, identity = resolved
    if not isinstance(identity, CitizenIdentity):
        await websocket.close(code=1008)
        return

    service: FeedbackService = websocket.app.state.feedback
    feed = websocket.app.state.backend.changes
    await websocket.accept()

    def render(event: ChangeEvent) -> dict:
        record = FeedbackRecord.from_row(event.record)
        return {"type": event.type.value, "record": record.model_dump(mode="json")}

    async with feed.subscribe(service.table, [eq("user_id", identity.id)]) as sub:
        logger.info("api.feedback.live_connected", user_id=identity.id)
        await pump(websocket, sub, render)
