"""Official broadcast messages and the citizen inbox."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request, WebSocket

from src.api.live import authenticate_socket, pump
from src.middleware.auth import CitizenContext, OfficialContext, require_citizen, require_official
from src.models.feedback import BroadcastRequest, MessageRecord
from src.models.identity import CitizenIdentity
from src.services.location import LocationDirectory
from src.services.messages import MessageService
from src.services.query import eq
from src.services.realtime import ChangeEvent

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", response_model=MessageRecord, status_code=201)
async def broadcast_message(
    body: BroadcastRequest,
    request: Request,
    ctx: OfficialContext = Depends(require_official),
) -> MessageRecord:
    """Send a message to citizens of a district, optionally narrowed to a mandal or village."""
    directory: LocationDirectory = request.app.state.locations
    if not directory.ready:
        await directory.load()
    service: MessageService = request.app.state.messages
    # Raises LocationDataUnavailable (503) when the cascade is not loaded.
    return await service.broadcast(ctx.official, body, directory.resolver, access_token=ctx.access_token)


@router.get("/inbox", response_model=list[MessageRecord])
async def inbox(request: Request, ctx: CitizenContext = Depends(require_citizen)) -> list[MessageRecord]:
    service: MessageService = request.app.state.messages
    return await service.inbox(ctx.citizen, access_token=ctx.access_token)


@router.get("/sent", response_model=list[MessageRecord])
async def sent_messages(request: Request, ctx: OfficialContext = Depends(require_official)) -> list[MessageRecord]:
    service: MessageService = request.app.state.messages
    return await service.sent_by(ctx.official, access_token=ctx.access_token)


@router.websocket("/inbox/live")
async def inbox_live(websocket: WebSocket, client_id: str = Query(...)) -> None:
    """Push new messages that reach the citizen's district, mandal and village."""
    resolved = await authenticate_socket(websocket, client_id)
    if resolved is None:
        return
    _, identity = resolved
    if not isinstance(identity, CitizenIdentity):
        await websocket.close(code=1008)
        return

    service: MessageService = websocket.app.state.messages
    feed = websocket.app.state.backend.changes
    await websocket.accept()

    def render(event: ChangeEvent) -> dict | None:
        record = MessageRecord.from_row(event.record)
        if not MessageService.reaches(record, identity):
            return None
        return {"type": event.type.value, "record": record.model_dump(mode="json")}

    async with feed.subscribe(service.table, [eq("district", identity.district)]) as sub:
        logger.info("api.messages.live_connected", district=identity.district)
        await pump(websocket, sub, render)
