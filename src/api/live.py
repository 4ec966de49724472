"""Shared plumbing for the live-update WebSocket endpoints.

Browsers cannot set headers on a WebSocket handshake, so the client
session is passed as the ``client_id`` query parameter instead of
``X-Client-Id``.  Each socket owns one change-feed subscription; text
frames from the client are only used for ``ping`` keep-alives.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect, status

from src.models.identity import CitizenIdentity, OfficialIdentity
from src.services.realtime import ChangeEvent, Subscription
from src.services.registry import ClientRegistry, ClientSession

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


async def authenticate_socket(
    websocket: WebSocket,
    client_id: str,
) -> tuple[ClientSession, CitizenIdentity | OfficialIdentity] | None:
    """Resolve the client session; closes the socket and returns None if unauthenticated."""
    registry: ClientRegistry = websocket.app.state.registry
    try:
        client = await registry.acquire(client_id)
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    identity = client.session.identity
    if not client.session.is_authenticated or identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return client, identity


async def pump(
    websocket: WebSocket,
    subscription: Subscription,
    render: Callable[[ChangeEvent], dict[str, Any] | None],
) -> None:
    """Forward rendered events to *websocket* until the client disconnects."""

    async def forward() -> None:
        async for event in subscription:
            payload = render(event)
            if payload is not None:
                await websocket.send_json(payload)

    async def listen() -> None:
        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_text("pong")

    try:
        async with asyncio.TaskGroup() as group:
            group.create_task(forward())
            group.create_task(listen())
    except* WebSocketDisconnect:
        logger.debug("live.disconnected", table=subscription.table)
