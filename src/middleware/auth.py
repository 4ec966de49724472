"""Client-session resolution and role gating for API routes.

Every stateful endpoint is called with an ``X-Client-Id`` header naming
the client session (the server-side equivalent of one browser tab).
:func:`get_client` resolves it through the registry, restoring persisted
state on first use; :func:`require_citizen` and :func:`require_official`
additionally demand an authenticated identity of the given role.
"""

from __future__ import annotations

from typing import NamedTuple

import structlog
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from src.models.enums import SessionState
from src.models.identity import CitizenIdentity, OfficialIdentity
from src.services.registry import ClientRegistry, ClientSession

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_client_header = APIKeyHeader(name="X-Client-Id", auto_error=False)


class CitizenContext(NamedTuple):
    client: ClientSession
    citizen: CitizenIdentity

    @property
    def access_token(self) -> str | None:
        auth = self.client.session.auth
        return auth.access_token if auth else None


class OfficialContext(NamedTuple):
    client: ClientSession
    official: OfficialIdentity

    @property
    def access_token(self) -> str | None:
        auth = self.client.session.auth
        return auth.access_token if auth else None


async def resolve_client(registry: ClientRegistry, client_id: str | None) -> ClientSession:
    """Look up *client_id*, raising 400 when it is missing or malformed."""
    if not client_id:
        raise HTTPException(status_code=400, detail="Missing X-Client-Id header.")
    try:
        return await registry.acquire(client_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def get_client(
    request: Request,
    client_id: str | None = Security(_client_header),
) -> ClientSession:
    return await resolve_client(request.app.state.registry, client_id)


def _require_authenticated(client: ClientSession) -> CitizenIdentity | OfficialIdentity:
    session = client.session
    if session.state == SessionState.ERROR:
        raise HTTPException(
            status_code=503,
            detail=session.error_message or "Your session could not be restored. Please retry.",
        )
    if not session.is_authenticated or session.identity is None:
        raise HTTPException(
            status_code=401,
            detail="Please sign in to continue.",
            headers={"WWW-Authenticate": "OTP"},
        )
    return session.identity


async def require_citizen(client: ClientSession = Depends(get_client)) -> CitizenContext:
    identity = _require_authenticated(client)
    match identity:
        case CitizenIdentity():
            return CitizenContext(client, identity)
        case OfficialIdentity():
            logger.warning("auth.role_denied", required="citizen", client_id=client.client_id)
            raise HTTPException(status_code=403, detail="This page is only available to citizens.")


async def require_official(client: ClientSession = Depends(get_client)) -> OfficialContext:
    identity = _require_authenticated(client)
    match identity:
        case OfficialIdentity():
            return OfficialContext(client, identity)
        case CitizenIdentity():
            logger.warning("auth.role_denied", required="official", client_id=client.client_id)
            raise HTTPException(status_code=403, detail="This page is only available to officials.")
