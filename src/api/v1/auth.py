"""Phone/OTP login, profile completion and session endpoints.

All endpoints act on the client session named by ``X-Client-Id``.  The
body of every OTP and profile response is the operation's result model;
the HTTP status reflects its outcome so clients can branch on either.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from src.middleware.auth import get_client
from src.models.enums import DispatchOutcome, ErrorKind, OtpStage, ProfileOutcome, Role, SessionState, VerifyOutcome
from src.models.identity import CitizenIdentity, OfficialIdentity
from src.models.profile import CitizenProfileForm, OfficialCredentials, ProfileResult
from src.models.verification import DispatchResult, VerifyResult
from src.services.errors import PersistenceError
from src.services.registry import ClientSession

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class PhoneRequest(BaseModel):
    phone: str = Field(..., max_length=32, description="Mobile number, with or without +91")


class CodeRequest(BaseModel):
    code: str = Field(..., max_length=16)
    role: Role = Field(default=Role.CITIZEN, description="Which login path the user chose")


class SessionView(BaseModel):
    state: SessionState
    identity: CitizenIdentity | OfficialIdentity | None = None
    error: ErrorKind | None = None
    message: str | None = None
    otp_stage: OtpStage
    resend_available_in: float = 0.0


class VerifyResponse(VerifyResult):
    session_state: SessionState | None = None


# ---------------------------------------------------------------------------
# Outcome -> HTTP status
# ---------------------------------------------------------------------------

_DISPATCH_STATUS: dict[DispatchOutcome, int] = {
    DispatchOutcome.SENT: 200,
    DispatchOutcome.INVALID_FORMAT: 422,
    DispatchOutcome.DISPATCH_FAILED: 502,
    DispatchOutcome.COOLDOWN_ACTIVE: 429,
    DispatchOutcome.WRONG_STAGE: 409,
    DispatchOutcome.BUSY: 409,
    DispatchOutcome.DISCARDED: 409,
}

_VERIFY_STATUS: dict[VerifyOutcome, int] = {
    VerifyOutcome.VERIFIED: 200,
    VerifyOutcome.INVALID_CODE_FORMAT: 422,
    VerifyOutcome.CODE_REJECTED: 401,
    VerifyOutcome.TICKET_EXPIRED: 410,
    VerifyOutcome.WRONG_STAGE: 409,
    VerifyOutcome.BUSY: 409,
    VerifyOutcome.DISCARDED: 409,
}

_PROFILE_STATUS: dict[ProfileOutcome, int] = {
    ProfileOutcome.AUTHENTICATED: 200,
    ProfileOutcome.VALIDATION_FAILED: 422,
    ProfileOutcome.INVALID_CREDENTIALS: 401,
    ProfileOutcome.PERSISTENCE_ERROR: 502,
    ProfileOutcome.LOCATION_DATA_UNAVAILABLE: 503,
    ProfileOutcome.NOT_VERIFIED: 409,
    ProfileOutcome.BUSY: 409,
}


def _respond(result: BaseModel, status_code: int) -> ORJSONResponse:
    headers: dict[str, str] = {}
    retry_after = getattr(result, "retry_after_seconds", None)
    if status_code == 429 and retry_after:
        headers["Retry-After"] = str(int(retry_after) + 1)
    return ORJSONResponse(status_code=status_code, content=result.model_dump(mode="json"), headers=headers)


def _session_view(client: ClientSession) -> SessionView:
    session = client.session
    return SessionView(
        state=session.state,
        identity=session.identity,
        error=session.error,
        message=session.error_message,
        otp_stage=client.otp.stage,
        resend_available_in=round(client.otp.resend_available_in(), 1),
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/session", response_model=SessionView)
async def get_session(client: ClientSession = Depends(get_client)) -> SessionView:
    """Current session state; restores persisted state on first call."""
    return _session_view(client)


@router.post("/session/restore", response_model=SessionView)
async def retry_restore(client: ClientSession = Depends(get_client)) -> SessionView:
    """Retry a restore that ended in ``error`` (e.g. ``load_timeout``)."""
    await client.session.restore()
    return _session_view(client)


@router.post("/logout", response_model=SessionView)
async def logout(client: ClientSession = Depends(get_client)) -> SessionView:
    await client.session.logout()
    client.otp.reset()
    return _session_view(client)


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------


@router.post("/otp", response_model=DispatchResult)
async def send_otp(body: PhoneRequest, client: ClientSession = Depends(get_client)) -> Any:
    result = await client.otp.submit_phone(body.phone)
    return _respond(result, _DISPATCH_STATUS[result.outcome])


@router.post("/otp/resend", response_model=DispatchResult)
async def resend_otp(client: ClientSession = Depends(get_client)) -> Any:
    result = await client.otp.resend()
    return _respond(result, _DISPATCH_STATUS[result.outcome])


@router.post("/otp/reset", response_model=SessionView)
async def reset_otp(client: ClientSession = Depends(get_client)) -> SessionView:
    """Go back to phone entry (e.g. the user wants to change the number)."""
    client.otp.reset()
    return _session_view(client)


@router.post("/otp/verify", response_model=VerifyResponse)
async def verify_otp(body: CodeRequest, client: ClientSession = Depends(get_client)) -> Any:
    """Verify the code; on success the backend session is attached to the client.

    A citizen whose profile already exists is authenticated immediately;
    everyone else continues to profile completion.
    """
    result = await client.otp.submit_code(body.code)
    response = VerifyResponse(**result.model_dump())

    if result.ok and client.otp.auth_session is not None and not client.session.is_authenticated:
        try:
            response.session_state = await client.session.attach_backend_session(
                client.otp.auth_session,
                role=body.role,
            )
        except PersistenceError as exc:
            # The phone is verified; profile completion can still proceed.
            logger.warning("api.auth.attach_failed", error=exc.message)
            response.session_state = client.session.state
        if client.session.is_authenticated:
            client.otp.reset()
    else:
        response.session_state = client.session.state

    return _respond(response, _VERIFY_STATUS[result.outcome])


# ---------------------------------------------------------------------------
# Profile completion
# ---------------------------------------------------------------------------


@router.post("/profile/citizen", response_model=ProfileResult)
async def complete_citizen_profile(
    body: CitizenProfileForm,
    client: ClientSession = Depends(get_client),
) -> Any:
    if client.session.is_authenticated:
        raise HTTPException(status_code=409, detail="Already signed in.")
    result = await client.profile.complete_citizen(body)
    return _respond(result, _PROFILE_STATUS[result.outcome])


@router.post("/profile/official", response_model=ProfileResult)
async def complete_official_profile(
    body: OfficialCredentials,
    client: ClientSession = Depends(get_client),
) -> Any:
    if client.session.is_authenticated:
        raise HTTPException(status_code=409, detail="Already signed in.")
    result = await client.profile.complete_official(body)
    return _respond(result, _PROFILE_STATUS[result.outcome])
