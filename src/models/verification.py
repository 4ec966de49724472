"""Phone verification models.

Defines the ephemeral :class:`VerificationTicket` held by the OTP session
machine, the result variants returned by its operations, and the backend
auth session produced by a successful verification.

Timestamps on the ticket come from the machine's monotonic clock, not
wall-clock time, so they are only meaningful relative to that clock.
"""

from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel

from src.models.enums import DispatchOutcome, DispatchStatus, ErrorKind, OtpStage, VerifyOutcome


class VerificationTicket(BaseModel):
    """State of one phone-number verification attempt."""

    model_config = {"frozen": False}

    phone_number: str  # normalised, not yet trusted
    status: DispatchStatus = DispatchStatus.NOT_SENT
    resend_available_at: float = 0.0
    expires_at: float | None = None
    dispatch_count: int = 0

    def cooldown_remaining(self, now: float) -> float:
        return max(0.0, self.resend_available_at - now)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class DispatchResult(BaseModel):
    outcome: DispatchOutcome
    stage: OtpStage
    phone_number: str | None = None
    error: ErrorKind | None = None
    message: str | None = None
    retry_after_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == DispatchOutcome.SENT


class VerifyResult(BaseModel):
    outcome: VerifyOutcome
    stage: OtpStage
    phone_number: str | None = None
    error: ErrorKind | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == VerifyOutcome.VERIFIED


class AuthUser(BaseModel):
    """The backend auth user behind a session token."""

    id: str
    phone: str | None = None


class AuthSession(BaseModel):
    """Backend session issued after a successful OTP verification."""

    access_token: str
    refresh_token: str | None = None
    user: AuthUser
    expires_at: datetime | None = None

    @property
    def user_id(self) -> str:
        return self.user.id
