"""OTP session machine: phone entry -> code dispatch -> verification.

Stages::

    phone_entry --submit_phone--> dispatching --ok--> awaiting_code
         ^                            |                 |   ^
         |                          fail            submit_code / resend
         +----------------------------+                 |   |
         +------------------ reset / expiry ------------+   |
                                                   verifying --fail--+
                                                        |
                                                       ok
                                                        v
                                                     verified

Every operation returns a result model instead of raising.  Only one
dispatch or verify call is in flight at a time; a second call while one
is pending gets ``busy`` and never reaches the provider.  ``reset()``
bumps an epoch counter so a result that lands after the reset is
discarded instead of resurrecting the old flow; the pending call still
holds the guard, so a new dispatch waits for it to settle.  Provider
failures of any kind come back as ``dispatch_failed`` or
``code_rejected``.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from functools import lru_cache

import structlog

from src.middleware.privacy import mask_phone
from src.models.enums import DispatchOutcome, DispatchStatus, ErrorKind, OtpStage, VerifyOutcome
from src.models.verification import AuthSession, DispatchResult, VerificationTicket, VerifyResult
from src.services.errors import GatewayError
from src.services.gateway import OtpProvider
from src.services.single_flight import SingleFlight

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SEPARATORS = re.compile(r"[\s\-().]")


# ---------------------------------------------------------------------------
# Phone normalisation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=8)
def _phone_pattern(country_code: str, local_digits: int, mobile_prefixes: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?:\+?{re.escape(country_code)})?([{re.escape(mobile_prefixes)}][0-9]{{{local_digits - 1}}})"
    )


def normalize_phone(
    raw: str,
    *,
    country_code: str = "91",
    local_digits: int = 10,
    mobile_prefixes: str = "6789",
) -> str:
    """Normalise *raw* to ``+<country_code><local number>``.

    Spaces, dashes, dots and parentheses are ignored.  The country code
    (with or without ``+``) is optional.  The local number must be exactly
    *local_digits* long and start with one of *mobile_prefixes*.

    Raises
    ------
    ValueError
        If *raw* is not a valid mobile number.
    """
    candidate = _SEPARATORS.sub("", raw or "")
    match = _phone_pattern(country_code, local_digits, mobile_prefixes).fullmatch(candidate)
    if match is None:
        raise ValueError("Enter a valid mobile number")
    return f"+{country_code}{match.group(1)}"


def is_valid_code(code: str, length: int = 6) -> bool:
    return len(code) == length and code.isascii() and code.isdigit()


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class OtpSessionMachine:
    """Per-client phone verification flow.

    Parameters
    ----------
    provider:
        OTP dispatch / verification backend.
    code_length:
        Exact number of digits in a code.
    resend_cooldown:
        Seconds after each dispatch before ``resend`` is allowed.
    ticket_ttl:
        Seconds after dispatch before the ticket expires.
    clock:
        Monotonic time source.
    country_code, local_digits, mobile_prefixes:
        Phone validation rules, see :func:`normalize_phone`.
    """

    def __init__(
        self,
        provider: OtpProvider,
        *,
        code_length: int = 6,
        resend_cooldown: float = 30.0,
        ticket_ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        country_code: str = "91",
        local_digits: int = 10,
        mobile_prefixes: str = "6789",
    ) -> None:
        self._provider = provider
        self._code_length = code_length
        self._resend_cooldown = resend_cooldown
        self._ticket_ttl = ticket_ttl
        self._clock = clock
        self._country_code = country_code
        self._local_digits = local_digits
        self._mobile_prefixes = mobile_prefixes

        self._stage = OtpStage.PHONE_ENTRY
        self._ticket: VerificationTicket | None = None
        self._entered_code = ""
        self._auth_session: AuthSession | None = None
        self._epoch = 0
        self._flight = SingleFlight("otp")

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def stage(self) -> OtpStage:
        return self._stage

    @property
    def ticket(self) -> VerificationTicket | None:
        return self._ticket

    @property
    def entered_code(self) -> str:
        return self._entered_code

    @property
    def busy(self) -> bool:
        return self._flight.busy

    @property
    def verified_phone(self) -> str | None:
        """The trusted phone number, only once the flow is ``verified``."""
        if self._stage != OtpStage.VERIFIED or self._ticket is None:
            return None
        return self._ticket.phone_number

    @property
    def auth_session(self) -> AuthSession | None:
        return self._auth_session if self._stage == OtpStage.VERIFIED else None

    def resend_available_in(self) -> float:
        if self._ticket is None or self._stage != OtpStage.AWAITING_CODE:
            return 0.0
        return self._ticket.cooldown_remaining(self._clock())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit_phone(self, raw: str) -> DispatchResult:
        if self._flight.busy:
            return self._dispatch_result(DispatchOutcome.BUSY, message="A request is already in progress")
        if self._stage != OtpStage.PHONE_ENTRY:
            return self._dispatch_result(
                DispatchOutcome.WRONG_STAGE,
                message=f"Cannot submit a phone number while {self._stage.value}",
            )

        try:
            phone = normalize_phone(
                raw,
                country_code=self._country_code,
                local_digits=self._local_digits,
                mobile_prefixes=self._mobile_prefixes,
            )
        except ValueError as exc:
            logger.info("otp.invalid_phone")
            return self._dispatch_result(
                DispatchOutcome.INVALID_FORMAT,
                error=ErrorKind.INVALID_FORMAT,
                message=str(exc),
            )

        self._ticket = VerificationTicket(phone_number=phone)
        return await self._dispatch(self._ticket)

    async def resend(self) -> DispatchResult:
        if self._flight.busy:
            return self._dispatch_result(DispatchOutcome.BUSY, message="A request is already in progress")
        if self._stage != OtpStage.AWAITING_CODE or self._ticket is None:
            return self._dispatch_result(
                DispatchOutcome.WRONG_STAGE,
                message="There is no code to resend",
            )

        remaining = self._ticket.cooldown_remaining(self._clock())
        if remaining > 0:
            return self._dispatch_result(
                DispatchOutcome.COOLDOWN_ACTIVE,
                message=f"Please wait {int(remaining) + 1}s before requesting a new code",
                retry_after_seconds=remaining,
            )
        return await self._dispatch(self._ticket)

    async def submit_code(self, code: str) -> VerifyResult:
        if self._flight.busy:
            return self._verify_result(VerifyOutcome.BUSY, message="A request is already in progress")
        if self._stage != OtpStage.AWAITING_CODE or self._ticket is None:
            return self._verify_result(
                VerifyOutcome.WRONG_STAGE,
                message=f"Cannot verify a code while {self._stage.value}",
            )
        if not is_valid_code(code, self._code_length):
            return self._verify_result(
                VerifyOutcome.INVALID_CODE_FORMAT,
                error=ErrorKind.INVALID_CODE_FORMAT,
                message=f"Enter the {self._code_length}-digit code",
            )
        if self._ticket.is_expired(self._clock()):
            phone = self._ticket.phone_number
            self.reset()
            logger.info("otp.ticket_expired", phone=mask_phone(phone))
            return self._verify_result(
                VerifyOutcome.TICKET_EXPIRED,
                error=ErrorKind.VERIFY_FAILED,
                message="The code has expired, request a new one",
            )

        ticket = self._ticket
        epoch = self._epoch
        with self._flight.hold():
            self._entered_code = code
            self._stage = OtpStage.VERIFYING
            try:
                session = await self._provider.verify_otp(ticket.phone_number, code)
            except Exception as exc:
                if epoch != self._epoch:
                    return self._discarded_verify()
                self._stage = OtpStage.AWAITING_CODE
                self._entered_code = ""
                if isinstance(exc, GatewayError):
                    logger.info("otp.code_rejected", phone=mask_phone(ticket.phone_number), error=exc.message)
                    message = exc.message or "Invalid verification code"
                else:
                    logger.error("otp.verify_unexpected_error", phone=mask_phone(ticket.phone_number), exc_info=True)
                    message = "Could not verify the code, please try again"
                return self._verify_result(
                    VerifyOutcome.CODE_REJECTED,
                    error=ErrorKind.VERIFY_FAILED,
                    message=message,
                )
            except BaseException:
                # Cancelled: leave the code enterable again.
                if epoch == self._epoch:
                    self._stage = OtpStage.AWAITING_CODE
                raise

        if epoch != self._epoch:
            return self._discarded_verify()

        ticket.status = DispatchStatus.VERIFIED
        self._auth_session = session
        self._entered_code = ""
        self._stage = OtpStage.VERIFIED
        logger.info("otp.verified", phone=mask_phone(ticket.phone_number), user_id=session.user_id)
        return self._verify_result(VerifyOutcome.VERIFIED)

    def reset(self) -> None:
        """Return to ``phone_entry``, discarding the ticket, code and any pending result."""
        self._epoch += 1
        self._stage = OtpStage.PHONE_ENTRY
        self._ticket = None
        self._entered_code = ""
        self._auth_session = None
        # A call still in flight keeps the guard until it settles; its result is discarded.
        logger.debug("otp.reset", epoch=self._epoch)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _dispatch(self, ticket: VerificationTicket) -> DispatchResult:
        epoch = self._epoch
        with self._flight.hold():
            self._stage = OtpStage.DISPATCHING
            try:
                await self._provider.send_otp(ticket.phone_number)
            except Exception as exc:
                if epoch != self._epoch:
                    return self._discarded_dispatch()
                ticket.status = DispatchStatus.FAILED
                self._stage = OtpStage.PHONE_ENTRY
                self._entered_code = ""
                if isinstance(exc, GatewayError):
                    logger.warning("otp.dispatch_failed", phone=mask_phone(ticket.phone_number), error=exc.message)
                    message = exc.message or "Could not send the verification code"
                else:
                    logger.error("otp.dispatch_unexpected_error", phone=mask_phone(ticket.phone_number), exc_info=True)
                    message = "Could not send the verification code"
                return self._dispatch_result(
                    DispatchOutcome.DISPATCH_FAILED,
                    error=ErrorKind.DISPATCH_FAILED,
                    message=message,
                )
            except BaseException:
                if epoch == self._epoch:
                    ticket.status = DispatchStatus.FAILED
                    self._stage = OtpStage.PHONE_ENTRY
                raise

        if epoch != self._epoch:
            return self._discarded_dispatch()

        now = self._clock()
        ticket.status = DispatchStatus.SENT
        ticket.dispatch_count += 1
        ticket.resend_available_at = now + self._resend_cooldown
        ticket.expires_at = now + self._ticket_ttl
        self._entered_code = ""
        self._stage = OtpStage.AWAITING_CODE
        logger.info("otp.dispatched", phone=mask_phone(ticket.phone_number), attempt=ticket.dispatch_count)
        return self._dispatch_result(DispatchOutcome.SENT, retry_after_seconds=self._resend_cooldown)

    def _discarded_dispatch(self) -> DispatchResult:
        logger.info("otp.stale_result_discarded", operation="dispatch")
        return self._dispatch_result(DispatchOutcome.DISCARDED, message="The request was cancelled")

    def _discarded_verify(self) -> VerifyResult:
        logger.info("otp.stale_result_discarded", operation="verify")
        return self._verify_result(VerifyOutcome.DISCARDED, message="The request was cancelled")

    def _dispatch_result(
        self,
        outcome: DispatchOutcome,
        *,
        error: ErrorKind | None = None,
        message: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> DispatchResult:
        return DispatchResult(
            outcome=outcome,
            stage=self._stage,
            phone_number=self._ticket.phone_number if self._ticket else None,
            error=error,
            message=message,
            retry_after_seconds=retry_after_seconds,
        )

    def _verify_result(
        self,
        outcome: VerifyOutcome,
        *,
        error: ErrorKind | None = None,
        message: str | None = None,
    ) -> VerifyResult:
        return VerifyResult(
            outcome=outcome,
            stage=self._stage,
            phone_number=self._ticket.phone_number if self._ticket else None,
            error=error,
            message=message,
        )
