"""Profile completion after phone verification.

Two paths share one verified context (trusted phone + backend session):

* **Citizen** -- the form is validated in full against the location
  cascade, every violation is reported at once, and only then is the
  citizen persisted through :meth:`SessionStore.login`.
* **Official** -- (name, department, employee id) must exactly match a
  roster row.  A miss is ``invalid_credentials`` and nothing is written;
  a hit is promoted into the session without touching the users table.

The verified context comes from the OTP machine when it is ``verified``
or, after a reload, from a session store that is ``awaiting_profile``.
"""

from __future__ import annotations

from typing import NamedTuple

import structlog
from pydantic import ValidationError

from src.middleware.privacy import mask_phone
from src.models.enums import ErrorKind, Gender, OtpStage, ProfileOutcome, SessionState
from src.models.identity import CitizenIdentity, RosterEntry
from src.models.profile import (
    CitizenProfileForm,
    FieldViolation,
    OfficialCredentials,
    ProfileResult,
)
from src.models.verification import AuthSession
from src.services.errors import GatewayError, LocationDataUnavailable, PersistenceError
from src.services.gateway import RowStore
from src.services.location import LocationCascadeResolver, LocationDirectory
from src.services.otp_session import OtpSessionMachine
from src.services.query import eq
from src.services.session_store import SessionStore
from src.services.single_flight import SingleFlight

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_MIN_AGE = 1
_MAX_AGE = 120
_MAX_NAME_LENGTH = 200


class _VerifiedContext(NamedTuple):
    phone_number: str
    auth: AuthSession


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _parse_age(raw: int | str | None) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    text = raw.strip()
    if not text.isascii() or not text.isdigit():
        return None
    return int(text)


def validate_citizen_form(form: CitizenProfileForm, resolver: LocationCascadeResolver) -> list[FieldViolation]:
    """Collect every problem with *form*; an empty list means it is valid."""
    violations: list[FieldViolation] = []

    name = form.name.strip()
    if not name:
        violations.append(FieldViolation(field="name", message="Name is required"))
    elif len(name) > _MAX_NAME_LENGTH:
        violations.append(FieldViolation(field="name", message="Name is too long"))

    if form.age is None or (isinstance(form.age, str) and not form.age.strip()):
        violations.append(FieldViolation(field="age", message="Age is required"))
    else:
        age = _parse_age(form.age)
        if age is None:
            violations.append(FieldViolation(field="age", message="Age must be a whole number"))
        elif not _MIN_AGE <= age <= _MAX_AGE:
            violations.append(
                FieldViolation(field="age", message=f"Age must be between {_MIN_AGE} and {_MAX_AGE}")
            )

    if form.gender and form.gender.strip().lower() not in {g.value for g in Gender}:
        violations.append(FieldViolation(field="gender", message="Select male, female or other"))

    district = (form.district or "").strip()
    mandal = (form.mandal or "").strip()
    village = (form.village or "").strip()

    if not district:
        violations.append(FieldViolation(field="district", message="Select a district"))
    elif district not in resolver.districts():
        violations.append(FieldViolation(field="district", message="Unknown district"))

    if not mandal:
        violations.append(FieldViolation(field="mandal", message="Select a mandal"))
    elif mandal not in resolver.mandals_of(district):
        violations.append(FieldViolation(field="mandal", message="Mandal is not in the selected district"))

    if not village:
        violations.append(FieldViolation(field="village", message="Select a village"))
    elif village not in resolver.villages_of(district, mandal):
        violations.append(FieldViolation(field="village", message="Village is not in the selected mandal"))

    return violations


def validate_official_credentials(credentials: OfficialCredentials) -> list[FieldViolation]:
    violations: list[FieldViolation] = []
    for field, label in (("name", "Name"), ("department", "Department"), ("employee_id", "Employee ID")):
        if not getattr(credentials, field).strip():
            violations.append(FieldViolation(field=field, message=f"{label} is required"))
    return violations


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


class ProfileCompletionFlow:
    """Turns a verified phone into an authenticated citizen or official.

    Parameters
    ----------
    otp:
        The client's OTP machine.
    session:
        The client's session store.
    store:
        Row store used for the roster lookup.
    locations:
        Shared location directory.
    employees_table:
        Name of the roster table.
    """

    def __init__(
        self,
        otp: OtpSessionMachine,
        session: SessionStore,
        store: RowStore,
        locations: LocationDirectory,
        *,
        employees_table: str = "employees",
    ) -> None:
        self._otp = otp
        self._session = session
        self._store = store
        self._locations = locations
        self._employees_table = employees_table
        self._flight = SingleFlight("profile")

    @property
    def busy(self) -> bool:
        return self._flight.busy

    def _verified_context(self) -> _VerifiedContext | None:
        if self._otp.stage == OtpStage.VERIFIED:
            phone = self._otp.verified_phone
            auth = self._otp.auth_session
            if phone and auth:
                return _VerifiedContext(phone, auth)
        if self._session.state == SessionState.AWAITING_PROFILE and self._session.auth is not None:
            phone = self._session.auth.user.phone
            if phone:
                return _VerifiedContext(phone if phone.startswith("+") else f"+{phone}", self._session.auth)
        return None

    async def _resolver(self) -> LocationCascadeResolver:
        if not self._locations.ready:
            await self._locations.load()
        return self._locations.resolver

    async def complete_citizen(self, form: CitizenProfileForm) -> ProfileResult:
        if self._flight.busy:
            return ProfileResult(outcome=ProfileOutcome.BUSY, message="Your profile is already being saved")
        context = self._verified_context()
        if context is None:
            return ProfileResult(outcome=ProfileOutcome.NOT_VERIFIED, message="Verify your phone number first")

        with self._flight.hold():
            try:
                resolver = await self._resolver()
            except LocationDataUnavailable as exc:
                return ProfileResult(
                    outcome=ProfileOutcome.LOCATION_DATA_UNAVAILABLE,
                    error=ErrorKind.LOCATION_DATA_UNAVAILABLE,
                    message=exc.message,
                )

            violations = validate_citizen_form(form, resolver)
            if violations:
                logger.info("profile.citizen_invalid", fields=[v.field for v in violations])
                return ProfileResult(outcome=ProfileOutcome.VALIDATION_FAILED, violations=violations)

            citizen = CitizenIdentity(
                name=form.name.strip(),
                age=_parse_age(form.age),
                gender=form.gender.strip().lower() if form.gender and form.gender.strip() else None,
                phone_number=context.phone_number,
                locality=(form.locality or "").strip() or None,
                district=(form.district or "").strip(),
                mandal=(form.mandal or "").strip(),
                village=(form.village or "").strip(),
                auth_user_id=context.auth.user_id,
            )
            try:
                identity = await self._session.login(citizen, auth=context.auth)
            except PersistenceError as exc:
                return ProfileResult(
                    outcome=ProfileOutcome.PERSISTENCE_ERROR,
                    error=ErrorKind.PERSISTENCE_ERROR,
                    message=exc.message,
                )

        self._otp.reset()
        logger.info("profile.citizen_completed", phone=mask_phone(identity.phone_number), district=citizen.district)
        return ProfileResult(outcome=ProfileOutcome.AUTHENTICATED, identity=identity)

    async def complete_official(self, credentials: OfficialCredentials) -> ProfileResult:
        if self._flight.busy:
            return ProfileResult(outcome=ProfileOutcome.BUSY, message="Your credentials are already being checked")
        context = self._verified_context()
        if context is None:
            return ProfileResult(outcome=ProfileOutcome.NOT_VERIFIED, message="Verify your phone number first")

        violations = validate_official_credentials(credentials)
        if violations:
            return ProfileResult(outcome=ProfileOutcome.VALIDATION_FAILED, violations=violations)

        name = credentials.name.strip()
        department = credentials.department.strip()
        employee_id = credentials.employee_id.strip()

        with self._flight.hold():
            try:
                rows = await self._store.select(
                    self._employees_table,
                    [eq("name", name), eq("department", department), eq("employee_id", employee_id)],
                    limit=1,
                    access_token=context.auth.access_token,
                )
            except GatewayError as exc:
                logger.error("profile.roster_lookup_failed", error=exc.message)
                return ProfileResult(
                    outcome=ProfileOutcome.PERSISTENCE_ERROR,
                    error=ErrorKind.PERSISTENCE_ERROR,
                    message="Could not check your credentials, please try again",
                )

            if not rows:
                logger.info("profile.roster_miss", employee_id=employee_id)
                return ProfileResult(
                    outcome=ProfileOutcome.INVALID_CREDENTIALS,
                    error=ErrorKind.INVALID_CREDENTIALS,
                    message="Invalid employee credentials. Please check your details.",
                )

            try:
                entry = RosterEntry.from_row(rows[0])
                official = entry.to_identity(context.phone_number)
            except (KeyError, TypeError, ValidationError):
                logger.error("profile.roster_row_invalid", employee_id=employee_id, exc_info=True)
                return ProfileResult(
                    outcome=ProfileOutcome.PERSISTENCE_ERROR,
                    error=ErrorKind.PERSISTENCE_ERROR,
                    message="Your roster entry could not be read, please contact your administrator",
                )

            try:
                identity = await self._session.login(official, auth=context.auth, roster_entry=entry)
            except PersistenceError as exc:
                return ProfileResult(
                    outcome=ProfileOutcome.PERSISTENCE_ERROR,
                    error=ErrorKind.PERSISTENCE_ERROR,
                    message=exc.message,
                )

        self._otp.reset()
        logger.info("profile.official_completed", employee_id=entry.employee_id, department=entry.department)
        return ProfileResult(outcome=ProfileOutcome.AUTHENTICATED, identity=identity)
