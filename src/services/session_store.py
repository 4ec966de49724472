"""Per-client session store.

Lifecycle::

    uninitialized --restore--> restoring --> anonymous
                                        +--> awaiting_profile
                                        +--> authenticated
                                        +--> error (retry restore)

    attach_backend_session  ->  authenticated | awaiting_profile
    login                   ->  authenticated
    logout                  ->  anonymous   (from any state)

The store holds at most one :data:`~src.models.identity.Identity`.  It is
"authenticated" only when both a backend session and an identity are
present; a verified backend session without a profile is
``awaiting_profile`` and feeds back into profile completion.

The identity, backend session and (for officials) the roster entry are
mirrored into the client's :class:`~src.services.cache.LocalState` so a
reload can restore without re-verifying the phone number.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import ValidationError

from src.middleware.privacy import mask_phone
from src.models.enums import ErrorKind, Role, SessionState
from src.models.identity import CitizenIdentity, OfficialIdentity, RosterEntry, identity_adapter
from src.models.verification import AuthSession, AuthUser
from src.services.cache import AUTH_KEY, EMPLOYEE_KEY, USER_KEY, LocalState
from src.services.errors import GatewayError, InvalidSessionTransition, PersistenceError
from src.services.gateway import Backend
from src.services.query import eq

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_LOGIN_FROM = frozenset({
    SessionState.UNINITIALIZED,
    SessionState.ANONYMOUS,
    SessionState.AWAITING_PROFILE,
    SessionState.ERROR,
})


class SessionStore:
    """Holds the authenticated principal for one client session.

    Parameters
    ----------
    backend:
        Auth backend and row store.
    local_state:
        The client's persisted key/value state.
    users_table:
        Table holding citizen profiles.
    restore_timeout:
        Seconds before :meth:`restore` gives up with ``load_timeout``.
    """

    def __init__(
        self,
        backend: Backend,
        local_state: LocalState,
        *,
        users_table: str = "users",
        restore_timeout: float = 10.0,
    ) -> None:
        self._backend = backend
        self._local = local_state
        self._users_table = users_table
        self._restore_timeout = restore_timeout

        self._state = SessionState.UNINITIALIZED
        self._identity: CitizenIdentity | OfficialIdentity | None = None
        self._auth: AuthSession | None = None
        self._roster_entry: RosterEntry | None = None
        self._error: ErrorKind | None = None
        self._error_message: str | None = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> CitizenIdentity | OfficialIdentity | None:
        return self._identity

    @property
    def auth(self) -> AuthSession | None:
        return self._auth

    @property
    def roster_entry(self) -> RosterEntry | None:
        return self._roster_entry

    @property
    def error(self) -> ErrorKind | None:
        return self._error

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED and self._identity is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        if new_state != self._state:
            logger.debug(
                "session.transition",
                client_id=self._local.client_id,
                from_state=self._state.value,
                to_state=new_state.value,
            )
        self._state = new_state
        if new_state != SessionState.ERROR:
            self._error = None
            self._error_message = None

    def _fail(self, kind: ErrorKind, message: str) -> None:
        self._state = SessionState.ERROR
        self._error = kind
        self._error_message = message

    async def attach_backend_session(self, auth: AuthSession, *, role: Role = Role.CITIZEN) -> SessionState:
        """Adopt a freshly verified backend session.

        For the citizen role an existing ``users`` row for the auth user
        logs the citizen straight in; otherwise the store waits for
        profile completion.  Officials always go through the roster.

        Raises
        ------
        InvalidSessionTransition
            If a principal is already authenticated.
        PersistenceError
            If the profile lookup failed; the store is unchanged.
        """
        if self._state not in _LOGIN_FROM:
            raise InvalidSessionTransition(f"Cannot attach a session while {self._state.value}")

        citizen: CitizenIdentity | None = None
        if role == Role.CITIZEN:
            try:
                citizen = await self._fetch_citizen(auth)
            except GatewayError as exc:
                logger.error("session.profile_lookup_failed", error=exc.message)
                raise PersistenceError("Could not load your profile, please try again") from exc

        self._auth = auth
        await self._local.set(AUTH_KEY, auth.model_dump(mode="json"))

        if citizen is not None:
            await self._promote(citizen)
            logger.info("session.returning_citizen", user_id=auth.user_id)
        else:
            self._identity = None
            self._roster_entry = None
            self._transition(SessionState.AWAITING_PROFILE)
        return self._state

    async def login(
        self,
        identity: CitizenIdentity | OfficialIdentity,
        *,
        auth: AuthSession | None = None,
        roster_entry: RosterEntry | None = None,
    ) -> CitizenIdentity | OfficialIdentity:
        """Promote *identity* into the session.

        Citizens are upserted into the users table keyed by the backend
        auth user id before the store changes; the persisted row becomes
        the session identity.  Officials are stored directly together with
        their roster entry.

        Raises
        ------
        InvalidSessionTransition
            If a principal is already authenticated, or a citizen login
            has no backend session.
        PersistenceError
            If the citizen upsert failed; the store is unchanged.
        """
        if self._state not in _LOGIN_FROM:
            raise InvalidSessionTransition(f"Cannot log in while {self._state.value}")
        auth = auth or self._auth

        match identity:
            case CitizenIdentity():
                if auth is None:
                    raise InvalidSessionTransition("A verified backend session is required")
                record = identity.model_copy(update={"auth_user_id": auth.user_id}).to_row()
                try:
                    row = await self._backend.upsert(
                        self._users_table,
                        record,
                        on_conflict="auth_user_id",
                        access_token=auth.access_token,
                    )
                    persisted: CitizenIdentity | OfficialIdentity = CitizenIdentity.from_row(row)
                except GatewayError as exc:
                    logger.error("session.citizen_upsert_failed", error=exc.message, user_id=auth.user_id)
                    raise PersistenceError(exc.message or "Could not save your profile") from exc
                except (KeyError, ValidationError) as exc:
                    logger.error("session.citizen_row_invalid", user_id=auth.user_id)
                    raise PersistenceError("The saved profile could not be read back") from exc
                roster_entry = None
            case OfficialIdentity():
                persisted = identity

        if auth is not None:
            self._auth = auth
            await self._local.set(AUTH_KEY, auth.model_dump(mode="json"))
        self._roster_entry = roster_entry
        if roster_entry is not None:
            await self._local.set(EMPLOYEE_KEY, roster_entry.model_dump(mode="json"))
        else:
            await self._local.delete(EMPLOYEE_KEY)
        await self._promote(persisted)
        logger.info("session.login", role=persisted.role, phone=mask_phone(persisted.phone_number))
        return persisted

    async def logout(self) -> None:
        """Clear the identity and cached state, then invalidate the backend session."""
        auth = self._auth
        self._identity = None
        self._auth = None
        self._roster_entry = None
        self._transition(SessionState.ANONYMOUS)
        await self._local.clear()

        if auth is not None:
            try:
                await self._backend.sign_out(auth.access_token)
            except GatewayError as exc:
                logger.warning("session.sign_out_failed", error=exc.message)
        logger.info("session.logout", client_id=self._local.client_id)

    async def restore(self) -> SessionState:
        """Rebuild the session from persisted client state.

        Only runs from ``uninitialized`` or ``error``; any other state is
        returned unchanged.  Bounded by ``restore_timeout``: on expiry the
        store enters ``error`` with ``load_timeout`` and may be retried.
        """
        if self._state not in (SessionState.UNINITIALIZED, SessionState.ERROR):
            return self._state

        self._transition(SessionState.RESTORING)
        try:
            async with asyncio.timeout(self._restore_timeout):
                await self._restore()
        except TimeoutError:
            logger.warning("session.restore_timeout", timeout=self._restore_timeout)
            self._fail(ErrorKind.LOAD_TIMEOUT, "Restoring your session took too long, please retry")
        except GatewayError as exc:
            logger.error("session.restore_failed", error=exc.message)
            self._fail(ErrorKind.PERSISTENCE_ERROR, exc.message or "Could not restore your session")
        return self._state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _promote(self, identity: CitizenIdentity | OfficialIdentity) -> None:
        self._identity = identity
        await self._local.set(USER_KEY, identity.model_dump(mode="json"))
        self._transition(SessionState.AUTHENTICATED)

    async def _fetch_citizen(self, auth: AuthSession) -> CitizenIdentity | None:
        rows = await self._backend.select(
            self._users_table,
            [eq("auth_user_id", auth.user_id)],
            limit=1,
            access_token=auth.access_token,
        )
        if not rows:
            return None
        try:
            return CitizenIdentity.from_row(rows[0])
        except (KeyError, ValidationError):
            logger.warning("session.citizen_row_invalid", user_id=auth.user_id)
            return None

    async def _discard(self) -> None:
        self._identity = None
        self._auth = None
        self._roster_entry = None
        await self._local.clear()
        self._transition(SessionState.ANONYMOUS)

    async def _restore(self) -> None:
        cached_auth = await self._local.get(AUTH_KEY)
        cached_user = await self._local.get(USER_KEY)

        if cached_auth is None:
            if cached_user is not None:
                logger.info("session.stale_identity_discarded", reason="no_backend_session")
            await self._discard()
            return

        try:
            auth = AuthSession.model_validate(cached_auth)
        except ValidationError:
            logger.warning("session.cached_auth_invalid")
            await self._discard()
            return

        user = await self._backend.get_user(auth.access_token)
        if user is None and auth.refresh_token:
            refreshed = await self._backend.refresh_session(auth.refresh_token)
            if refreshed is not None:
                auth = refreshed
                user = refreshed.user
                await self._local.set(AUTH_KEY, auth.model_dump(mode="json"))
                logger.info("session.token_refreshed", user_id=user.id)

        if user is None:
            logger.info("session.expired", had_identity=cached_user is not None)
            await self._discard()
            return

        self._auth = auth
        identity = self._decode_identity(cached_user)

        match identity:
            case OfficialIdentity():
                official = await self._rehydrate_official(identity)
                if official is not None:
                    self._identity = official
                    self._transition(SessionState.AUTHENTICATED)
                    logger.info("session.restored", role="official")
                    return
            case _:
                citizen = await self._fetch_citizen(auth)
                if citizen is not None:
                    await self._promote(citizen)
                    logger.info("session.restored", role="citizen")
                    return

        await self._await_profile(user)

    async def _await_profile(self, user: AuthUser) -> None:
        self._identity = None
        self._roster_entry = None
        await self._local.delete(USER_KEY, EMPLOYEE_KEY)
        self._transition(SessionState.AWAITING_PROFILE)
        logger.info("session.restored", role=None, user_id=user.id)

    @staticmethod
    def _decode_identity(cached: Any) -> CitizenIdentity | OfficialIdentity | None:
        if cached is None:
            return None
        try:
            return identity_adapter.validate_python(cached)
        except ValidationError:
            logger.warning("session.cached_identity_invalid")
            return None

    async def _rehydrate_official(self, cached: OfficialIdentity) -> OfficialIdentity | None:
        raw = await self._local.get(EMPLOYEE_KEY)
        if raw is None:
            return None
        try:
            entry = RosterEntry.model_validate(raw)
        except ValidationError:
            logger.warning("session.cached_roster_invalid")
            return None
        if entry.employee_id != cached.employee_id:
            return None
        self._roster_entry = entry
        return entry.to_identity(cached.phone_number)
