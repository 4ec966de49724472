"""Tests for the per-client session store: login, logout, restore."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from src.models.enums import ErrorKind, Role, SessionState
from src.models.identity import CitizenIdentity, OfficialIdentity, RosterEntry
from src.services.cache import AUTH_KEY, EMPLOYEE_KEY, USER_KEY
from src.services.errors import GatewayError, InvalidSessionTransition, PersistenceError
from src.services.session_store import SessionStore

PHONE = "+919812345678"
CODE = "654321"
CLIENT = "client-0001"


async def _verified(backend):
    await backend.send_otp(PHONE)
    return await backend.verify_otp(PHONE, CODE)


def _roster_entry(backend) -> RosterEntry:
    row = next(r for r in backend.rows("employees") if r["employee_id"] == "REV001")
    return RosterEntry.from_row(row)


@pytest.fixture
def local(cache):
    return cache.for_client(CLIENT)


@pytest.fixture
def store(backend, local) -> SessionStore:
    return SessionStore(backend, local)


# -----------------------------------------------------------------------
# attach_backend_session
# -----------------------------------------------------------------------


class TestAttachBackendSession:
    async def test_new_user_awaits_profile(self, store, backend, local) -> None:
        auth = await _verified(backend)

        state = await store.attach_backend_session(auth)

        assert state == SessionState.AWAITING_PROFILE
        assert store.identity is None
        assert not store.is_authenticated, "a backend session without a profile is not authenticated"
        assert (await local.get(AUTH_KEY))["access_token"] == auth.access_token

    async def test_returning_citizen_is_authenticated(self, store, backend, citizen) -> None:
        auth = await _verified(backend)
        await backend.upsert(
            "users",
            citizen.model_copy(update={"auth_user_id": auth.user_id}).to_row(),
            on_conflict="auth_user_id",
        )

        state = await store.attach_backend_session(auth)

        assert state == SessionState.AUTHENTICATED
        assert isinstance(store.identity, CitizenIdentity)
        assert store.identity.name == "Anita Rao"

    async def test_official_role_skips_citizen_lookup(self, store, backend, citizen) -> None:
        auth = await _verified(backend)
        await backend.upsert(
            "users",
            citizen.model_copy(update={"auth_user_id": auth.user_id}).to_row(),
            on_conflict="auth_user_id",
        )

        state = await store.attach_backend_session(auth, role=Role.OFFICIAL)

        assert state == SessionState.AWAITING_PROFILE

    async def test_lookup_failure_leaves_store_unchanged(self, store, backend, local) -> None:
        auth = await _verified(backend)
        with patch.object(backend, "select", AsyncMock(side_effect=GatewayError("boom", status_code=500))):
            with pytest.raises(PersistenceError):
                await store.attach_backend_session(auth)

        assert store.state == SessionState.UNINITIALIZED
        assert store.auth is None
        assert await local.get(AUTH_KEY) is None


# -----------------------------------------------------------------------
# login / logout
# -----------------------------------------------------------------------


class TestLogin:
    async def test_citizen_login_upserts_by_auth_user(self, store, backend, local, citizen) -> None:
        auth = await _verified(backend)
        await store.attach_backend_session(auth)

        identity = await store.login(citizen)

        rows = backend.rows("users")
        assert len(rows) == 1
        assert rows[0]["auth_user_id"] == auth.user_id
        assert rows[0]["phone_number"] == PHONE
        assert store.state == SessionState.AUTHENTICATED
        assert identity.id == rows[0]["id"], "the persisted row becomes the session identity"
        assert (await local.get(USER_KEY))["id"] == rows[0]["id"]

    async def test_second_login_updates_same_row(self, backend, cache, citizen) -> None:
        auth = await _verified(backend)
        first = SessionStore(backend, cache.for_client("client-aaaa"))
        await first.login(citizen, auth=auth)
        second = SessionStore(backend, cache.for_client("client-bbbb"))
        await second.login(citizen.model_copy(update={"name": "Anita R"}), auth=auth)

        rows = backend.rows("users")
        assert len(rows) == 1
        assert rows[0]["name"] == "Anita R"

    async def test_citizen_login_requires_backend_session(self, store, citizen) -> None:
        with pytest.raises(InvalidSessionTransition):
            await store.login(citizen)

    async def test_upsert_failure_leaves_store_unchanged(self, store, backend, local, citizen) -> None:
        auth = await _verified(backend)
        await store.attach_backend_session(auth)

        with patch.object(backend, "upsert", AsyncMock(side_effect=GatewayError("duplicate key", status_code=409))):
            with pytest.raises(PersistenceError, match="duplicate key"):
                await store.login(citizen)

        assert store.state == SessionState.AWAITING_PROFILE
        assert store.identity is None
        assert await local.get(USER_KEY) is None

    async def test_official_login_writes_no_citizen_row(self, store, backend, local) -> None:
        auth = await _verified(backend)
        entry = _roster_entry(backend)

        identity = await store.login(entry.to_identity(PHONE), auth=auth, roster_entry=entry)

        assert isinstance(identity, OfficialIdentity)
        assert backend.rows("users") == []
        assert store.roster_entry == entry
        assert (await local.get(EMPLOYEE_KEY))["employee_id"] == "REV001"

    async def test_login_while_authenticated_is_rejected(self, store, backend, citizen) -> None:
        auth = await _verified(backend)
        await store.login(citizen, auth=auth)

        with pytest.raises(InvalidSessionTransition):
            await store.login(citizen, auth=auth)


class TestLogout:
    async def test_logout_clears_everything(self, store, backend, local) -> None:
        auth = await _verified(backend)
        entry = _roster_entry(backend)
        await store.login(entry.to_identity(PHONE), auth=auth, roster_entry=entry)

        await store.logout()

        assert store.state == SessionState.ANONYMOUS
        assert store.identity is None
        assert store.roster_entry is None
        for key in (USER_KEY, AUTH_KEY, EMPLOYEE_KEY):
            assert await local.get(key) is None, f"{key} should be cleared"
        assert await backend.get_user(auth.access_token) is None, "backend session should be invalidated"

    async def test_logout_survives_sign_out_failure(self, store, backend, citizen) -> None:
        auth = await _verified(backend)
        await store.login(citizen, auth=auth)

        with patch.object(backend, "sign_out", AsyncMock(side_effect=GatewayError("down", retryable=True))):
            await store.logout()

        assert store.state == SessionState.ANONYMOUS

    async def test_logout_from_anonymous(self, store) -> None:
        await store.logout()
        assert store.state == SessionState.ANONYMOUS


# -----------------------------------------------------------------------
# restore
# -----------------------------------------------------------------------


class TestRestore:
    async def test_nothing_cached_is_anonymous(self, store) -> None:
        assert await store.restore() == SessionState.ANONYMOUS

    async def test_citizen_restores_after_reload(self, backend, cache, citizen) -> None:
        auth = await _verified(backend)
        before = SessionStore(backend, cache.for_client(CLIENT))
        persisted = await before.login(citizen, auth=auth)

        after = SessionStore(backend, cache.for_client(CLIENT))
        state = await after.restore()

        assert state == SessionState.AUTHENTICATED
        assert after.identity == persisted

    async def test_official_restores_from_cached_roster(self, backend, cache) -> None:
        auth = await _verified(backend)
        entry = _roster_entry(backend)
        before = SessionStore(backend, cache.for_client(CLIENT))
        await before.login(entry.to_identity(PHONE), auth=auth, roster_entry=entry)

        after = SessionStore(backend, cache.for_client(CLIENT))
        state = await after.restore()

        assert state == SessionState.AUTHENTICATED
        assert isinstance(after.identity, OfficialIdentity)
        assert after.identity.employee_id == "REV001"
        assert after.identity.phone_number == PHONE

    async def test_invalidated_session_discards_stale_identity(self, backend, cache, citizen) -> None:
        auth = await _verified(backend)
        before = SessionStore(backend, cache.for_client(CLIENT))
        await before.login(citizen, auth=auth)
        await backend.sign_out(auth.access_token)

        local = cache.for_client(CLIENT)
        after = SessionStore(backend, local)
        state = await after.restore()

        assert state == SessionState.ANONYMOUS
        assert after.identity is None
        assert await local.get(USER_KEY) is None, "stale cached identity must be discarded"

    async def test_identity_without_backend_session_is_discarded(self, store, local, citizen) -> None:
        await local.set(USER_KEY, citizen.model_dump(mode="json"))

        assert await store.restore() == SessionState.ANONYMOUS
        assert await local.get(USER_KEY) is None

    async def test_expired_token_is_refreshed(self, backend, cache, citizen) -> None:
        auth = await _verified(backend)
        before = SessionStore(backend, cache.for_client(CLIENT))
        await before.login(citizen, auth=auth)
        backend.expire_session(auth.access_token)

        local = cache.for_client(CLIENT)
        after = SessionStore(backend, local)
        state = await after.restore()

        assert state == SessionState.AUTHENTICATED
        assert after.auth.access_token != auth.access_token
        assert (await local.get(AUTH_KEY))["access_token"] == after.auth.access_token

    async def test_verified_user_without_profile_awaits_profile(self, backend, cache) -> None:
        auth = await _verified(backend)
        before = SessionStore(backend, cache.for_client(CLIENT))
        await before.attach_backend_session(auth)

        after = SessionStore(backend, cache.for_client(CLIENT))
        assert await after.restore() == SessionState.AWAITING_PROFILE

    async def test_timeout_is_retryable_error(self, local, auth_session) -> None:
        await local.set(AUTH_KEY, auth_session.model_dump(mode="json"))

        async def hang(token: str):
            await asyncio.sleep(10)

        slow = AsyncMock()
        slow.get_user.side_effect = hang
        store = SessionStore(slow, local, restore_timeout=0.01)

        assert await store.restore() == SessionState.ERROR
        assert store.error == ErrorKind.LOAD_TIMEOUT

        slow.get_user.side_effect = None
        slow.get_user.return_value = auth_session.user
        slow.select.return_value = []
        assert await store.restore() == SessionState.AWAITING_PROFILE
        assert store.error is None

    async def test_gateway_failure_is_persistence_error(self, local, auth_session) -> None:
        await local.set(AUTH_KEY, auth_session.model_dump(mode="json"))
        failing = AsyncMock()
        failing.get_user.side_effect = GatewayError("Backend unreachable", retryable=True)
        store = SessionStore(failing, local)

        assert await store.restore() == SessionState.ERROR
        assert store.error == ErrorKind.PERSISTENCE_ERROR

    async def test_restore_is_noop_once_settled(self, store, backend, citizen) -> None:
        auth = await _verified(backend)
        await store.login(citizen, auth=auth)

        assert await store.restore() == SessionState.AUTHENTICATED
