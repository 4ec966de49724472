"""Shared fixtures: a seeded in-process backend, cache and location data."""

from __future__ import annotations

import pytest

from src.data.seed import load_locations, seed_local_backend
from src.models.identity import CitizenIdentity, OfficialIdentity
from src.models.verification import AuthSession, AuthUser
from src.services.cache import CacheManager
from src.services.local_backend import LocalBackend
from src.services.location import LocationCascadeResolver, LocationDirectory

PHONE = "+919812345678"
GOOD_CODE = "654321"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> LocalBackend:
    local = LocalBackend(fixed_code=GOOD_CODE)
    seed_local_backend(local)
    return local


@pytest.fixture
def cache() -> CacheManager:
    return CacheManager()


@pytest.fixture
def resolver() -> LocationCascadeResolver:
    return LocationCascadeResolver(load_locations())


@pytest.fixture
async def locations(backend: LocalBackend) -> LocationDirectory:
    directory = LocationDirectory(backend)
    await directory.load()
    return directory


@pytest.fixture
def auth_session() -> AuthSession:
    return AuthSession(
        access_token="access-1",
        refresh_token="refresh-1",
        user=AuthUser(id="auth-user-1", phone=PHONE),
    )


@pytest.fixture
def citizen() -> CitizenIdentity:
    return CitizenIdentity(
        id="citizen-1",
        name="Anita Rao",
        age=34,
        gender="female",
        phone_number=PHONE,
        district="Hyderabad",
        mandal="Secunderabad",
        village="Village1",
        auth_user_id="auth-user-1",
    )


@pytest.fixture
def official() -> OfficialIdentity:
    return OfficialIdentity(
        id="official_emp-001",
        name="Rajesh Kumar",
        department="Revenue",
        employee_id="REV001",
        phone_number="+919876500001",
        district="Hyderabad",
        mandal="Secunderabad",
    )
