"""Tests for the in-process backend and its reference-data seeding."""

from __future__ import annotations

import pytest

from src.data.seed import load_locations, load_roster, seed_local_backend
from src.models.enums import ChangeType
from src.services.errors import GatewayError
from src.services.local_backend import LocalBackend
from src.services.query import eq, gte, lte

PHONE = "+919812345678"


class TestSeeding:
    def test_bundled_reference_data(self) -> None:
        locations = load_locations()
        roster = load_roster()

        assert any(
            (loc.district, loc.mandal, loc.village) == ("Hyderabad", "Secunderabad", "Village1") for loc in locations
        )
        assert {entry.employee_id for entry in roster} >= {"REV001", "HLT001"}

    def test_seed_counts(self) -> None:
        backend = LocalBackend()
        n_locations, n_roster = seed_local_backend(backend, locations_table="locs", employees_table="emps")

        assert n_locations == len(backend.rows("locs"))
        assert n_roster == len(backend.rows("emps"))

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_locations(tmp_path / "nope.json")

    def test_malformed_rows_skipped(self, tmp_path) -> None:
        path = tmp_path / "locations.json"
        path.write_text('[{"district": "A", "mandal": "B", "village": "C"}, {"district": "A"}]', encoding="utf-8")
        assert len(load_locations(path)) == 1


class TestOtp:
    async def test_fixed_code_round_trip(self) -> None:
        backend = LocalBackend(fixed_code="111111")
        await backend.send_otp(PHONE)

        session = await backend.verify_otp(PHONE, "111111")

        assert session.user.phone == PHONE
        assert await backend.get_user(session.access_token) == session.user

    async def test_generated_code(self) -> None:
        backend = LocalBackend(code_length=6)
        await backend.send_otp(PHONE)
        code = backend.issued_code(PHONE)
        assert code is not None and len(code) == 6 and code.isdigit()

    async def test_wrong_code_rejected_and_code_kept(self) -> None:
        backend = LocalBackend(fixed_code="111111")
        await backend.send_otp(PHONE)

        with pytest.raises(GatewayError) as excinfo:
            await backend.verify_otp(PHONE, "222222")

        assert excinfo.value.status_code == 403
        assert backend.issued_code(PHONE) == "111111"

    async def test_verify_without_dispatch(self) -> None:
        with pytest.raises(GatewayError):
            await LocalBackend().verify_otp(PHONE, "111111")

    async def test_same_phone_same_user(self) -> None:
        backend = LocalBackend(fixed_code="111111")
        await backend.send_otp(PHONE)
        first = await backend.verify_otp(PHONE, "111111")
        await backend.send_otp(PHONE)
        second = await backend.verify_otp(PHONE, "111111")
        assert first.user_id == second.user_id


class TestSessions:
    async def test_expiry_and_refresh(self, clock) -> None:
        backend = LocalBackend(fixed_code="111111", clock=clock, session_ttl_seconds=60)
        await backend.send_otp(PHONE)
        session = await backend.verify_otp(PHONE, "111111")

        clock.advance(61)
        assert await backend.get_user(session.access_token) is None

        refreshed = await backend.refresh_session(session.refresh_token)
        assert refreshed is not None
        assert await backend.get_user(refreshed.access_token) == session.user
        assert await backend.refresh_session(session.refresh_token) is None, "refresh tokens rotate"

    async def test_sign_out(self) -> None:
        backend = LocalBackend(fixed_code="111111")
        await backend.send_otp(PHONE)
        session = await backend.verify_otp(PHONE, "111111")

        await backend.sign_out(session.access_token)

        assert await backend.get_user(session.access_token) is None
        assert await backend.refresh_session(session.refresh_token) is None


class TestRowStore:
    async def test_select_filters_order_limit(self) -> None:
        backend = LocalBackend()
        backend.seed_table(
            "t",
            [
                {"id": 1, "district": "A", "rating": 1},
                {"id": 2, "district": "A", "rating": 4},
                {"id": 3, "district": "B", "rating": 5},
                {"id": 4, "district": "A", "rating": 3},
            ],
        )

        rows = await backend.select("t", [eq("district", "A"), gte("rating", 2), lte("rating", 4)], order_by=[("rating", True)])
        assert [r["id"] for r in rows] == [2, 4]

        limited = await backend.select("t", order_by=[("rating", False)], limit=2)
        assert [r["id"] for r in limited] == [1, 4]

    async def test_insert_assigns_id_and_publishes(self) -> None:
        backend = LocalBackend()
        async with backend.changes.subscribe("t") as sub:
            row = await backend.insert("t", {"name": "x"})
            event = await sub.get(timeout=1)

        assert row["id"]
        assert row["created_at"]
        assert event.type == ChangeType.INSERT
        assert event.record["id"] == row["id"]

    async def test_upsert_merges_on_conflict(self) -> None:
        backend = LocalBackend()
        first = await backend.upsert("users", {"auth_user_id": "u1", "name": "A"}, on_conflict="auth_user_id")
        second = await backend.upsert("users", {"auth_user_id": "u1", "name": "B"}, on_conflict="auth_user_id")

        assert second["id"] == first["id"]
        assert second["created_at"] == first["created_at"]
        assert [r["name"] for r in backend.rows("users")] == ["B"]

    async def test_upsert_requires_conflict_column(self) -> None:
        with pytest.raises(GatewayError):
            await LocalBackend().upsert("users", {"name": "A"}, on_conflict="auth_user_id")

    async def test_rows_are_copies(self) -> None:
        backend = LocalBackend()
        row = await backend.insert("t", {"name": "x"})
        row["name"] = "mutated"
        assert backend.rows("t")[0]["name"] == "x"
