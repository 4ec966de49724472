"""In-process backend for development and tests.

Implements the same :class:`~src.services.gateway.Backend` protocol as
:class:`~src.services.gateway.SupabaseGateway` with plain dictionaries:

* OTP codes are generated (or fixed via ``dev_otp_code``) and logged
  instead of being sent by SMS.
* Tables are lists of row dicts; ``select`` applies the same
  :class:`~src.services.query.Filter` semantics the PostgREST path uses.
* Access tokens are opaque random strings that expire after
  ``session_ttl_seconds``; refresh tokens rotate on use.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog

from src.middleware.privacy import mask_phone
from src.models.enums import ChangeType
from src.models.verification import AuthSession, AuthUser
from src.services.errors import GatewayError
from src.services.query import Filter, OrderBy, matches_all, sort_rows
from src.services.realtime import ChangeFeed

logger = structlog.get_logger(__name__)


class _IssuedSession:
    __slots__ = ("access_token", "expires_at", "refresh_token", "user")

    def __init__(self, user: AuthUser, ttl: float, clock: Callable[[], float]) -> None:
        self.user = user
        self.access_token = secrets.token_urlsafe(24)
        self.refresh_token = secrets.token_urlsafe(24)
        self.expires_at = clock() + ttl

    def to_auth_session(self) -> AuthSession:
        return AuthSession(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            user=self.user,
            expires_at=datetime.fromtimestamp(self.expires_at, tz=UTC),
        )


class LocalBackend:
    """Dictionary-backed OTP provider, auth backend and row store.

    Parameters
    ----------
    fixed_code:
        When set, every dispatched OTP is this code.  Otherwise a random
        numeric code of ``code_length`` digits is generated per dispatch.
    code_length:
        Length of generated codes.
    clock:
        Wall-clock source used for session expiry.
    changes:
        Feed that receives an event after every successful write.
    session_ttl_seconds:
        Lifetime of an issued access token.
    """

    def __init__(
        self,
        *,
        fixed_code: str | None = None,
        code_length: int = 6,
        clock: Callable[[], float] = time.time,
        changes: ChangeFeed | None = None,
        session_ttl_seconds: float = 3600.0,
    ) -> None:
        self._fixed_code = fixed_code
        self._code_length = code_length
        self._clock = clock
        self._session_ttl = session_ttl_seconds
        self.changes = changes or ChangeFeed()

        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._pending_codes: dict[str, str] = {}
        self._users_by_phone: dict[str, AuthUser] = {}
        self._sessions: dict[str, _IssuedSession] = {}
        self._refresh_index: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle / test hooks
    # ------------------------------------------------------------------

    async def close(self) -> None:
        self._sessions.clear()
        self._refresh_index.clear()

    def seed_table(self, table: str, rows: Sequence[dict[str, Any]]) -> None:
        """Replace *table* with *rows* without publishing change events."""
        self._tables[table] = [dict(row) for row in rows]

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of every row currently in *table*."""
        return [dict(row) for row in self._tables.get(table, [])]

    def issued_code(self, phone: str) -> str | None:
        """The outstanding OTP for *phone*, if one has been dispatched."""
        return self._pending_codes.get(phone)

    def expire_session(self, access_token: str) -> None:
        """Force *access_token* past its expiry."""
        issued = self._sessions.get(access_token)
        if issued is not None:
            issued.expires_at = self._clock() - 1

    # ------------------------------------------------------------------
    # OtpProvider
    # ------------------------------------------------------------------

    async def send_otp(self, phone: str) -> None:
        code = self._fixed_code or "".join(secrets.choice("0123456789") for _ in range(self._code_length))
        self._pending_codes[phone] = code
        # Development backend only: there is no SMS channel to deliver it.
        logger.info("local_backend.otp_issued", phone=mask_phone(phone), code=code)

    async def verify_otp(self, phone: str, code: str) -> AuthSession:
        expected = self._pending_codes.get(phone)
        if expected is None:
            raise GatewayError("No verification code was sent to this number", status_code=400)
        if not secrets.compare_digest(expected, code):
            raise GatewayError("Token has expired or is invalid", status_code=403)

        del self._pending_codes[phone]
        user = self._users_by_phone.get(phone)
        if user is None:
            user = AuthUser(id=str(uuid4()), phone=phone)
            self._users_by_phone[phone] = user
        return self._issue(user)

    # ------------------------------------------------------------------
    # AuthBackend
    # ------------------------------------------------------------------

    def _issue(self, user: AuthUser) -> AuthSession:
        issued = _IssuedSession(user, self._session_ttl, self._clock)
        self._sessions[issued.access_token] = issued
        self._refresh_index[issued.refresh_token] = issued.access_token
        return issued.to_auth_session()

    async def get_user(self, access_token: str) -> AuthUser | None:
        issued = self._sessions.get(access_token)
        if issued is None or issued.expires_at <= self._clock():
            return None
        return issued.user

    async def refresh_session(self, refresh_token: str) -> AuthSession | None:
        access_token = self._refresh_index.pop(refresh_token, None)
        if access_token is None:
            return None
        issued = self._sessions.pop(access_token, None)
        if issued is None:
            return None
        return self._issue(issued.user)

    async def sign_out(self, access_token: str) -> None:
        issued = self._sessions.pop(access_token, None)
        if issued is not None:
            self._refresh_index.pop(issued.refresh_token, None)

    # ------------------------------------------------------------------
    # RowStore
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self._tables.get(table, []) if matches_all(row, filters)]
        if order_by:
            rows = sort_rows(rows, order_by)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC).isoformat()
        row = {"id": str(uuid4()), "created_at": now, **record}
        row.setdefault("updated_at", now)
        self._tables.setdefault(table, []).append(row)
        self.changes.publish(table, ChangeType.INSERT, row)
        return dict(row)

    async def upsert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        on_conflict: str,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        key = record.get(on_conflict)
        if key is None:
            raise GatewayError(f"Upsert into {table} is missing conflict column {on_conflict!r}", status_code=400)

        rows = self._tables.setdefault(table, [])
        for existing in rows:
            if existing.get(on_conflict) == key:
                # Merge-duplicates keeps the original id and created_at.
                existing.update({k: v for k, v in record.items() if k not in ("id", "created_at")})
                existing["updated_at"] = datetime.now(UTC).isoformat()
                self.changes.publish(table, ChangeType.UPDATE, existing)
                return dict(existing)

        now = datetime.now(UTC).isoformat()
        row = {"id": str(uuid4()), "created_at": now, "updated_at": now, **record}
        rows.append(row)
        self.changes.publish(table, ChangeType.INSERT, row)
        return dict(row)
