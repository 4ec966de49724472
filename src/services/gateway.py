"""Persistence gateway: OTP provider, auth backend and row store.

The rest of the service talks to the backend only through the three
protocols defined here.  :class:`SupabaseGateway` implements all of them
against a Supabase project:

* ``/auth/v1`` (GoTrue) for OTP dispatch / verification, token refresh,
  user lookup and sign-out.
* ``/rest/v1`` (PostgREST) for ``select`` / ``insert`` / ``upsert`` on
  the ``users``, ``employees``, ``citizen_feedback``, ``messages`` and
  ``telangana_locations`` tables.

Idempotent calls (reads, user lookup, token refresh, upsert) are retried
with exponential backoff on transport errors and 5xx responses.  OTP
dispatch and verification are never retried automatically: the provider
rate-limits per number and a duplicate send must not double-charge.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Final, Protocol, Sequence, runtime_checkable

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.middleware.privacy import mask_phone
from src.models.enums import ChangeType
from src.models.verification import AuthSession, AuthUser
from src.services.errors import GatewayError
from src.services.query import Filter, OrderBy
from src.services.realtime import ChangeFeed

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class OtpProvider(Protocol):
    """SMS one-time-passcode capability."""

    async def send_otp(self, phone: str) -> None: ...

    async def verify_otp(self, phone: str, code: str) -> AuthSession: ...


@runtime_checkable
class AuthBackend(Protocol):
    """Backend session lifecycle."""

    async def get_user(self, access_token: str) -> AuthUser | None: ...

    async def refresh_session(self, refresh_token: str) -> AuthSession | None: ...

    async def sign_out(self, access_token: str) -> None: ...


@runtime_checkable
class RowStore(Protocol):
    """Table-level read / write capability."""

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        access_token: str | None = None,
    ) -> dict[str, Any]: ...

    async def upsert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        on_conflict: str,
        access_token: str | None = None,
    ) -> dict[str, Any]: ...


@runtime_checkable
class Backend(OtpProvider, AuthBackend, RowStore, Protocol):
    """Everything the service needs from its managed backend."""

    changes: ChangeFeed

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------

_USER_AGENT: Final[str] = "NagarikaMitra/1.0"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


_retry_idempotent = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of a GoTrue / PostgREST error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error", "hint"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        logger.warning("gateway.invalid_json", path=response.request.url.path, status=response.status_code)
        raise GatewayError("Backend returned a malformed response") from exc


def _parse_user(body: Any) -> AuthUser:
    try:
        return AuthUser(id=str(body["id"]), phone=body.get("phone"))
    except (KeyError, TypeError, AttributeError) as exc:
        raise GatewayError("Backend returned a user without an id") from exc


def _parse_session(body: Any) -> AuthSession:
    if not isinstance(body, dict) or not body.get("access_token") or not body.get("user"):
        raise GatewayError("Backend did not return a session")
    expires_at: datetime | None = None
    try:
        if body.get("expires_at") is not None:
            expires_at = datetime.fromtimestamp(int(body["expires_at"]), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise GatewayError("Backend returned an invalid session expiry") from exc
    return AuthSession(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token"),
        user=_parse_user(body["user"]),
        expires_at=expires_at,
    )


class SupabaseGateway:
    """Async Supabase client built on :class:`httpx.AsyncClient`.

    Parameters
    ----------
    url:
        Project URL, e.g. ``https://xyz.supabase.co``.
    anon_key:
        Public anon key; sent as ``apikey`` on every request and as the
        bearer token when no user access token is supplied.
    timeout:
        Per-request timeout in seconds.
    changes:
        Feed that receives an event after every successful write.
    transport:
        Optional transport override (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        changes: ChangeFeed | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._anon_key = anon_key
        self.changes = changes or ChangeFeed()
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            timeout=timeout,
            headers={
                "apikey": anon_key,
                "User-Agent": _USER_AGENT,
                "Accept": "application/json",
            },
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Low-level request helper
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {access_token or self._anon_key}"}
        if headers:
            request_headers.update(headers)
        try:
            response = await self._client.request(method, path, headers=request_headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("gateway.transport_error", method=method, path=path, error=str(exc))
            raise GatewayError(f"Backend unreachable: {exc!s}", retryable=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("gateway.request_error", method=method, path=path, error=str(exc))
            raise GatewayError(f"Backend request failed: {exc!s}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "gateway.http_error",
                method=method,
                path=path,
                status=response.status_code,
                error=message,
            )
            raise GatewayError(
                message,
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        return response

    # ------------------------------------------------------------------
    # OtpProvider
    # ------------------------------------------------------------------

    async def send_otp(self, phone: str) -> None:
        await self._request("POST", "/auth/v1/otp", json={"phone": phone, "channel": "sms"})
        logger.info("gateway.otp_sent", phone=mask_phone(phone))

    async def verify_otp(self, phone: str, code: str) -> AuthSession:
        response = await self._request(
            "POST",
            "/auth/v1/verify",
            json={"type": "sms", "phone": phone, "token": code},
        )
        return _parse_session(_json(response))

    # ------------------------------------------------------------------
    # AuthBackend
    # ------------------------------------------------------------------

    @_retry_idempotent
    async def get_user(self, access_token: str) -> AuthUser | None:
        try:
            response = await self._request("GET", "/auth/v1/user", access_token=access_token)
        except GatewayError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        return _parse_user(_json(response))

    @_retry_idempotent
    async def refresh_session(self, refresh_token: str) -> AuthSession | None:
        try:
            response = await self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
        except GatewayError as exc:
            if exc.status_code in (400, 401, 403):
                return None
            raise
        return _parse_session(_json(response))

    async def sign_out(self, access_token: str) -> None:
        try:
            await self._request("POST", "/auth/v1/logout", access_token=access_token)
        except GatewayError as exc:
            # An expired or unknown token is already signed out.
            if exc.status_code not in (401, 403, 404):
                raise

    # ------------------------------------------------------------------
    # RowStore
    # ------------------------------------------------------------------

    @_retry_idempotent
    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", "*")]
        params.extend(f.to_param() for f in filters)
        if order_by:
            params.append(
                ("order", ",".join(f"{col}.{'desc' if desc else 'asc'}" for col, desc in order_by)),
            )
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"/rest/v1/{table}", access_token=access_token, params=params)
        rows = _json(response)
        if not isinstance(rows, list):
            raise GatewayError(f"Unexpected response shape from {table}")
        return rows

    async def insert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            access_token=access_token,
            headers={"Prefer": "return=representation"},
            json=record,
        )
        row = self._single_row(response, table)
        self.changes.publish(table, ChangeType.INSERT, row)
        return row

    @_retry_idempotent
    async def upsert(
        self,
        table: str,
        record: dict[str, Any],
        *,
        on_conflict: str,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            access_token=access_token,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
            params={"on_conflict": on_conflict},
            json=record,
        )
        row = self._single_row(response, table)
        self.changes.publish(table, ChangeType.UPDATE, row)
        return row

    @staticmethod
    def _single_row(response: httpx.Response, table: str) -> dict[str, Any]:
        body = _json(response)
        if isinstance(body, list):
            if not body:
                raise GatewayError(f"Write to {table} returned no rows")
            return body[0]
        if isinstance(body, dict):
            return body
        raise GatewayError(f"Unexpected response shape from {table}")
