"""In-memory sliding-window rate limiter.

Two buckets per client IP: a general one for every API call and a much
tighter one for the OTP endpoints, which cost an SMS per call.  Each
bucket is a :class:`collections.deque` of monotonic timestamps.
Single-process only; a multi-instance deployment needs a shared store.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_EXEMPT_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
})

# Endpoints that trigger an SMS.
_OTP_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/auth/otp",
    "/api/v1/auth/otp/resend",
})


class _SlidingWindow:
    __slots__ = ("_limit", "_requests", "_window_seconds")

    def __init__(self, limit: int, window_seconds: float = 60.0) -> None:
        self._limit = limit
        self._window_seconds = window_seconds
        self._requests: dict[str, deque[float]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def hit(self, key: str, now: float) -> tuple[bool, int]:
        """Record a request; returns (allowed, remaining or retry-after seconds)."""
        window = self._requests.setdefault(key, deque())
        window_start = now - self._window_seconds
        while window and window[0] < window_start:
            window.popleft()

        if len(window) >= self._limit:
            retry_after = max(1, int(self._window_seconds - (now - window[0])) + 1)
            return False, retry_after

        window.append(now)
        return True, self._limit - len(window)

    def cleanup(self, now: float) -> int:
        window_start = now - self._window_seconds
        stale = [key for key, dq in self._requests.items() if not dq or dq[-1] < window_start]
        for key in stale:
            del self._requests[key]
        return len(stale)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiter keyed by client IP address.

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        General limit per IP per 60-second window.
    otp_requests_per_minute:
        Limit per IP for the OTP dispatch endpoints.
    trusted_proxy_count:
        Number of trusted reverse proxies in front of the app.  The
        client IP is read from ``X-Forwarded-For`` at index
        ``-(trusted_proxy_count + 1)``.  0 uses the connection address.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 120,
        otp_requests_per_minute: int = 10,
        trusted_proxy_count: int = 1,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._general = _SlidingWindow(max_requests_per_minute)
        self._otp = _SlidingWindow(otp_requests_per_minute)
        self._trusted_proxy_count = trusted_proxy_count
        self._lock = asyncio.Lock()
        self._cleanup_counter = 0
        self._cleanup_interval = 1000

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _EXEMPT_PATHS:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        bucket = self._otp if path in _OTP_PATHS else self._general
        now = time.monotonic()

        async with self._lock:
            self._cleanup_counter += 1
            if self._cleanup_counter >= self._cleanup_interval:
                self._cleanup_counter = 0
                removed = self._general.cleanup(now) + self._otp.cleanup(now)
                if removed:
                    logger.debug("rate_limit.cleanup", removed_ips=removed)

            allowed, value = bucket.hit(client_ip, now)

        if not allowed:
            logger.warning(
                "rate_limit.exceeded",
                client_ip=client_ip,
                path=path,
                max_rpm=bucket.limit,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded. Please try again later.",
                    "retry_after_seconds": value,
                },
                headers={
                    "Retry-After": str(value),
                    "X-RateLimit-Limit": str(bucket.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(bucket.limit)
        response.headers["X-RateLimit-Remaining"] = str(value)
        return response

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ips = [ip.strip() for ip in forwarded_for.split(",")]
            if self._trusted_proxy_count > 0:
                client_index = -(self._trusted_proxy_count + 1)
                return ips[client_index] if abs(client_index) <= len(ips) else ips[0]
            return ips[0]

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        if request.client:
            return request.client.host
        return "unknown"
