"""Privacy helpers and response-hardening middleware.

Phone numbers are the primary identifier in this service, so they are
masked everywhere they could reach a log line: explicitly via
:func:`mask_phone`, in free text via :func:`sanitize_pii`, and as a last
line of defence by the :func:`redact_phone_fields` structlog processor.
"""

from __future__ import annotations

import re
from typing import Any, Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# PII sanitisation patterns
# ---------------------------------------------------------------------------

# Indian mobile numbers: optional +91, then 10 digits starting with 6-9.
_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?:\+91[\s-]?)?([6-9]\d{5})(\d{4})\b"
)

_EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"
)

# Log keys whose values are always phone numbers.
_PHONE_KEYS: Final[frozenset[str]] = frozenset({"phone", "phone_number", "candidate"})


def mask_phone(phone: str | None) -> str:
    """Mask a single phone number, keeping the last 4 digits.

    ``+919812345678`` becomes ``XXXXXX5678``.
    """
    if not phone:
        return "<none>"
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "XXXX"
    return f"XXXXXX{digits[-4:]}"


def sanitize_phone(text: str) -> str:
    """Mask phone numbers embedded in *text*, preserving only the last 4 digits."""

    def _mask(match: re.Match[str]) -> str:
        return f"XXXXXX{match.group(2)}"

    return _PHONE_PATTERN.sub(_mask, text)


def sanitize_email(text: str) -> str:
    return _EMAIL_PATTERN.sub("[EMAIL_REDACTED]", text)


def sanitize_pii(text: str) -> str:
    """Apply all PII sanitisation routines to *text*."""
    return sanitize_email(sanitize_phone(text))


def redact_phone_fields(
    _logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor that masks phone-valued keys not already masked."""
    for key in _PHONE_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and not value.startswith("XXXX"):
            event_dict[key] = mask_phone(value)
    return event_dict


# ---------------------------------------------------------------------------
# Privacy middleware
# ---------------------------------------------------------------------------


class PrivacyMiddleware(BaseHTTPMiddleware):
    """Logs sanitised request lines and adds privacy / security headers.

    Every API response is marked ``no-store``: session and profile
    payloads must never be cached by intermediaries or the browser.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        logger.info(
            "request.incoming",
            method=request.method,
            path=sanitize_pii(path),
            has_client_id="X-Client-Id" in request.headers,
        )

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
        response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"

        return response
