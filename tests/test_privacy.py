"""Tests for phone masking, PII sanitisation and the privacy middleware."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.middleware.privacy import (
    PrivacyMiddleware,
    mask_phone,
    redact_phone_fields,
    sanitize_email,
    sanitize_phone,
    sanitize_pii,
)


class TestMaskPhone:
    @pytest.mark.parametrize(
        ("phone", "masked"),
        [("+919812345678", "XXXXXX5678"), ("9812345678", "XXXXXX5678"), ("123", "XXXX"), (None, "<none>")],
    )
    def test_mask(self, phone, masked) -> None:
        assert mask_phone(phone) == masked


class TestSanitizePhone:
    def test_with_country_code(self) -> None:
        assert sanitize_phone("Call +91 9812345678 now") == "Call XXXXXX5678 now"

    def test_bare_number(self) -> None:
        assert sanitize_phone("9812345678") == "XXXXXX5678"

    def test_non_mobile_digits_unchanged(self) -> None:
        text = "Order 1234567890 shipped"
        assert sanitize_phone(text) == text, "numbers not starting with 6-9 are not mobile numbers"


class TestSanitizeEmail:
    def test_email_redacted(self) -> None:
        assert sanitize_email("mail anita@example.org") == "mail [EMAIL_REDACTED]"


class TestSanitizePii:
    def test_combined(self) -> None:
        result = sanitize_pii("anita@example.org / 9812345678")
        assert "anita" not in result
        assert "98123" not in result


class TestRedactPhoneFields:
    def test_masks_phone_keys(self) -> None:
        event = redact_phone_fields(None, "info", {"event": "x", "phone": "+919812345678", "phone_number": "9876500001"})
        assert event["phone"] == "XXXXXX5678"
        assert event["phone_number"] == "XXXXXX0001"

    def test_already_masked_untouched(self) -> None:
        event = redact_phone_fields(None, "info", {"event": "x", "phone": "XXXXXX5678"})
        assert event["phone"] == "XXXXXX5678"

    def test_other_keys_untouched(self) -> None:
        event = redact_phone_fields(None, "info", {"event": "x", "user_id": "9812345678"})
        assert event["user_id"] == "9812345678"


class TestPrivacyMiddleware:
    def test_security_headers(self) -> None:
        app = FastAPI()
        app.add_middleware(PrivacyMiddleware)

        @app.get("/ping")
        async def ping() -> dict:
            return {"ok": True}

        response = TestClient(app).get("/ping")

        assert response.status_code == 200
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
