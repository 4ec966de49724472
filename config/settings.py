"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``NAGARIKA_`` prefix; backend / infrastructure settings
use their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the Nagarika Mitra service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``NAGARIKA_``; Supabase / Redis /
    API keys use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="NAGARIKA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Supabase (persistence gateway) ─────────────────────────────────
    # An empty URL selects the in-process LocalBackend.
    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", validation_alias="SUPABASE_ANON_KEY")
    supabase_timeout_seconds: float = 10.0

    # ── Redis (client-side state) ──────────────────────────────────────
    redis_url: str = Field(default="", validation_alias="REDIS_URL")
    local_state_ttl: int = 604_800  # 7 days

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    # ── Rate Limiting ──────────────────────────────────────────────────
    rate_limit_per_minute: int = Field(default=120, validation_alias="RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = 10
    trusted_proxy_count: int = Field(
        default=1,
        ge=0,
        validation_alias="TRUSTED_PROXY_COUNT",
    )

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Phone / OTP ────────────────────────────────────────────────────
    phone_country_code: str = "91"
    phone_local_digits: int = Field(default=10, ge=4, le=15)
    phone_mobile_prefixes: str = "6789"
    otp_code_length: int = 6
    otp_resend_cooldown_seconds: float = 30.0
    otp_ticket_ttl_seconds: float = 600.0  # 10 minutes
    dev_otp_code: str | None = None  # LocalBackend only

    # ── Session / reference data ───────────────────────────────────────
    session_restore_timeout_seconds: float = 10.0
    location_load_timeout_seconds: float = 15.0
    client_session_capacity: int = 10_000

    # ── Table names ────────────────────────────────────────────────────
    users_table: str = "users"
    employees_table: str = "employees"
    feedback_table: str = "citizen_feedback"
    messages_table: str = "messages"
    locations_table: str = "telangana_locations"

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
