"""Nagarika Mitra FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the shared services (backend, client-state
cache, location directory, client registry, feedback / message /
analytics services).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import Settings, settings
from src.api.router import api_router
from src.middleware.privacy import PrivacyMiddleware, redact_phone_fields
from src.middleware.rate_limit import RateLimitMiddleware
from src.services.errors import (
    FormValidationError,
    GatewayError,
    InvalidSessionTransition,
    LocationDataUnavailable,
    NagarikaError,
    OperationInProgress,
    PersistenceError,
)
from src.services.gateway import Backend

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging(app_settings: Settings) -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_phone_fields,
    ]

    if app_settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.processors.NAME_TO_LEVEL[app_settings.log_level.lower()],
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------


def _build_backend(app_settings: Settings) -> Backend:
    """Supabase when ``SUPABASE_URL`` is set, otherwise the seeded in-process backend."""
    if app_settings.uses_supabase:
        from src.services.gateway import SupabaseGateway

        logger.info("app.backend_supabase")
        return SupabaseGateway(
            app_settings.supabase_url,
            app_settings.supabase_anon_key,
            timeout=app_settings.supabase_timeout_seconds,
        )

    from src.data.seed import seed_local_backend
    from src.services.local_backend import LocalBackend

    if app_settings.is_production:
        logger.warning("app.backend_local_in_production")
    backend = LocalBackend(
        fixed_code=app_settings.dev_otp_code,
        code_length=app_settings.otp_code_length,
    )
    seed_local_backend(
        backend,
        locations_table=app_settings.locations_table,
        employees_table=app_settings.employees_table,
    )
    logger.info("app.backend_local")
    return backend


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_ERROR_STATUS: tuple[tuple[type[NagarikaError], int], ...] = (
    (FormValidationError, 422),
    (OperationInProgress, 409),
    (InvalidSessionTransition, 409),
    (LocationDataUnavailable, 503),
    (PersistenceError, 502),
    (GatewayError, 502),
)


async def _handle_domain_error(request: Request, exc: Exception) -> ORJSONResponse:
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    content: dict = {"detail": getattr(exc, "message", "") or str(exc)}
    if isinstance(exc, FormValidationError):
        content["violations"] = exc.violations
    if isinstance(exc, NagarikaError) and exc.kind is not None:
        content["error"] = exc.kind.value
    logger.info("api.domain_error", path=request.url.path, error=type(exc).__name__, status=status_code)
    return ORJSONResponse(status_code=status_code, content=content)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(app_settings: Settings | None = None, *, backend: Backend | None = None) -> FastAPI:
    """Build the application.

    Parameters
    ----------
    app_settings:
        Settings to use; defaults to the module-level singleton.
    backend:
        Pre-built backend (tests pass a seeded ``LocalBackend``).  When
        omitted the backend is chosen from settings at startup.
    """
    cfg = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup: backend, cache, locations, registry, services.  Shutdown: close clients."""
        _configure_logging(cfg)
        logger.info("app.startup", env=cfg.env, supabase=cfg.uses_supabase, redis=bool(cfg.redis_url))

        from src.services.analytics import AnalyticsService
        from src.services.cache import CacheManager
        from src.services.feedback import FeedbackService
        from src.services.location import LocationDirectory
        from src.services.messages import MessageService
        from src.services.registry import ClientOptions, ClientRegistry

        app.state.start_time = time.time()
        app.state.settings = cfg

        # -- 1. Backend ------------------------------------------------------
        app.state.backend = active_backend = backend or _build_backend(cfg)

        # -- 2. Client-state cache ------------------------------------------
        cache = CacheManager(
            redis_url=cfg.redis_url or None,
            namespace="nagarika:",
            default_ttl=cfg.local_state_ttl,
        )
        app.state.cache = cache

        # -- 3. Location reference set --------------------------------------
        locations = LocationDirectory(
            active_backend,
            table=cfg.locations_table,
            timeout=cfg.location_load_timeout_seconds,
        )
        state = await locations.load()
        app.state.locations = locations
        logger.info("app.locations_loaded", state=state.value)

        # -- 4. Per-client sessions -----------------------------------------
        app.state.registry = ClientRegistry(
            active_backend,
            cache,
            locations,
            options=ClientOptions(
                code_length=cfg.otp_code_length,
                resend_cooldown=cfg.otp_resend_cooldown_seconds,
                ticket_ttl=cfg.otp_ticket_ttl_seconds,
                country_code=cfg.phone_country_code,
                local_digits=cfg.phone_local_digits,
                mobile_prefixes=cfg.phone_mobile_prefixes,
                users_table=cfg.users_table,
                employees_table=cfg.employees_table,
                restore_timeout=cfg.session_restore_timeout_seconds,
            ),
            capacity=cfg.client_session_capacity,
        )

        # -- 5. Feature services --------------------------------------------
        app.state.feedback = FeedbackService(active_backend, table=cfg.feedback_table)
        app.state.messages = MessageService(active_backend, table=cfg.messages_table)
        app.state.analytics = AnalyticsService(active_backend, feedback_table=cfg.feedback_table)

        logger.info("app.startup_complete")
        yield

        # -- Shutdown ---------------------------------------------------------
        logger.info("app.shutdown_start")
        await cache.close()
        await active_backend.close()
        logger.info("app.shutdown_complete")

    app = FastAPI(
        title="Nagarika Mitra API",
        description=(
            "Citizen-government feedback portal: phone/OTP login, citizen and "
            "official profiles, location-scoped feedback, broadcasts and analytics."
        ),
        version="0.1.0",
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if not cfg.is_production else None,
        redoc_url="/redoc" if not cfg.is_production else None,
    )

    # -- CORS middleware ----------------------------------------------------
    # allow_credentials=True must not be combined with allow_origins=["*"].
    if cfg.is_production:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_origin_list,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization", "X-Client-Id"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_origin_list or ["http://localhost:5173", "http://localhost:8080"],
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
            allow_headers=["Content-Type", "Accept", "Authorization", "X-Client-Id"],
        )

    # -- Custom middleware --------------------------------------------------
    app.add_middleware(PrivacyMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests_per_minute=cfg.rate_limit_per_minute,
        otp_requests_per_minute=cfg.otp_rate_limit_per_minute,
        trusted_proxy_count=cfg.trusted_proxy_count,
    )

    app.add_exception_handler(NagarikaError, _handle_domain_error)
    app.include_router(api_router)

    @app.get("/", response_class=ORJSONResponse)
    async def api_info() -> dict:
        """API information endpoint."""
        return {
            "name": "Nagarika Mitra API",
            "version": app.version,
            "docs": "/docs",
            "health": "/api/v1/health",
            "endpoints": {
                "auth": "/api/v1/auth",
                "locations": "/api/v1/locations",
                "feedback": "/api/v1/feedback",
                "messages": "/api/v1/messages",
                "analytics": "/api/v1/analytics",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host=settings.api_host, port=settings.api_port, log_config=None)
