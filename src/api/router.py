"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the FastAPI
application only needs to include a single router.

Includes:
    * Auth: OTP login, profile completion, session restore / logout
    * Locations: district / mandal / village cascade
    * Feedback: citizen submission and lists, official district view
    * Messages: official broadcasts, citizen inbox
    * Analytics: district summary
    * Health: liveness / readiness probes
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import analytics, auth, feedback, health, locations, messages

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(locations.router)
api_router.include_router(feedback.router)
api_router.include_router(messages.router)
api_router.include_router(analytics.router)
