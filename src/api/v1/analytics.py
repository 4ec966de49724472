"""District analytics for officials."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from src.middleware.auth import OfficialContext, require_official
from src.models.feedback import DistrictSummary
from src.services.analytics import AnalyticsService

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/district-summary", response_model=DistrictSummary)
async def district_summary(request: Request, ctx: OfficialContext = Depends(require_official)) -> DistrictSummary:
    """Ratings overview for the official's district.

    Officials whose roster entry has no district get 404.
    """
    if not ctx.official.district:
        raise HTTPException(status_code=404, detail="No district is assigned to your account.")
    service: AnalyticsService = request.app.state.analytics
    return await service.district_summary(ctx.official.district, access_token=ctx.access_token)
