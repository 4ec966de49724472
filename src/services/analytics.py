"""District-level feedback statistics for officials."""

from __future__ import annotations

from collections import Counter, defaultdict
from statistics import fmean
from typing import Any, Iterable

import structlog

from src.models.feedback import AreaRating, DistrictSummary, ServiceBreakdown
from src.services.errors import GatewayError, PersistenceError
from src.services.gateway import RowStore
from src.services.query import eq

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

CRITICAL_BELOW = 2.5
ATTENTION_BELOW = 3.5


def rating_status(average: float) -> str:
    if average < CRITICAL_BELOW:
        return "critical"
    if average < ATTENTION_BELOW:
        return "needs_attention"
    return "good"


def _group(rows: Iterable[dict[str, Any]], *columns: str) -> dict[Any, list[int]]:
    """Ratings keyed by *columns*; a single column gives plain keys, several give tuples."""
    groups: dict[Any, list[int]] = defaultdict(list)
    for row in rows:
        values = tuple(row.get(c) for c in columns)
        if all(values):
            groups[values[0] if len(values) == 1 else values].append(row["rating"])
    return groups


def summarize(district: str, rows: list[dict[str, Any]]) -> DistrictSummary:
    """Aggregate feedback *rows* that all belong to *district*."""
    rated = [r for r in rows if isinstance(r.get("rating"), int) and 1 <= r["rating"] <= 5]
    ratings = [r["rating"] for r in rated]
    counts = Counter(ratings)
    average = round(fmean(ratings), 2) if ratings else None

    by_service = [
        ServiceBreakdown(service_type=name, count=len(vals), average_rating=round(fmean(vals), 2))
        for name, vals in sorted(_group(rated, "service_type").items())
    ]
    by_mandal = [
        AreaRating(name=name, count=len(vals), average_rating=round(fmean(vals), 2), status=rating_status(fmean(vals)))
        for name, vals in sorted(_group(rated, "mandal").items())
    ]
    # Village names repeat across mandals.
    villages = [
        AreaRating(
            name=village,
            mandal=mandal,
            count=len(vals),
            average_rating=round(fmean(vals), 2),
            status=rating_status(fmean(vals)),
        )
        for (mandal, village), vals in _group(rated, "mandal", "village").items()
    ]
    critical = sorted(
        (v for v in villages if v.status == "critical"),
        key=lambda v: (v.average_rating, v.mandal or "", v.name),
    )

    return DistrictSummary(
        district=district,
        total_feedback=len(rated),
        average_rating=average,
        status=rating_status(average) if average is not None else None,
        rating_distribution={star: counts.get(star, 0) for star in range(1, 6)},
        by_service=by_service,
        by_mandal=by_mandal,
        critical_villages=critical,
    )


class AnalyticsService:
    def __init__(self, store: RowStore, *, feedback_table: str = "citizen_feedback") -> None:
        self._store = store
        self._table = feedback_table

    async def district_summary(self, district: str, *, access_token: str | None = None) -> DistrictSummary:
        try:
            rows = await self._store.select(self._table, [eq("district", district)], access_token=access_token)
        except GatewayError as exc:
            logger.error("analytics.load_failed", district=district, error=exc.message)
            raise PersistenceError(f"Failed to load feedback: {exc.message}") from exc
        summary = summarize(district, rows)
        logger.info("analytics.district_summary", district=district, total=summary.total_feedback)
        return summary
