"""Citizen feedback: submission, personal and nearby lists, official view."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from src.models.enums import RatingBand, ServiceType
from src.models.feedback import FEEDBACK_MIN_LENGTH, FeedbackFilters, FeedbackRecord, FeedbackSubmission
from src.models.identity import CitizenIdentity, OfficialIdentity
from src.services.errors import FormValidationError, GatewayError, PersistenceError
from src.services.gateway import RowStore
from src.services.query import Filter, OrderBy, eq, gte, lte
from src.services.single_flight import SingleFlight

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_NEWEST_FIRST: tuple[OrderBy, ...] = (("created_at", True),)

_SERVICE_TYPES = frozenset(s.value for s in ServiceType)


def validate_feedback(submission: FeedbackSubmission) -> list[str]:
    """Every problem with *submission*; empty when it can be submitted."""
    errors: list[str] = []

    if not submission.service_type:
        errors.append("Service category is required")
    elif submission.service_type not in _SERVICE_TYPES:
        errors.append("Unknown service category")

    if submission.rating is None or not 1 <= submission.rating <= 5:
        errors.append("Rating must be between 1 and 5")

    text = (submission.feedback_text or "").strip()
    if not text:
        errors.append("Feedback text is required")
    elif len(text) < FEEDBACK_MIN_LENGTH:
        errors.append(f"Feedback must be at least {FEEDBACK_MIN_LENGTH} characters long")

    return errors


def rating_band_filters(band: RatingBand) -> list[Filter]:
    match band:
        case RatingBand.LOW:
            return [lte("rating", 2)]
        case RatingBand.MEDIUM:
            return [gte("rating", 3), lte("rating", 3)]
        case RatingBand.HIGH:
            return [gte("rating", 4)]


class FeedbackService:
    """Reads and writes the ``citizen_feedback`` table.

    Parameters
    ----------
    store:
        Row store.
    table:
        Feedback table name.
    """

    def __init__(self, store: RowStore, *, table: str = "citizen_feedback") -> None:
        self._store = store
        self._table = table

    @property
    def table(self) -> str:
        return self._table

    async def submit(
        self,
        citizen: CitizenIdentity,
        submission: FeedbackSubmission,
        *,
        flight: SingleFlight | None = None,
        access_token: str | None = None,
    ) -> FeedbackRecord:
        """Validate and insert *submission* with the citizen's location snapshot.

        Raises
        ------
        FormValidationError
            With every violation found; nothing is written.
        OperationInProgress
            If *flight* already holds a pending submission.
        PersistenceError
            If the insert failed.
        """
        errors = validate_feedback(submission)
        if errors:
            raise FormValidationError(errors)

        now = datetime.now(UTC).isoformat()
        record = {
            "service_type": submission.service_type,
            "rating": submission.rating,
            "feedback_text": (submission.feedback_text or "").strip(),
            "title": submission.title or None,
            "location": submission.location or None,
            "location_details": submission.location_details or None,
            "district": citizen.district,
            "mandal": citizen.mandal,
            "village": citizen.village,
            "user_id": citizen.id,
            "created_at": now,
            "updated_at": now,
        }

        guard = flight or SingleFlight("feedback")
        with guard.hold():
            try:
                row = await self._store.insert(self._table, record, access_token=access_token)
            except GatewayError as exc:
                logger.error("feedback.insert_failed", error=exc.message, user_id=citizen.id)
                raise PersistenceError(exc.message or "Failed to submit feedback. Please try again.") from exc

        logger.info(
            "feedback.submitted",
            user_id=citizen.id,
            service_type=submission.service_type,
            rating=submission.rating,
            district=citizen.district,
        )
        return FeedbackRecord.from_row(row)

    async def list_mine(self, citizen: CitizenIdentity, *, access_token: str | None = None) -> list[FeedbackRecord]:
        rows = await self._select([eq("user_id", citizen.id)], access_token)
        return [FeedbackRecord.from_row(r) for r in rows]

    async def list_nearby(
        self,
        citizen: CitizenIdentity,
        *,
        limit: int = 50,
        access_token: str | None = None,
    ) -> list[FeedbackRecord]:
        """Other citizens' feedback from the same village, else the same mandal."""
        area = [eq("district", citizen.district), eq("mandal", citizen.mandal)]
        for filters in (area + [eq("village", citizen.village)], area):
            rows = [r for r in await self._select(filters, access_token) if r.get("user_id") != citizen.id]
            if rows:
                return [FeedbackRecord.from_row(r) for r in rows[:limit]]
        return []

    async def list_for_district(
        self,
        official: OfficialIdentity,
        filters: FeedbackFilters | None = None,
        *,
        access_token: str | None = None,
    ) -> list[FeedbackRecord]:
        """Feedback for the official's district, narrowed by *filters*.

        Officials without a district on their roster entry see nothing.
        """
        if not official.district:
            return []
        filters = filters or FeedbackFilters()

        query: list[Filter] = [eq("district", official.district)]
        if filters.mandal:
            query.append(eq("mandal", filters.mandal))
        if filters.village:
            query.append(eq("village", filters.village))
        if filters.service_type:
            query.append(eq("service_type", filters.service_type.value))
        if filters.rating_band:
            query.extend(rating_band_filters(filters.rating_band))

        rows = await self._select(query, access_token)
        if filters.search and filters.search.strip():
            needle = filters.search.strip().casefold()
            rows = [
                r
                for r in rows
                if needle in (r.get("title") or "").casefold() or needle in (r.get("feedback_text") or "").casefold()
            ]
        return [FeedbackRecord.from_row(r) for r in rows]

    async def _select(self, filters: list[Filter], access_token: str | None) -> list[dict]:
        try:
            return await self._store.select(
                self._table,
                filters,
                order_by=_NEWEST_FIRST,
                access_token=access_token,
            )
        except GatewayError as exc:
            logger.error("feedback.load_failed", error=exc.message)
            raise PersistenceError(f"Failed to load feedback: {exc.message}") from exc
