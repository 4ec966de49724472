"""Feedback and broadcast-message models for Nagarika Mitra.

Feedback rows carry a denormalized snapshot of the submitting citizen's
district / mandal / village taken at submission time.  The snapshot is
never refreshed when the citizen's profile changes later.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from src.models.enums import MessageUrgency, RatingBand, ServiceType

FEEDBACK_MIN_LENGTH = 10


class FeedbackSubmission(BaseModel):
    """Raw feedback form input; validated by ``validate_feedback``."""

    service_type: str | None = None
    rating: int | None = None
    feedback_text: str | None = None
    title: str | None = Field(default=None, max_length=200)
    location: str | None = Field(default=None, max_length=200)
    location_details: str | None = Field(default=None, max_length=1000)


class FeedbackRecord(BaseModel):
    """A persisted row of the ``citizen_feedback`` table."""

    id: str
    service_type: str | None = None
    rating: int
    feedback_text: str
    title: str | None = None
    location: str | None = None
    location_details: str | None = None
    district: str | None = None
    mandal: str | None = None
    village: str | None = None
    user_id: str | None = None
    sentiment: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> FeedbackRecord:
        return cls.model_validate({**row, "id": str(row["id"])})


class FeedbackFilters(BaseModel):
    """Filters an official can apply to the district feedback view."""

    mandal: str | None = None
    village: str | None = None
    service_type: ServiceType | None = None
    rating_band: RatingBand | None = None
    search: str | None = Field(default=None, max_length=200)


class BroadcastRequest(BaseModel):
    """Raw broadcast form input from an official."""

    title: str | None = None
    content: str | None = None
    urgency: str | None = None
    district: str | None = None
    mandal: str | None = None
    village: str | None = None


class MessageRecord(BaseModel):
    """A persisted row of the ``messages`` table."""

    id: str
    title: str
    content: str
    urgency: MessageUrgency = MessageUrgency.MEDIUM
    district: str | None = None
    mandal: str | None = None
    village: str | None = None
    sender_id: str | None = None
    target_roles: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> MessageRecord:
        return cls.model_validate({**row, "id": str(row["id"])})


class ServiceBreakdown(BaseModel):
    service_type: str
    count: int
    average_rating: float


class AreaRating(BaseModel):
    name: str
    mandal: str | None = Field(default=None, description="Parent mandal, set for village entries")
    count: int
    average_rating: float
    status: str


class DistrictSummary(BaseModel):
    """Aggregated feedback statistics for one district."""

    district: str
    total_feedback: int
    average_rating: float | None
    status: str | None
    rating_distribution: dict[int, int]
    by_service: list[ServiceBreakdown]
    by_mandal: list[AreaRating]
    critical_villages: list[AreaRating]
