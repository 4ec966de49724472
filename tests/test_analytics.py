"""Tests for district feedback analytics."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.services.analytics import AnalyticsService, rating_status, summarize
from src.services.errors import GatewayError, PersistenceError


def _row(mandal: str, village: str, service_type: str, rating: int) -> dict:
    return {"district": "Hyderabad", "mandal": mandal, "village": village, "service_type": service_type, "rating": rating}


ROWS = [
    _row("Secunderabad", "Village1", "Healthcare", 1),
    _row("Secunderabad", "Village1", "Healthcare", 2),
    _row("Secunderabad", "Bowenpally", "Education", 4),
    _row("Ameerpet", "Begumpet", "Education", 5),
    _row("Ameerpet", "Sanathnagar", "Water Supply", 2),
]


class TestRatingStatus:
    @pytest.mark.parametrize(
        ("average", "status"),
        [(1.0, "critical"), (2.49, "critical"), (2.5, "needs_attention"), (3.49, "needs_attention"), (3.5, "good")],
    )
    def test_thresholds(self, average: float, status: str) -> None:
        assert rating_status(average) == status


class TestSummarize:
    def test_totals_and_distribution(self) -> None:
        summary = summarize("Hyderabad", ROWS)

        assert summary.total_feedback == 5
        assert summary.average_rating == 2.8
        assert summary.status == "needs_attention"
        assert summary.rating_distribution == {1: 1, 2: 2, 3: 0, 4: 1, 5: 1}

    def test_by_service(self) -> None:
        by_service = {s.service_type: (s.count, s.average_rating) for s in summarize("Hyderabad", ROWS).by_service}
        assert by_service == {"Education": (2, 4.5), "Healthcare": (2, 1.5), "Water Supply": (1, 2.0)}

    def test_by_mandal(self) -> None:
        mandals = summarize("Hyderabad", ROWS).by_mandal
        assert [(m.name, m.average_rating, m.status) for m in mandals] == [
            ("Ameerpet", 3.5, "good"),
            ("Secunderabad", 2.33, "critical"),
        ]

    def test_critical_villages_worst_first(self) -> None:
        critical = summarize("Hyderabad", ROWS).critical_villages
        assert [(v.name, v.average_rating) for v in critical] == [("Village1", 1.5), ("Sanathnagar", 2.0)]

    def test_same_village_name_in_two_mandals_stays_separate(self) -> None:
        rows = [
            _row("Secunderabad", "Village1", "Healthcare", 1),
            _row("Ameerpet", "Village1", "Healthcare", 5),
            _row("Ameerpet", "Village1", "Education", 5),
        ]

        critical = summarize("Hyderabad", rows).critical_villages

        assert [(v.mandal, v.name, v.average_rating) for v in critical] == [("Secunderabad", "Village1", 1.0)], (
            "a good village must not mask a critical one with the same name"
        )

    def test_empty_district(self) -> None:
        summary = summarize("Karimnagar", [])
        assert summary.total_feedback == 0
        assert summary.average_rating is None
        assert summary.status is None
        assert summary.rating_distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}

    def test_unrated_rows_ignored(self) -> None:
        summary = summarize("Hyderabad", [*ROWS, {"district": "Hyderabad", "rating": None}, {"rating": 9}])
        assert summary.total_feedback == 5


class TestAnalyticsService:
    async def test_district_summary_reads_only_that_district(self, backend) -> None:
        backend.seed_table("citizen_feedback", [*ROWS, {**_row("Hanamkonda", "Kazipet", "Other", 1), "district": "Warangal"}])
        service = AnalyticsService(backend)

        summary = await service.district_summary("Hyderabad")

        assert summary.total_feedback == 5
        assert summary.district == "Hyderabad"

    async def test_load_failure(self) -> None:
        store = AsyncMock()
        store.select.side_effect = GatewayError("down", retryable=True)
        with pytest.raises(PersistenceError):
            await AnalyticsService(store).district_summary("Hyderabad")
