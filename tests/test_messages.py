"""Tests for official broadcasts and the citizen inbox."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from src.models.enums import MessageUrgency
from src.models.feedback import BroadcastRequest
from src.services.errors import FormValidationError, GatewayError, PersistenceError
from src.services.messages import MessageService, validate_broadcast


def _request(**overrides) -> BroadcastRequest:
    data = {
        "title": "Water supply interruption",
        "content": "Supply will be off on Sunday for pipeline repairs.",
        "urgency": "high",
        "district": "Hyderabad",
    }
    data.update(overrides)
    return BroadcastRequest(**data)


@pytest.fixture
def service(backend) -> MessageService:
    return MessageService(backend)


class TestValidateBroadcast:
    def test_valid_district_wide(self, resolver) -> None:
        assert validate_broadcast(_request(), resolver) == []

    def test_valid_village_target(self, resolver) -> None:
        assert validate_broadcast(_request(mandal="Secunderabad", village="Village1"), resolver) == []

    def test_all_problems_reported(self, resolver) -> None:
        errors = validate_broadcast(BroadcastRequest(), resolver)
        assert errors == [
            "Title is required",
            "Message is required",
            "Urgency level is required",
            "District is required",
        ]

    def test_cascade_membership(self, resolver) -> None:
        assert validate_broadcast(_request(mandal="Hanamkonda"), resolver) == ["Mandal is not in the selected district"]
        assert validate_broadcast(_request(mandal="Secunderabad", village="Begumpet"), resolver) == [
            "Village is not in the selected mandal"
        ]
        assert validate_broadcast(_request(village="Village1"), resolver) == [
            "Select a mandal before choosing a village"
        ]

    def test_unknown_urgency(self, resolver) -> None:
        assert validate_broadcast(_request(urgency="urgent"), resolver) == ["Unknown urgency level"]


class TestBroadcast:
    async def test_persists_with_sender_and_target_roles(self, service, backend, official, resolver) -> None:
        record = await service.broadcast(official, _request(mandal="Secunderabad"), resolver)

        assert record.urgency == MessageUrgency.HIGH
        assert record.sender_id == official.id
        assert record.target_roles == ["citizen"]
        row = backend.rows("messages")[0]
        assert (row["district"], row["mandal"], row["village"]) == ("Hyderabad", "Secunderabad", None)

    async def test_invalid_request_writes_nothing(self, service, backend, official, resolver) -> None:
        with pytest.raises(FormValidationError):
            await service.broadcast(official, _request(title=""), resolver)
        assert backend.rows("messages") == []

    async def test_insert_failure(self, service, backend, official, resolver) -> None:
        with patch.object(backend, "insert", AsyncMock(side_effect=GatewayError("denied", status_code=403))):
            with pytest.raises(PersistenceError):
                await service.broadcast(official, _request(), resolver)


class TestInbox:
    async def test_targeting(self, service, backend, citizen, official, resolver) -> None:
        await service.broadcast(official, _request(title="District wide"), resolver)
        await service.broadcast(official, _request(title="My mandal", mandal="Secunderabad"), resolver)
        await service.broadcast(
            official, _request(title="My village", mandal="Secunderabad", village="Village1"), resolver
        )
        await service.broadcast(
            official, _request(title="Other village", mandal="Secunderabad", village="Bowenpally"), resolver
        )
        await service.broadcast(official, _request(title="Other mandal", mandal="Ameerpet"), resolver)
        await service.broadcast(official, _request(title="Other district", district="Warangal"), resolver)

        titles = {m.title for m in await service.inbox(citizen)}

        assert titles == {"District wide", "My mandal", "My village"}

    async def test_messages_not_for_citizens_are_hidden(self, service, backend, citizen) -> None:
        backend.seed_table(
            "messages",
            [
                {"id": "m1", "title": "Staff only", "content": "x", "district": "Hyderabad", "target_roles": ["official"]},
                {"id": "m2", "title": "Everyone", "content": "y", "district": "Hyderabad", "target_roles": ["citizen"]},
            ],
        )
        assert [m.id for m in await service.inbox(citizen)] == ["m2"]

    async def test_reaches_matches_inbox_rules(self, service, official, citizen, resolver) -> None:
        mine = await service.broadcast(official, _request(mandal="Secunderabad", village="Village1"), resolver)
        other = await service.broadcast(official, _request(mandal="Ameerpet"), resolver)

        assert MessageService.reaches(mine, citizen)
        assert not MessageService.reaches(other, citizen)

    async def test_sent_by(self, service, official, resolver) -> None:
        await service.broadcast(official, _request(), resolver)
        sent = await service.sent_by(official)
        assert len(sent) == 1
