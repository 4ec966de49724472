"""Official broadcast messages and the citizen inbox."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog

from src.models.enums import MessageUrgency, Role
from src.models.feedback import BroadcastRequest, MessageRecord
from src.models.identity import CitizenIdentity, OfficialIdentity
from src.services.errors import FormValidationError, GatewayError, PersistenceError
from src.services.gateway import RowStore
from src.services.location import LocationCascadeResolver
from src.services.query import eq

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_URGENCIES = frozenset(u.value for u in MessageUrgency)


def validate_broadcast(request: BroadcastRequest, resolver: LocationCascadeResolver) -> list[str]:
    """Every problem with *request*; mandal and village are optional but must fit the cascade."""
    errors: list[str] = []
    if not (request.title or "").strip():
        errors.append("Title is required")
    if not (request.content or "").strip():
        errors.append("Message is required")
    if not request.urgency:
        errors.append("Urgency level is required")
    elif request.urgency not in _URGENCIES:
        errors.append("Unknown urgency level")

    district = (request.district or "").strip()
    mandal = (request.mandal or "").strip()
    village = (request.village or "").strip()
    if not district:
        errors.append("District is required")
    elif district not in resolver.districts():
        errors.append("Unknown district")
    if mandal and mandal not in resolver.mandals_of(district):
        errors.append("Mandal is not in the selected district")
    if village:
        if not mandal:
            errors.append("Select a mandal before choosing a village")
        elif village not in resolver.villages_of(district, mandal):
            errors.append("Village is not in the selected mandal")
    return errors


def _reaches(row: dict[str, Any], citizen: CitizenIdentity) -> bool:
    if Role.CITIZEN.value not in (row.get("target_roles") or []):
        return False
    mandal = row.get("mandal")
    village = row.get("village")
    return (not mandal or mandal == citizen.mandal) and (not village or village == citizen.village)


class MessageService:
    """Reads and writes the ``messages`` table."""

    def __init__(self, store: RowStore, *, table: str = "messages") -> None:
        self._store = store
        self._table = table

    @property
    def table(self) -> str:
        return self._table

    async def broadcast(
        self,
        official: OfficialIdentity,
        request: BroadcastRequest,
        resolver: LocationCascadeResolver,
        *,
        access_token: str | None = None,
    ) -> MessageRecord:
        """Send *request* to every citizen in the targeted area.

        Raises
        ------
        FormValidationError
            With every violation found; nothing is written.
        PersistenceError
            If the insert failed.
        """
        errors = validate_broadcast(request, resolver)
        if errors:
            raise FormValidationError(errors)

        record = {
            "title": (request.title or "").strip(),
            "content": (request.content or "").strip(),
            "urgency": request.urgency,
            "district": (request.district or "").strip(),
            "mandal": (request.mandal or "").strip() or None,
            "village": (request.village or "").strip() or None,
            "sender_id": official.id,
            "target_roles": [Role.CITIZEN.value],
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            row = await self._store.insert(self._table, record, access_token=access_token)
        except GatewayError as exc:
            logger.error("messages.insert_failed", error=exc.message, sender_id=official.id)
            raise PersistenceError(exc.message or "Failed to send message") from exc

        logger.info(
            "messages.broadcast",
            sender_id=official.id,
            urgency=request.urgency,
            district=record["district"],
            mandal=record["mandal"],
            village=record["village"],
        )
        return MessageRecord.from_row(row)

    async def inbox(self, citizen: CitizenIdentity, *, access_token: str | None = None) -> list[MessageRecord]:
        try:
            rows = await self._store.select(
                self._table,
                [eq("district", citizen.district)],
                order_by=[("created_at", True)],
                access_token=access_token,
            )
        except GatewayError as exc:
            logger.error("messages.load_failed", error=exc.message)
            raise PersistenceError(f"Failed to load messages: {exc.message}") from exc
        return [MessageRecord.from_row(r) for r in rows if _reaches(r, citizen)]

    @staticmethod
    def reaches(record: MessageRecord, citizen: CitizenIdentity) -> bool:
        """Whether a live message event should be shown to *citizen*."""
        return _reaches(record.model_dump(mode="json"), citizen)

    async def sent_by(self, official: OfficialIdentity, *, access_token: str | None = None) -> list[MessageRecord]:
        try:
            rows = await self._store.select(
                self._table,
                [eq("sender_id", official.id)],
                order_by=[("created_at", True)],
                access_token=access_token,
            )
        except GatewayError as exc:
            logger.error("messages.load_failed", error=exc.message)
            raise PersistenceError(f"Failed to load messages: {exc.message}") from exc
        return [MessageRecord.from_row(r) for r in rows]
