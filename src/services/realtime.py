"""In-process realtime change feed.

Row stores publish an event after every successful insert / upsert;
views subscribe to a table with equality filters (owner id, district)
and receive matching events without polling.  Each subscription owns a
bounded :class:`asyncio.Queue`; a slow subscriber drops events rather
than blocking writers.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Sequence

import structlog

from src.models.enums import ChangeType
from src.services.query import Filter, matches_all

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    type: ChangeType
    record: dict[str, Any]
    committed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Subscription:
    """A live view of one table, filtered by column values."""

    __slots__ = ("_filters", "_queue", "table")

    def __init__(self, table: str, filters: Sequence[Filter], max_queue: int) -> None:
        self.table = table
        self._filters = tuple(filters)
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=max_queue)

    def wants(self, event: ChangeEvent) -> bool:
        return event.table == self.table and matches_all(event.record, self._filters)

    def offer(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self, timeout: float | None = None) -> ChangeEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self._queue.get()


class ChangeFeed:
    __slots__ = ("_max_queue", "_subscriptions")

    def __init__(self, *, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._subscriptions: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, table: str, change_type: ChangeType, record: dict[str, Any]) -> int:
        """Fan *record* out to matching subscribers; returns how many received it."""
        event = ChangeEvent(table=table, type=change_type, record=dict(record))
        delivered = 0
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            if sub.offer(event):
                delivered += 1
            else:
                logger.warning("realtime.subscriber_queue_full", table=table)
        return delivered

    @contextlib.asynccontextmanager
    async def subscribe(self, table: str, filters: Sequence[Filter] = ()) -> AsyncIterator[Subscription]:
        sub = Subscription(table, filters, self._max_queue)
        self._subscriptions.add(sub)
        logger.debug("realtime.subscribed", table=table, filters=len(filters))
        try:
            yield sub
        finally:
            self._subscriptions.discard(sub)
            logger.debug("realtime.unsubscribed", table=table)
