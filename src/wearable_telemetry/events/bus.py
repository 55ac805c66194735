"""In-process change feed for store records.

Repositories publish a :class:`ChangeEvent` after every committed write;
consumers obtain a cancellable :class:`Subscription` filtered by table and
an optional predicate, and iterate it with ``async for``.  Delivery is
at-least-once, so consumers must tolerate duplicates.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class Table(str, Enum):
    DEVICES = "wearable_devices"
    HEALTH_DATA = "health_data"
    PREDICTIONS = "health_predictions"


class ChangeOp(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


# Origin of readings written by a local ingestion channel; they have
# already been through the threshold check.
INGESTION_ORIGIN = "ingestion"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One committed change to a store record."""

    table: Table
    op: ChangeOp
    record: BaseModel
    sequence: int
    origin: str | None = None


class Subscription:
    """Handle for one subscriber; an async iterator of change events."""

    def __init__(
        self,
        bus: EventBus,
        table: Table,
        predicate: Callable[[ChangeEvent], bool] | None = None,
    ) -> None:
        self.table = table
        self._bus = bus
        self._predicate = predicate
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def matches(self, event: ChangeEvent) -> bool:
        if event.table is not self.table:
            return False
        return self._predicate is None or self._predicate(event)

    def deliver(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop the subscription; iteration ends after queued events."""
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Fan committed store changes out to matching subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._sequence = itertools.count(1)

    def subscribe(
        self,
        table: Table,
        predicate: Callable[[ChangeEvent], bool] | None = None,
    ) -> Subscription:
        sub = Subscription(self, table, predicate)
        self._subscriptions.append(sub)
        logger.debug("event_bus.subscribed", table=table.value, total=len(self._subscriptions))
        return sub

    def publish(
        self,
        table: Table,
        op: ChangeOp,
        record: BaseModel,
        *,
        origin: str | None = None,
    ) -> ChangeEvent:
        event = ChangeEvent(table=table, op=op, record=record, sequence=next(self._sequence), origin=origin)
        for sub in list(self._subscriptions):
            if sub.matches(event):
                sub.deliver(event)
        return event

    def close(self) -> None:
        """Close every open subscription."""
        for sub in list(self._subscriptions):
            sub.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
