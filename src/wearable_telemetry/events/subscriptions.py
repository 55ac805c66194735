"""Change-feed consumers that keep local state and alerts in step with the store.

Three subscriptions run for the lifetime of the service:

* device changes refresh the in-memory registry and produce light tactile
  feedback (plus a notification when a device drops out);
* readings stored by other writers get the same critical check as those
  ingested locally;
* prediction inserts are routed through the alert dispatcher.

Delivery is at-least-once; the dispatcher's dedupe keys make repeated
events harmless.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog

from wearable_telemetry.events.bus import (
    INGESTION_ORIGIN,
    ChangeEvent,
    ChangeOp,
    EventBus,
    Subscription,
    Table,
)
from wearable_telemetry.models import HealthDataPoint, HealthPrediction, WearableDevice

if TYPE_CHECKING:
    from wearable_telemetry.devices.manager import ConnectionManager
    from wearable_telemetry.devices.registry import DeviceRegistry
    from wearable_telemetry.monitors.thresholds import ThresholdEvaluator
    from wearable_telemetry.notifications.dispatcher import AlertDispatcher

logger = structlog.get_logger(__name__)


class ChangeSubscriber(ABC):
    """Background task that consumes one :class:`Subscription`.

    Subclasses set :attr:`table` and implement :meth:`handle`.
    """

    table: Table

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._handled = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> dict[str, Any]:
        return {"table": self.table.value, "handled": self._handled, "running": self.is_running}

    def accepts(self, event: ChangeEvent) -> bool:
        return True

    async def start(self) -> None:
        if self._task is not None:
            return
        self._subscription = self._bus.subscribe(self.table, self.accepts)
        self._task = asyncio.create_task(self._run(self._subscription), name=f"subscriber-{self.table.value}")
        logger.info("subscriber.started", table=self.table.value)

    async def stop(self) -> None:
        """Close the subscription and let the consumer finish queued events."""
        if self._task is None:
            return
        if self._subscription is not None:
            self._subscription.close()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._subscription = None
        logger.info("subscriber.stopped", table=self.table.value, handled=self._handled)

    async def _run(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self.handle(event)
                self._handled += 1
            except Exception:
                logger.exception("subscriber.handler_error", table=self.table.value, sequence=event.sequence)

    @abstractmethod
    async def handle(self, event: ChangeEvent) -> None:
        """Process one change event."""


def _unexpected(event: ChangeEvent) -> TypeError:
    return TypeError(f"unexpected {type(event.record).__name__} record on {event.table.value}")


class DeviceChangeSubscriber(ChangeSubscriber):
    """Mirror device record changes into the registry and alert on them."""

    table = Table.DEVICES

    def __init__(
        self,
        bus: EventBus,
        registry: DeviceRegistry,
        dispatcher: AlertDispatcher,
        manager: ConnectionManager,
    ) -> None:
        super().__init__(bus)
        self._registry = registry
        self._dispatcher = dispatcher
        self._manager = manager

    async def handle(self, event: ChangeEvent) -> None:
        device = event.record
        if not isinstance(device, WearableDevice):
            raise _unexpected(event)
        # serialised with connect and disconnect
        async with self._registry.lock(device.device_id):
            channel = self._manager.channel(device.device_id)
            merged = self._registry.apply_external(device, keep_status=channel is not None)
            if channel is not None:
                channel.update_device(merged)
        if self._dispatcher.dispatch_device_change(device):
            logger.debug("subscriber.device_change", device=device.device_id, status=device.status.value)


class HealthDataChangeSubscriber(ChangeSubscriber):
    """Critical check for readings stored without passing a local channel."""

    table = Table.HEALTH_DATA

    def __init__(self, bus: EventBus, registry: DeviceRegistry, evaluator: ThresholdEvaluator) -> None:
        super().__init__(bus)
        self._registry = registry
        self._evaluator = evaluator

    def accepts(self, event: ChangeEvent) -> bool:
        return event.op is ChangeOp.INSERT and event.origin != INGESTION_ORIGIN

    async def handle(self, event: ChangeEvent) -> None:
        point = event.record
        if not isinstance(point, HealthDataPoint):
            raise _unexpected(event)
        device = self._registry.get(point.device_id)
        if device is None:
            logger.debug("subscriber.reading_unknown_device", device=point.device_id, type=point.type.value)
            return
        self._evaluator.evaluate(point, device, once=True)


class PredictionChangeSubscriber(ChangeSubscriber):
    """Route newly stored predictions through the alert dispatcher."""

    table = Table.PREDICTIONS

    def __init__(self, bus: EventBus, dispatcher: AlertDispatcher) -> None:
        super().__init__(bus)
        self._dispatcher = dispatcher

    def accepts(self, event: ChangeEvent) -> bool:
        return event.op is ChangeOp.INSERT

    async def handle(self, event: ChangeEvent) -> None:
        prediction = event.record
        if not isinstance(prediction, HealthPrediction):
            raise _unexpected(event)
        self._dispatcher.dispatch_prediction(prediction)
