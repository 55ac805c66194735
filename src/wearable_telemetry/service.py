"""Telemetry service — the public entry point of the pipeline.

One :class:`TelemetryService` is built at startup and passed to whoever
needs it (the HTTP layer, the CLI, tests).  It wires the components in
dependency order::

    hardware → ConnectionManager → IngestionChannel (per device)
        ├─ ThresholdEvaluator → AlertDispatcher        (fast path)
        └─ TrendAnalyzer → PredictionEngine → store     (slow path)
    store → EventBus → subscriptions → AlertDispatcher

Between :meth:`TelemetryService.initialize` and :meth:`TelemetryService.cleanup`
the service is live; any other public call outside that span raises
:class:`~wearable_telemetry.errors.NotInitialized`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import structlog

from wearable_telemetry.analysis.predictions import PredictionEngine
from wearable_telemetry.analysis.trend import TrendAnalyzer
from wearable_telemetry.config import Settings, get_settings
from wearable_telemetry.devices.hardware import HardwareHandle, HardwareInterface, SimulatedHardware
from wearable_telemetry.devices.manager import ConnectionManager
from wearable_telemetry.devices.registry import DeviceRegistry
from wearable_telemetry.errors import NotInitialized, PersistenceFailed, UnknownDevice
from wearable_telemetry.events.bus import EventBus
from wearable_telemetry.events.subscriptions import (
    ChangeSubscriber,
    DeviceChangeSubscriber,
    HealthDataChangeSubscriber,
    PredictionChangeSubscriber,
)
from wearable_telemetry.models import (
    DataType,
    HealthDataPoint,
    HealthPrediction,
    PredictionType,
    TactileIntensity,
    WearableDevice,
)
from wearable_telemetry.monitors.thresholds import ThresholdEvaluator
from wearable_telemetry.notifications.dispatcher import AlertDispatcher
from wearable_telemetry.notifications.handlers import NotificationHandler, create_handlers
from wearable_telemetry.storage.database import Database
from wearable_telemetry.storage.repository import (
    DeviceRepository,
    HealthDataRepository,
    PredictionRepository,
)
from wearable_telemetry.streaming.channel import IngestionChannel

logger = structlog.get_logger(__name__)


class TelemetryService:
    """Device lifecycle, ingestion, prediction and alerting behind one object.

    Usage::

        service = TelemetryService(settings, database, SimulatedHardware())
        await database.init()
        await service.initialize()
        handles = await service.scan_for_devices()
        device = await service.connect_device(handles[0], "user-1")
        ...
        await service.cleanup()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        database: Database | None = None,
        hardware: HardwareInterface | None = None,
        handlers: list[NotificationHandler] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.database = database or Database(self.settings.database_url)
        self.hardware = hardware or SimulatedHardware()

        self.bus = EventBus()
        self.devices = DeviceRepository(self.database, self.bus)
        self.health_data = HealthDataRepository(self.database, self.bus)
        self.predictions = PredictionRepository(self.database, self.bus)

        self.registry = DeviceRegistry()
        self.dispatcher = AlertDispatcher(
            handlers if handlers is not None else create_handlers(self.settings),
            settings=self.settings,
        )
        self.evaluator = ThresholdEvaluator(self.dispatcher, self.settings.critical_thresholds)
        self.analyzer = TrendAnalyzer(
            self.settings.trend_window_size,
            improving_ratio=self.settings.trend_improving_ratio,
            declining_ratio=self.settings.trend_declining_ratio,
        )
        self.engine = PredictionEngine(self.settings, self.predictions, self.dispatcher, self.analyzer)
        self.manager = ConnectionManager(
            self.hardware,
            self.registry,
            self.devices,
            self._open_channel,
            scan_timeout=self.settings.scan_timeout_seconds,
            connect_timeout=self.settings.connect_timeout_seconds,
        )
        self._subscribers: list[ChangeSubscriber] = [
            DeviceChangeSubscriber(self.bus, self.registry, self.dispatcher, self.manager),
            HealthDataChangeSubscriber(self.bus, self.registry, self.evaluator),
            PredictionChangeSubscriber(self.bus, self.dispatcher),
        ]
        self._initialized = False

    # ── Wiring ────────────────────────────────────────────────

    def _open_channel(self, device: WearableDevice) -> IngestionChannel:
        return IngestionChannel(
            device,
            evaluator=self.evaluator,
            analyzer=self.analyzer,
            repository=self.health_data,
            on_window_close=self._on_window_close,
            buffer_size=self.settings.ingestion_buffer_size,
        )

    async def _on_window_close(
        self,
        device: WearableDevice,
        data_type: DataType,
        window: list[HealthDataPoint],
    ) -> None:
        types = self.settings.prediction_map.get(data_type, [])
        if not types:
            return
        try:
            await self.engine.generate(device.user_id, window, types)
        except PersistenceFailed as exc:
            logger.error(
                "service.window_predictions_failed",
                device=device.device_id,
                type=data_type.value,
                error=str(exc),
            )

    def _require(self, operation: str) -> None:
        if not self._initialized:
            raise NotInitialized(operation)

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Bring up the hardware layer, the dispatcher and the change
        subscriptions.  Calling it on a live service is a no-op."""
        if self._initialized:
            return
        await self.hardware.initialize()
        await self.dispatcher.start()
        for subscriber in self._subscribers:
            await subscriber.start()
        self._initialized = True
        logger.info("service.initialized", handlers=self.dispatcher.handler_names)

    async def cleanup(self) -> None:
        """Close every channel and subscription and clear in-memory state.

        Devices with an open channel are stored as ``disconnected``.
        Hardware links are not torn down one by one; the backend is closed
        as a whole.
        """
        if not self._initialized:
            return
        self._initialized = False
        await self.manager.close_all()
        for subscriber in self._subscribers:
            await subscriber.stop()
        self.bus.close()
        await self.dispatcher.stop()
        self.registry.clear()
        self.analyzer.clear()
        await self.hardware.close()
        logger.info("service.cleaned_up")

    # ── Devices ───────────────────────────────────────────────

    async def scan_for_devices(
        self,
        filters: Sequence[str] = (),
        timeout: float | None = None,
    ) -> list[HardwareHandle]:
        self._require("scan_for_devices")
        self.dispatcher.feedback(TactileIntensity.LIGHT, label="scan")
        return [handle async for handle in self.manager.scan(filters, timeout)]

    async def connect_device(self, handle: HardwareHandle, user_id: str | None = None) -> WearableDevice:
        self._require("connect_device")
        device = await self.manager.connect(handle, user_id or self.settings.default_user_id)
        self.dispatcher.feedback(TactileIntensity.MEDIUM, label="connect")
        return device

    async def disconnect_device(self, device_id: str) -> WearableDevice:
        self._require("disconnect_device")
        device = await self.manager.disconnect(device_id)
        self.analyzer.reset(device_id)
        self.dispatcher.feedback(TactileIntensity.MEDIUM, label="disconnect")
        return device

    async def get_devices(self, user_id: str) -> list[WearableDevice]:
        self._require("get_devices")
        return await self.devices.list_for_user(user_id)

    def push_reading(self, point: HealthDataPoint) -> bool:
        """Feed one reading into its device's channel.

        Returns ``False`` (nothing buffered) for a device that is known but
        no longer connected.
        """
        self._require("push_reading")
        channel = self.manager.channel(point.device_id)
        if channel is not None:
            return channel.push(point)
        if point.device_id in self.registry:
            logger.warning("service.push_rejected", device=point.device_id, status=self.registry.status(point.device_id))
            return False
        raise UnknownDevice(point.device_id)

    # ── Data & predictions ────────────────────────────────────

    async def get_health_data(
        self,
        device_id: str,
        data_type: DataType,
        start: datetime,
        end: datetime,
    ) -> list[HealthDataPoint]:
        self._require("get_health_data")
        return await self.health_data.get_range(device_id, data_type, start, end)

    async def generate_predictions(
        self,
        user_id: str,
        points: Sequence[HealthDataPoint],
        types: Sequence[PredictionType],
    ) -> list[HealthPrediction]:
        self._require("generate_predictions")
        return await self.engine.generate(user_id, points, types)

    async def get_prediction_history(
        self,
        user_id: str,
        prediction_type: PredictionType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[HealthPrediction]:
        self._require("get_prediction_history")
        return await self.predictions.history(user_id, prediction_type, start, end)

    # ── Introspection ─────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "connected": self.manager.connected_ids,
            "critical_readings": self.evaluator.critical_count,
            "dispatcher": self.dispatcher.stats,
            "channels": {
                device_id: self.manager.channel(device_id).stats  # type: ignore[union-attr]
                for device_id in self.manager.connected_ids
            },
            "subscribers": [s.stats for s in self._subscribers],
        }
