"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio

import pytest

from wearable_telemetry.config import Settings
from wearable_telemetry.devices.hardware import SimulatedHardware
from wearable_telemetry.models import (
    DataType,
    DeviceStatus,
    HealthDataPoint,
    Notification,
    TactileIntensity,
    WearableDevice,
)
from wearable_telemetry.notifications.dispatcher import AlertDispatcher
from wearable_telemetry.notifications.handlers import NotificationHandler
from wearable_telemetry.service import TelemetryService
from wearable_telemetry.storage.database import Database


class RecordingHandler(NotificationHandler):
    """Keeps every feedback call and notification it receives."""

    name = "recording"

    def __init__(self) -> None:
        self.tactile: list[TactileIntensity] = []
        self.notifications: list[Notification] = []

    async def tactile_feedback(self, intensity: TactileIntensity) -> bool:
        self.tactile.append(intensity)
        return True

    async def schedule_notification(self, notification: Notification) -> bool:
        self.notifications.append(notification)
        return True

    def titled(self, title: str) -> list[Notification]:
        return [n for n in self.notifications if n.title == title]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'telemetry.db'}",
        dispatch_workers=1,
        scan_timeout_seconds=0.5,
        connect_timeout_seconds=1.0,
        webhook_url="",
    )


@pytest.fixture
async def database(settings: Settings):
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
async def dispatcher(recorder: RecordingHandler, settings: Settings):
    d = AlertDispatcher([recorder], settings=settings)
    await d.start()
    yield d
    await d.stop()


@pytest.fixture
def hardware() -> SimulatedHardware:
    hw = SimulatedHardware()
    hw.advertise("AA:01", "Pulse Watch", battery_level=80)
    hw.advertise("AA:02", "Step Band")
    return hw


@pytest.fixture
async def service(settings: Settings, database: Database, hardware: SimulatedHardware, recorder: RecordingHandler):
    svc = TelemetryService(settings, database, hardware, [recorder])
    await svc.initialize()
    yield svc
    await svc.cleanup()


@pytest.fixture
def device() -> WearableDevice:
    return WearableDevice(
        device_id="AA:01",
        user_id="U001",
        name="Pulse Watch",
        status=DeviceStatus.CONNECTED,
    )


@pytest.fixture
def make_point():
    def _make(value: float, data_type: DataType = DataType.HEART_RATE, device_id: str = "AA:01", **kw):
        unit = {DataType.HEART_RATE: "bpm", DataType.BLOOD_OXYGEN: "%"}.get(data_type, "")
        return HealthDataPoint(device_id=device_id, type=data_type, value=value, unit=unit, **kw)

    return _make


@pytest.fixture
def settle():
    """Let subscriber tasks run, then wait for queued dispatch jobs."""

    async def _settle(dispatcher: AlertDispatcher) -> None:
        for _ in range(5):
            await asyncio.sleep(0.01)
        await dispatcher.drain()

    return _settle
