"""Tests for scanning, connecting and disconnecting hardware."""

import asyncio
from dataclasses import dataclass

import pytest

from wearable_telemetry.devices.hardware import HardwareHandle, SimulatedHardware
from wearable_telemetry.devices.manager import infer_device_type
from wearable_telemetry.errors import ConnectionFailed, UnknownDevice
from wearable_telemetry.models import DataType, DeviceStatus, DeviceType
from wearable_telemetry.service import TelemetryService


@dataclass
class SlowHardware(SimulatedHardware):
    handshake_delay: float = 5.0

    async def connect(self, handle):
        await asyncio.sleep(self.handshake_delay)
        return await super().connect(handle)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Pulse Watch", DeviceType.SMARTWATCH),
        ("Finger Oximeter", DeviceType.MEDICAL_DEVICE),
        ("BP Cuff", DeviceType.MEDICAL_DEVICE),
        ("ECG Patch", DeviceType.MEDICAL_DEVICE),
        ("Step Band", DeviceType.FITNESS_TRACKER),
        (None, DeviceType.FITNESS_TRACKER),
    ],
)
def test_infer_device_type(name, expected):
    assert infer_device_type(HardwareHandle(device_id="X", name=name)) is expected


# ── Scan ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scan_yields_each_handle_once(service, hardware):
    hardware.advertise("AA:01", "Pulse Watch")  # advertised twice
    handles = [h async for h in service.manager.scan()]
    assert [h.device_id for h in handles] == ["AA:01", "AA:02"]


@pytest.mark.asyncio
async def test_scan_is_restartable(service):
    first = [h.device_id async for h in service.manager.scan()]
    second = [h.device_id async for h in service.manager.scan()]
    assert first == second


@pytest.mark.asyncio
async def test_scan_stops_at_timeout(service, hardware):
    hardware.scan_delay = 0.5
    loop = asyncio.get_running_loop()
    started = loop.time()
    handles = [h async for h in service.manager.scan(timeout=0.1)]
    assert handles == []
    assert loop.time() - started < 0.5


@pytest.mark.asyncio
async def test_scan_failure(service, hardware):
    hardware.fail_scan = True
    with pytest.raises(ConnectionFailed):
        [h async for h in service.manager.scan()]


@pytest.mark.asyncio
async def test_scan_filters_by_service(service, hardware):
    hardware.advertised.append(HardwareHandle(device_id="CC:03", name="Oximeter", services=("180d",)))
    handles = [h async for h in service.manager.scan(filters=["180d"])]
    assert [h.device_id for h in handles] == ["CC:03"]


# ── Connect ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_connect_registers_and_opens_channel(service, hardware):
    handle = hardware.advertised[0]
    device = await service.manager.connect(handle, "U001")

    assert device.status is DeviceStatus.CONNECTED
    assert device.type is DeviceType.SMARTWATCH
    assert device.battery_level == 80
    assert device.manufacturer == "Simulated"
    assert device.metadata["platform"] == "simulator"
    assert service.registry.status("AA:01") is DeviceStatus.CONNECTED
    assert service.manager.channel("AA:01") is not None
    assert service.manager.connected_ids == ["AA:01"]

    [stored] = await service.devices.list_for_user("U001")
    assert stored.id == device.id
    assert stored.status is DeviceStatus.CONNECTED


@pytest.mark.asyncio
async def test_connect_twice_is_idempotent(service, hardware):
    handle = hardware.advertised[0]
    first = await service.manager.connect(handle, "U001")
    second = await service.manager.connect(handle, "U001")
    assert first.id == second.id
    assert len(service.manager.connected_ids) == 1


@pytest.mark.asyncio
async def test_hardware_failure_moves_to_error(service, hardware):
    hardware.fail_connect.add("AA:02")
    with pytest.raises(ConnectionFailed) as info:
        await service.manager.connect(hardware.advertised[1], "U001")

    assert info.value.device_id == "AA:02"
    assert service.registry.status("AA:02") is DeviceStatus.ERROR
    assert service.manager.channel("AA:02") is None

    # no automatic retry; a fresh connect succeeds once the hardware recovers
    hardware.fail_connect.clear()
    device = await service.manager.connect(hardware.advertised[1], "U001")
    assert device.status is DeviceStatus.CONNECTED


@pytest.mark.asyncio
async def test_handshake_timeout(settings, database, recorder):
    hardware = SlowHardware()
    handle = hardware.advertise("AA:05", "Slow Band")
    svc = TelemetryService(settings.model_copy(update={"connect_timeout_seconds": 0.05}), database, hardware, [recorder])
    await svc.initialize()
    try:
        with pytest.raises(ConnectionFailed, match="timed out"):
            await svc.manager.connect(handle, "U001")
        assert svc.registry.status("AA:05") is DeviceStatus.ERROR
    finally:
        await svc.cleanup()


# ── Disconnect ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_disconnect_drains_and_marks_disconnected(service, hardware, make_point):
    device = await service.manager.connect(hardware.advertised[0], "U001")
    for v in range(70, 85):
        hardware.push(make_point(v))

    gone = await service.manager.disconnect("AA:01")

    assert gone.status is DeviceStatus.DISCONNECTED
    assert gone.last_sync >= device.last_sync
    assert await service.health_data.count_for_device("AA:01") == 15
    assert service.manager.channel("AA:01") is None
    # the hardware session is gone; nothing more reaches the pipeline
    assert hardware.push(make_point(90)) is False

    [stored] = await service.devices.list_for_user("U001")
    assert stored.status is DeviceStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_unknown_device(service):
    with pytest.raises(UnknownDevice):
        await service.manager.disconnect("ZZ:99")


@pytest.mark.asyncio
async def test_disconnect_failure_moves_to_error(service, hardware):
    await service.manager.connect(hardware.advertised[0], "U001")
    hardware.fail_disconnect.add("AA:01")

    with pytest.raises(ConnectionFailed):
        await service.manager.disconnect("AA:01")

    assert service.registry.status("AA:01") is DeviceStatus.ERROR
    [stored] = await service.devices.list_for_user("U001")
    assert stored.status is DeviceStatus.ERROR


@pytest.mark.asyncio
async def test_readings_flow_from_hardware(service, hardware, make_point):
    await service.manager.connect(hardware.advertised[0], "U001")
    assert hardware.push(make_point(72)) is True
    assert hardware.push(make_point(98, DataType.BLOOD_OXYGEN)) is True
    await service.manager.disconnect("AA:01")
    assert await service.health_data.count_for_device("AA:01") == 2


@pytest.mark.asyncio
async def test_failed_reconnect_stores_error_and_notifies(service, hardware, recorder, settle):
    await service.connect_device(hardware.advertised[0], "U001")
    await service.disconnect_device("AA:01")
    hardware.fail_connect.add("AA:01")

    with pytest.raises(ConnectionFailed):
        await service.connect_device(hardware.advertised[0], "U001")
    await settle(service.dispatcher)

    [stored] = await service.get_devices("U001")
    assert stored.status is DeviceStatus.ERROR
    bodies = [n.body for n in recorder.titled("Device Status Update")]
    assert bodies == ["Pulse Watch is disconnected", "Pulse Watch is error"]
