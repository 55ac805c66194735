"""Tests for the device registry and lifecycle transitions."""

from datetime import timedelta

import pytest

from wearable_telemetry.devices.registry import DeviceRegistry, InvalidTransition
from wearable_telemetry.models import DeviceStatus, WearableDevice


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry()


def test_begin_pairing_creates_device(registry):
    device = registry.begin_pairing("AA:01", "U001", "Pulse Watch")
    assert device.status is DeviceStatus.PAIRING
    assert device.name == "Pulse Watch"
    assert "AA:01" in registry
    assert len(registry) == 1


def test_unnamed_hardware(registry):
    assert registry.begin_pairing("AA:09", "U001").name == "Unknown Device"


def test_full_lifecycle(registry):
    registry.begin_pairing("AA:01", "U001")
    registry.transition("AA:01", DeviceStatus.CONNECTED, battery_level=55)
    assert registry.get("AA:01").battery_level == 55

    before = registry.get("AA:01").last_sync
    device = registry.mark_disconnected("AA:01")
    assert device.status is DeviceStatus.DISCONNECTED
    assert device.last_sync >= before

    # reconnect starts at pairing again
    assert registry.begin_pairing("AA:01", "U001").status is DeviceStatus.PAIRING


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (DeviceStatus.DISCONNECTED, DeviceStatus.CONNECTED),
        (DeviceStatus.DISCONNECTED, DeviceStatus.ERROR),
        (DeviceStatus.CONNECTED, DeviceStatus.PAIRING),
        (DeviceStatus.ERROR, DeviceStatus.CONNECTED),
    ],
)
def test_invalid_transitions(registry, start, target):
    registry.register(WearableDevice(device_id="AA:01", user_id="U001", status=start))
    with pytest.raises(InvalidTransition):
        registry.transition("AA:01", target)
    assert registry.status("AA:01") is start


def test_error_then_retry(registry):
    registry.begin_pairing("AA:01", "U001")
    registry.transition("AA:01", DeviceStatus.ERROR)
    assert registry.begin_pairing("AA:01", "U001").status is DeviceStatus.PAIRING


def test_unknown_device(registry):
    assert registry.get("nope") is None
    assert registry.status("nope") is None
    with pytest.raises(KeyError):
        registry.transition("nope", DeviceStatus.PAIRING)


def test_readers_get_copies(registry):
    registry.begin_pairing("AA:01", "U001")
    copy = registry.get("AA:01")
    copy.name = "tampered"
    assert registry.get("AA:01").name != "tampered"


def test_list_and_lookup(registry):
    a = registry.register(WearableDevice(device_id="AA:01", user_id="U001"))
    registry.register(WearableDevice(device_id="AA:02", user_id="U002"))

    assert [d.device_id for d in registry.list_devices("U001")] == ["AA:01"]
    assert len(registry.list_devices()) == 2
    assert registry.find_by_record_id(a.id).device_id == "AA:01"
    assert registry.find_by_record_id("missing") is None


def test_apply_external_keeps_local_status(registry):
    registry.begin_pairing("AA:01", "U001")
    registry.transition("AA:01", DeviceStatus.CONNECTED)
    external = WearableDevice(
        device_id="AA:01", user_id="U001", name="Renamed", status=DeviceStatus.DISCONNECTED, battery_level=10,
    )

    merged = registry.apply_external(external, keep_status=True)
    assert merged.status is DeviceStatus.CONNECTED
    assert merged.name == "Renamed"
    assert merged.battery_level == 10

    replaced = registry.apply_external(external)
    assert replaced.status is DeviceStatus.DISCONNECTED


def test_apply_external_never_adopts_connected(registry):
    external = WearableDevice(device_id="AA:01", user_id="U001", name="Elsewhere", status=DeviceStatus.CONNECTED)
    merged = registry.apply_external(external)
    assert merged.status is DeviceStatus.DISCONNECTED
    assert merged.name == "Elsewhere"


def test_apply_external_ignores_older_record(registry):
    registry.begin_pairing("AA:01", "U001")
    registry.transition("AA:01", DeviceStatus.CONNECTED)
    gone = registry.mark_disconnected("AA:01")

    # pairing would be a valid next step, but the record predates the local entry
    older = gone.model_copy(update={"status": DeviceStatus.PAIRING, "last_sync": gone.last_sync - timedelta(seconds=5)})
    merged = registry.apply_external(older)
    assert merged.status is DeviceStatus.DISCONNECTED
    assert merged.last_sync == gone.last_sync


def test_apply_external_rejects_invalid_transition(registry):
    registry.begin_pairing("AA:01", "U001")
    registry.transition("AA:01", DeviceStatus.CONNECTED)
    registry.mark_disconnected("AA:01")
    current = registry.get("AA:01")

    # disconnected -> error skips pairing
    merged = registry.apply_external(current.model_copy(update={"status": DeviceStatus.ERROR, "name": "New"}))
    assert merged.status is DeviceStatus.DISCONNECTED
    assert merged.name == "New"


@pytest.mark.asyncio
async def test_lock_is_per_device(registry):
    assert registry.lock("AA:01") is registry.lock("AA:01")
    assert registry.lock("AA:01") is not registry.lock("AA:02")
    registry.clear()
    assert len(registry) == 0
