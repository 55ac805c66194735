"""In-memory registry of known wearable devices and their lifecycle state.

The registry is the only owner of the device map.  Writers serialise per
device through :meth:`DeviceRegistry.lock`; readers get copies.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from wearable_telemetry.models import DeviceStatus, WearableDevice, utcnow

logger = structlog.get_logger(__name__)

# Allowed lifecycle transitions.  A reconnect after ``error`` or
# ``disconnected`` starts again at ``pairing``.
TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.DISCONNECTED: frozenset({DeviceStatus.PAIRING}),
    DeviceStatus.PAIRING: frozenset({DeviceStatus.CONNECTED, DeviceStatus.ERROR, DeviceStatus.DISCONNECTED}),
    DeviceStatus.CONNECTED: frozenset({DeviceStatus.DISCONNECTED, DeviceStatus.ERROR}),
    DeviceStatus.ERROR: frozenset({DeviceStatus.PAIRING, DeviceStatus.DISCONNECTED}),
}


class InvalidTransition(ValueError):
    """Raised for a status change the device lifecycle does not allow."""


def _older(candidate: datetime | None, current: datetime | None) -> bool:
    return candidate is not None and current is not None and candidate < current


class DeviceRegistry:
    """Devices keyed by hardware address (``WearableDevice.device_id``)."""

    def __init__(self) -> None:
        self._devices: dict[str, WearableDevice] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Access ────────────────────────────────────────────────

    def get(self, device_id: str) -> WearableDevice | None:
        device = self._devices.get(device_id)
        return device.model_copy() if device is not None else None

    def find_by_record_id(self, record_id: str) -> WearableDevice | None:
        for device in self._devices.values():
            if device.id == record_id:
                return device.model_copy()
        return None

    def list_devices(self, user_id: str | None = None) -> list[WearableDevice]:
        return [
            d.model_copy()
            for d in self._devices.values()
            if user_id is None or d.user_id == user_id
        ]

    def status(self, device_id: str) -> DeviceStatus | None:
        device = self._devices.get(device_id)
        return device.status if device is not None else None

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def lock(self, device_id: str) -> asyncio.Lock:
        """Per-device writer lock."""
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    # ── Lifecycle ─────────────────────────────────────────────

    def begin_pairing(self, device_id: str, user_id: str, name: str | None = None) -> WearableDevice:
        """Move a (possibly new) device into ``pairing``."""
        device = self._devices.get(device_id)
        if device is None:
            device = WearableDevice(
                device_id=device_id,
                user_id=user_id,
                name=name or "Unknown Device",
                status=DeviceStatus.DISCONNECTED,
            )
            self._devices[device_id] = device
        return self.transition(device_id, DeviceStatus.PAIRING)

    def transition(self, device_id: str, status: DeviceStatus, **changes) -> WearableDevice:
        """Apply a lifecycle transition plus optional field *changes*."""
        current = self._devices.get(device_id)
        if current is None:
            raise KeyError(device_id)
        if status is not current.status and status not in TRANSITIONS[current.status]:
            raise InvalidTransition(f"{device_id}: {current.status.value} -> {status.value}")
        updated = current.model_copy(update={**changes, "status": status})
        self._devices[device_id] = updated
        logger.debug("registry.transition", device=device_id, old=current.status.value, new=status.value)
        return updated.model_copy()

    def register(self, device: WearableDevice) -> WearableDevice:
        """Replace the entry for ``device.device_id`` with a stored record.

        The lifecycle transition is validated against the current entry.
        """
        current = self._devices.get(device.device_id)
        if current is not None and device.status is not current.status \
                and device.status not in TRANSITIONS[current.status]:
            raise InvalidTransition(f"{device.device_id}: {current.status.value} -> {device.status.value}")
        self._devices[device.device_id] = device.model_copy()
        return device.model_copy()

    def mark_disconnected(self, device_id: str) -> WearableDevice:
        return self.transition(device_id, DeviceStatus.DISCONNECTED, last_sync=utcnow())

    def apply_external(self, device: WearableDevice, *, keep_status: bool = False) -> WearableDevice:
        """Merge a record changed elsewhere in the store.

        Descriptive fields always follow the record.  The status (and
        ``last_sync``) follow it only for a valid lifecycle transition from
        a record no older than the local entry.  With *keep_status* the
        local status always wins; used while this process holds the
        device's open channel.  Without that channel ``connected`` is never
        taken from a record and reads as ``disconnected``.

        Callers hold :meth:`lock` for the device.
        """
        current = self._devices.get(device.device_id)
        status, last_sync = device.status, device.last_sync
        if status is DeviceStatus.CONNECTED and not keep_status:
            status = DeviceStatus.DISCONNECTED
        if current is not None and (
            keep_status
            or _older(last_sync, current.last_sync)
            or (status is not current.status and status not in TRANSITIONS[current.status])
        ):
            if status is not current.status:
                logger.debug(
                    "registry.external_status_ignored",
                    device=device.device_id,
                    local=current.status.value,
                    external=device.status.value,
                )
            status, last_sync = current.status, current.last_sync
        merged = device.model_copy(update={"status": status, "last_sync": last_sync})
        self._devices[device.device_id] = merged
        return merged.model_copy()

    def clear(self) -> None:
        self._devices.clear()
        self._locks.clear()
