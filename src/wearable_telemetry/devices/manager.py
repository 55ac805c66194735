"""Connection manager — scan, pair and release wearable hardware.

State machine per device::

    disconnected → pairing → connected → {disconnected, error}

A successful :meth:`ConnectionManager.connect` upserts the device record
with ``status=connected`` and opens exactly one ingestion channel bound to
it.  Hardware failures move the device to ``error`` and surface as
:class:`~wearable_telemetry.errors.ConnectionFailed`; there is no automatic
retry or backoff here, that policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import AsyncIterator, Callable, Sequence

import structlog

from wearable_telemetry.devices.hardware import HardwareHandle, HardwareInterface, HardwareSession
from wearable_telemetry.devices.registry import DeviceRegistry
from wearable_telemetry.errors import ConnectionFailed, PersistenceFailed, UnknownDevice
from wearable_telemetry.models import DeviceStatus, DeviceType, WearableDevice, utcnow
from wearable_telemetry.storage.repository import DeviceRepository
from wearable_telemetry.streaming.channel import IngestionChannel

logger = structlog.get_logger(__name__)

ChannelFactory = Callable[[WearableDevice], IngestionChannel]

_MEDICAL_HINTS = ("oximeter", "pressure", "ecg", "glucose", "medical", "bp ")
_WATCH_HINTS = ("watch",)


def infer_device_type(handle: HardwareHandle) -> DeviceType:
    """Guess the device family from the advertised name."""
    name = f"{(handle.name or '').lower()} "
    if any(h in name for h in _WATCH_HINTS):
        return DeviceType.SMARTWATCH
    if any(h in name for h in _MEDICAL_HINTS):
        return DeviceType.MEDICAL_DEVICE
    return DeviceType.FITNESS_TRACKER


class ConnectionManager:
    """Owns the hardware interface and the open ingestion channels.

    Device state is only ever changed through the :class:`DeviceRegistry`,
    under that device's lock.
    """

    def __init__(
        self,
        hardware: HardwareInterface,
        registry: DeviceRegistry,
        repository: DeviceRepository,
        channel_factory: ChannelFactory,
        *,
        scan_timeout: float = 5.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self._hardware = hardware
        self._registry = registry
        self._repo = repository
        self._channel_factory = channel_factory
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout
        self._channels: dict[str, IngestionChannel] = {}
        self._sessions: dict[str, HardwareSession] = {}

    # ── Access ────────────────────────────────────────────────

    def channel(self, device_id: str) -> IngestionChannel | None:
        return self._channels.get(device_id)

    @property
    def connected_ids(self) -> list[str]:
        return list(self._channels)

    # ── Scan ──────────────────────────────────────────────────

    async def scan(
        self,
        filters: Sequence[str] = (),
        timeout: float | None = None,
    ) -> AsyncIterator[HardwareHandle]:
        """Yield discovered handles; stops when the scan timeout elapses.

        Each call issues a new hardware scan.
        """
        timeout = self._scan_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        seen: set[str] = set()
        found = 0
        logger.info("connection.scan_started", timeout=timeout, filters=list(filters))

        handles = self._hardware.scan(filters, timeout).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    handle = await asyncio.wait_for(handles.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    break
                except Exception as exc:
                    logger.error("connection.scan_failed", error=str(exc))
                    raise ConnectionFailed(None, f"scan failed: {exc}") from exc
                if handle.device_id in seen:
                    continue
                seen.add(handle.device_id)
                found += 1
                yield handle
        finally:
            aclose = getattr(handles, "aclose", None)
            if aclose is not None:
                await aclose()
            logger.info("connection.scan_finished", found=found)

    # ── Connect ───────────────────────────────────────────────

    async def connect(self, handle: HardwareHandle, user_id: str) -> WearableDevice:
        """Pair *handle*, persist it as connected and open its channel.

        Connecting an already connected device returns it unchanged.
        """
        device_id = handle.device_id
        async with self._registry.lock(device_id):
            if device_id in self._channels:
                logger.info("connection.already_connected", device=device_id)
                return self._registry.get(device_id)  # type: ignore[return-value]

            if self._registry.status(device_id) is DeviceStatus.CONNECTED:
                # stale state from the store; this process holds no channel for it
                self._registry.mark_disconnected(device_id)
            self._registry.begin_pairing(device_id, user_id, handle.name)
            logger.info("connection.pairing", device=device_id, user=user_id)

            try:
                session = await asyncio.wait_for(self._hardware.connect(handle), timeout=self._connect_timeout)
                info = await self._hardware.platform_info()
            except Exception as exc:
                reason = "handshake timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
                await self._fail(user_id, device_id, reason)
                raise ConnectionFailed(device_id, reason) from exc

            pairing = self._registry.get(device_id)
            if pairing is None:
                await self._release_hardware(device_id)
                raise ConnectionFailed(device_id, "device was removed while pairing")
            record = pairing.model_copy(
                update={
                    "user_id": user_id,
                    "name": handle.name or "Unknown Device",
                    "type": infer_device_type(handle),
                    "manufacturer": info.manufacturer,
                    "model": info.model,
                    "status": DeviceStatus.CONNECTED,
                    "last_sync": utcnow(),
                    "battery_level": session.battery_level,
                    "metadata": {
                        **pairing.metadata,
                        "platform": info.platform,
                        "operating_system": info.operating_system,
                        "rssi": handle.rssi,
                    },
                }
            )
            try:
                stored = await self._repo.upsert(record)
            except PersistenceFailed:
                await self._release_hardware(device_id)
                await self._fail(user_id, device_id, "device record could not be stored")
                raise

            device = self._registry.register(stored)
            channel = self._channel_factory(device)
            await channel.start()
            session.set_listener(channel.push)
            self._channels[device_id] = channel
            self._sessions[device_id] = session
            logger.info("connection.connected", device=device_id, record=device.id, type=device.type.value)
            return device

    async def _fail(self, user_id: str, device_id: str, reason: str) -> None:
        """Move the device to ``error``, in the store as well when it has a record."""
        self._registry.transition(device_id, DeviceStatus.ERROR)
        logger.error("connection.failed", device=device_id, reason=reason)
        await self._store_status(user_id, device_id, DeviceStatus.ERROR)

    async def _store_status(
        self,
        user_id: str,
        device_id: str,
        status: DeviceStatus,
        last_sync: datetime | None = None,
    ) -> None:
        try:
            await self._repo.update_status(user_id, device_id, status, last_sync)
        except PersistenceFailed as exc:
            logger.error("connection.status_not_stored", device=device_id, status=status.value, error=str(exc))

    async def _release_hardware(self, device_id: str) -> None:
        try:
            await self._hardware.disconnect(device_id)
        except Exception as exc:
            logger.warning("connection.release_failed", device=device_id, error=str(exc))

    # ── Disconnect ────────────────────────────────────────────

    async def disconnect(self, device_id: str) -> WearableDevice:
        """Drain and close the channel, drop the hardware link, mark the
        device ``disconnected`` and stamp ``last_sync``."""
        async with self._registry.lock(device_id):
            channel = self._channels.pop(device_id, None)
            if channel is None:
                raise UnknownDevice(device_id)
            user_id = channel.device.user_id

            session = self._sessions.pop(device_id, None)
            if session is not None:
                session.set_listener(None)
            await channel.close()

            try:
                await self._hardware.disconnect(device_id)
            except Exception as exc:
                await self._fail(user_id, device_id, str(exc))
                raise ConnectionFailed(device_id, f"disconnect failed: {exc}") from exc

            device = self._registry.mark_disconnected(device_id)
            await self._repo.update_status(user_id, device_id, DeviceStatus.DISCONNECTED, device.last_sync)
            logger.info("connection.disconnected", device=device_id, **channel.stats)
            return device

    async def close_all(self) -> None:
        """Close every open channel and mark its device ``disconnected``.

        Hardware links are left to the backend's own shutdown.  A record
        that cannot be updated is logged and skipped.
        """
        for device_id in list(self._channels):
            async with self._registry.lock(device_id):
                channel = self._channels.pop(device_id, None)
                if channel is None:
                    continue
                session = self._sessions.pop(device_id, None)
                if session is not None:
                    session.set_listener(None)
                await channel.close()
                device = self._registry.mark_disconnected(device_id)
                await self._store_status(device.user_id, device_id, DeviceStatus.DISCONNECTED, device.last_sync)
                logger.info("connection.closed", device=device_id, **channel.stats)
