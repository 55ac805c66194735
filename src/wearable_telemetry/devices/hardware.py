"""Hardware scanning/connection interface and a simulated backend.

The pipeline treats the radio stack as an unreliable collaborator: every
call may fail, and :class:`~wearable_telemetry.devices.manager.ConnectionManager`
turns failures into :class:`~wearable_telemetry.errors.ConnectionFailed`.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Sequence

from wearable_telemetry.models import HealthDataPoint

DataListener = Callable[[HealthDataPoint], Any]


@dataclass(frozen=True, slots=True)
class HardwareHandle:
    """A discovered, not yet connected, piece of hardware."""

    device_id: str
    name: str | None = None
    rssi: int | None = None
    services: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Host platform details recorded on connect."""

    manufacturer: str = ""
    model: str = ""
    platform: str = ""
    operating_system: str = ""


class HardwareSession:
    """An open streaming session with one device.

    The hardware layer calls :meth:`emit` for every reading; the session
    forwards it to the registered listener (push, never poll).
    """

    def __init__(self, handle: HardwareHandle, battery_level: int | None = None) -> None:
        self.handle = handle
        self.battery_level = battery_level
        self._listener: DataListener | None = None

    @property
    def device_id(self) -> str:
        return self.handle.device_id

    def set_listener(self, listener: DataListener | None) -> None:
        self._listener = listener

    def emit(self, point: HealthDataPoint) -> Any:
        if self._listener is None:
            return False
        return self._listener(point)


class HardwareInterface(ABC):
    """Contract that every radio backend must implement."""

    @abstractmethod
    async def initialize(self) -> None:
        """Bring up the radio stack."""

    @abstractmethod
    def scan(self, filters: Sequence[str], timeout: float) -> AsyncIterator[HardwareHandle]:
        """Yield discoverable handles until *timeout* seconds elapse.

        Each call starts a fresh scan.
        """

    @abstractmethod
    async def connect(self, handle: HardwareHandle) -> HardwareSession:
        """Perform the hardware handshake and open a session."""

    @abstractmethod
    async def disconnect(self, device_id: str) -> None:
        """Close the hardware link for *device_id*."""

    @abstractmethod
    async def platform_info(self) -> PlatformInfo:
        """Describe the host platform the device is paired with."""

    async def close(self) -> None:
        """Release any resources held by the backend."""


# ── Simulated backend ─────────────────────────────────────────


@dataclass
class SimulatedHardware(HardwareInterface):
    """In-memory backend for development and tests.

    Advertised handles are registered with :meth:`advertise`; readings are
    injected with :meth:`push`.  Failures can be injected per device id.
    """

    advertised: list[HardwareHandle] = field(default_factory=list)
    battery_levels: dict[str, int] = field(default_factory=dict)
    fail_connect: set[str] = field(default_factory=set)
    fail_disconnect: set[str] = field(default_factory=set)
    fail_scan: bool = False
    scan_delay: float = 0.0
    info: PlatformInfo = field(
        default_factory=lambda: PlatformInfo(
            manufacturer="Simulated",
            model="SIM-1",
            platform="simulator",
            operating_system="none",
        )
    )
    initialized: bool = False
    sessions: dict[str, HardwareSession] = field(default_factory=dict)

    def advertise(self, device_id: str, name: str | None = None, *, battery_level: int | None = None) -> HardwareHandle:
        handle = HardwareHandle(device_id=device_id, name=name)
        self.advertised.append(handle)
        if battery_level is not None:
            self.battery_levels[device_id] = battery_level
        return handle

    def push(self, point: HealthDataPoint) -> Any:
        """Deliver *point* through the session of its device, if connected."""
        session = self.sessions.get(point.device_id)
        if session is None:
            return False
        return session.emit(point)

    async def initialize(self) -> None:
        self.initialized = True

    async def scan(self, filters: Sequence[str], timeout: float) -> AsyncIterator[HardwareHandle]:
        if self.fail_scan:
            raise RuntimeError("radio unavailable")
        for handle in list(self.advertised):
            if filters and not any(f in handle.services for f in filters):
                continue
            if self.scan_delay:
                await asyncio.sleep(self.scan_delay)
            yield handle

    async def connect(self, handle: HardwareHandle) -> HardwareSession:
        if handle.device_id in self.fail_connect:
            raise RuntimeError(f"handshake with {handle.device_id} failed")
        session = HardwareSession(handle, battery_level=self.battery_levels.get(handle.device_id))
        self.sessions[handle.device_id] = session
        return session

    async def disconnect(self, device_id: str) -> None:
        if device_id in self.fail_disconnect:
            raise RuntimeError(f"link to {device_id} did not close")
        session = self.sessions.pop(device_id, None)
        if session is not None:
            session.set_listener(None)

    async def platform_info(self) -> PlatformInfo:
        return self.info

    async def close(self) -> None:
        self.sessions.clear()
        self.initialized = False
