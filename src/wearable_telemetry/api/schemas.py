"""Request / response models for the HTTP surface."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from wearable_telemetry.devices.hardware import HardwareHandle
from wearable_telemetry.models import DataType, HealthDataPoint, PredictionType, utcnow


class HandleOut(BaseModel):
    device_id: str
    name: str | None = None
    rssi: int | None = None
    services: list[str] = []

    @classmethod
    def from_handle(cls, handle: HardwareHandle) -> HandleOut:
        return cls(**{**asdict(handle), "services": list(handle.services)})


class ConnectRequest(BaseModel):
    """A handle as returned by ``GET /devices/scan``, plus its owner."""
    device_id: str
    name: str | None = None
    rssi: int | None = None
    services: list[str] = []
    user_id: str | None = None

    def to_handle(self) -> HardwareHandle:
        return HardwareHandle(
            device_id=self.device_id,
            name=self.name,
            rssi=self.rssi,
            services=tuple(self.services),
        )


class ReadingRequest(BaseModel):
    type: DataType
    value: float
    unit: str = ""
    timestamp: datetime | None = None
    metadata: dict[str, Any] = {}

    def to_point(self, device_id: str) -> HealthDataPoint:
        return HealthDataPoint(
            device_id=device_id,
            type=self.type,
            value=self.value,
            unit=self.unit,
            timestamp=self.timestamp or utcnow(),
            metadata=self.metadata,
        )


class PointIn(ReadingRequest):
    device_id: str


class PredictionRequest(BaseModel):
    user_id: str
    types: list[PredictionType] = Field(min_length=1)
    points: list[PointIn] = []
