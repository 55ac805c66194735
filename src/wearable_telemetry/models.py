"""Shared Pydantic models used across the telemetry pipeline."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the store persists and compares."""
    return datetime.now(UTC).replace(tzinfo=None)


# ── Enums ─────────────────────────────────────────────────────

class DeviceType(str, Enum):
    """Supported wearable device families."""
    SMARTWATCH = "smartwatch"
    FITNESS_TRACKER = "fitness_tracker"
    MEDICAL_DEVICE = "medical_device"


class DeviceStatus(str, Enum):
    """Connection lifecycle states of a wearable device."""
    DISCONNECTED = "disconnected"
    PAIRING = "pairing"
    CONNECTED = "connected"
    ERROR = "error"


class DataType(str, Enum):
    """Physiological readings streamed by a device."""
    HEART_RATE = "heart_rate"
    STEPS = "steps"
    SLEEP = "sleep"
    BLOOD_PRESSURE = "blood_pressure"
    BLOOD_OXYGEN = "blood_oxygen"


class PredictionType(str, Enum):
    HEALTH_RISK = "health_risk"
    STRESS_LEVEL = "stress_level"
    SLEEP_QUALITY = "sleep_quality"
    ACTIVITY_RECOMMENDATION = "activity_recommendation"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TactileIntensity(str, Enum):
    """Impact styles understood by the feedback collaborator."""
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


class SoundProfile(str, Enum):
    ALERT = "alert.wav"
    NOTIFICATION = "notification.wav"
    BEEP = "beep.wav"


# ── Records ───────────────────────────────────────────────────

class WearableDevice(BaseModel):
    """A registered wearable and its current connection state.

    ``id`` is the store-assigned record id; ``device_id`` is the hardware
    address and is the key used by the registry and the public API.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    user_id: str
    name: str = "Unknown Device"
    type: DeviceType = DeviceType.FITNESS_TRACKER
    manufacturer: str = ""
    model: str = ""
    status: DeviceStatus = DeviceStatus.DISCONNECTED
    last_sync: datetime = Field(default_factory=utcnow)
    battery_level: int | None = Field(default=None, ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthDataPoint(BaseModel):
    """A single timestamped reading pushed by a device.  Immutable."""
    model_config = ConfigDict(frozen=True)

    device_id: str
    type: DataType
    value: float
    unit: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthPrediction(BaseModel):
    """A confidence-scored interpretation of recent readings.

    Corrections are new records, never updates.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    device_id: str | None = None
    type: PredictionType
    prediction: str
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthTrend(BaseModel):
    """Directional classification of a window of same-type samples."""
    type: DataType | None = None
    trend: TrendDirection
    start_date: datetime | None = None
    end_date: datetime | None = None
    data: list[float] = Field(default_factory=list)


class ThresholdBand(BaseModel):
    """Inclusive safe range for one data type."""
    min: float
    max: float

    @model_validator(mode="after")
    def _ordered(self) -> ThresholdBand:
        if self.min > self.max:
            raise ValueError(f"threshold min {self.min} exceeds max {self.max}")
        return self


class Notification(BaseModel):
    """Payload handed to the notification collaborator."""
    title: str
    body: str
    sound: SoundProfile = SoundProfile.NOTIFICATION
    action_type: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime = Field(default_factory=utcnow)


class AlertEvent(BaseModel):
    """Transient record of one dispatch; never persisted."""
    severity: AlertSeverity
    source: HealthDataPoint | HealthPrediction
    message: str
    tactile: TactileIntensity | None = None
