"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wearable_telemetry.models import DataType, PredictionType, ThresholdBand

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_DB_DIR = _PROJECT_ROOT / "data"
_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_DB_DIR / 'wearable_telemetry.db'}"


def default_thresholds() -> dict[DataType, ThresholdBand]:
    """Safe ranges for the data types that can be critical.

    Steps and sleep are deliberately absent: they are never flagged.
    """
    return {
        DataType.HEART_RATE: ThresholdBand(min=40, max=150),
        DataType.BLOOD_OXYGEN: ThresholdBand(min=90, max=100),
        DataType.BLOOD_PRESSURE: ThresholdBand(min=90, max=140),
    }


def default_prediction_map() -> dict[DataType, list[PredictionType]]:
    """Prediction types generated when a window of a data type closes."""
    return {
        DataType.HEART_RATE: [PredictionType.STRESS_LEVEL, PredictionType.HEALTH_RISK],
        DataType.STEPS: [PredictionType.ACTIVITY_RECOMMENDATION],
        DataType.SLEEP: [PredictionType.SLEEP_QUALITY],
        DataType.BLOOD_PRESSURE: [PredictionType.HEALTH_RISK],
        DataType.BLOOD_OXYGEN: [PredictionType.HEALTH_RISK],
    }


class Settings(BaseSettings):
    """All runtime configuration for the telemetry pipeline.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in one flat namespace;
    mapping-valued fields are given as JSON.
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Thresholds ────────────────────────────────────────────
    critical_thresholds: dict[DataType, ThresholdBand] = Field(default_factory=default_thresholds)

    # ── Trend analysis ────────────────────────────────────────
    trend_improving_ratio: float = 1.1
    trend_declining_ratio: float = 0.9
    trend_window_size: int = Field(default=10, ge=2)
    prediction_average_points: int = Field(default=10, ge=1)
    prediction_map: dict[DataType, list[PredictionType]] = Field(
        default_factory=default_prediction_map,
    )

    # ── Prediction confidences ────────────────────────────────
    confidence_sleep_quality: float = Field(default=0.85, ge=0.0, le=1.0)
    confidence_stress_level: float = Field(default=0.75, ge=0.0, le=1.0)
    confidence_activity_recommendation: float = Field(default=0.80, ge=0.0, le=1.0)
    confidence_health_risk: float = Field(default=0.90, ge=0.0, le=1.0)

    # ── Alert gating ──────────────────────────────────────────
    stress_alert_confidence: float = 0.8
    sleep_alert_confidence: float = 0.9
    heavy_feedback_confidence: float = 0.8
    medium_feedback_confidence: float = 0.5

    # ── Ingestion / dispatch ──────────────────────────────────
    ingestion_buffer_size: int = Field(default=256, ge=1)
    dispatch_queue_size: int = Field(default=256, ge=1)
    dispatch_workers: int = Field(default=2, ge=1)

    # ── Hardware ──────────────────────────────────────────────
    scan_timeout_seconds: float = 5.0
    connect_timeout_seconds: float = 10.0
    default_user_id: str = "local-user"

    # ── Database ──────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── Notifications ─────────────────────────────────────────
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = int(os.getenv("PORT", "8000"))
    cors_origins: str = "*"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    def confidence_for(self, prediction_type: PredictionType) -> float:
        return {
            PredictionType.SLEEP_QUALITY: self.confidence_sleep_quality,
            PredictionType.STRESS_LEVEL: self.confidence_stress_level,
            PredictionType.ACTIVITY_RECOMMENDATION: self.confidence_activity_recommendation,
            PredictionType.HEALTH_RISK: self.confidence_health_risk,
        }[prediction_type]


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
