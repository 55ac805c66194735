"""Prediction engine — turn a trend and recent average into insights.

Each :class:`PredictionType` maps to one deterministic template carrying a
fixed (configurable) confidence.  Every generated prediction is persisted
before it is handed to the dispatcher, so it is queryable even when
notification delivery fails.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Sequence

import structlog

from wearable_telemetry.analysis.trend import TrendAnalyzer, mean
from wearable_telemetry.config import Settings
from wearable_telemetry.models import (
    HealthDataPoint,
    HealthPrediction,
    PredictionType,
    TrendDirection,
)

if TYPE_CHECKING:
    from wearable_telemetry.notifications.dispatcher import AlertDispatcher
    from wearable_telemetry.storage.repository import PredictionRepository

logger = structlog.get_logger(__name__)

# (text, metadata) for a given trend and average
_Template = Callable[[TrendDirection, float], tuple[str, dict[str, Any]]]


def _sleep_quality(trend: TrendDirection, average: float) -> tuple[str, dict[str, Any]]:
    return (
        f"Your sleep quality is {trend.value}. Average duration: {round(average)} hours.",
        {"trend": trend.value, "average": average},
    )


def _stress_level(trend: TrendDirection, average: float) -> tuple[str, dict[str, Any]]:
    return (
        f"Your stress level appears to be {trend.value}. Consider relaxation techniques.",
        {"trend": trend.value, "average": average},
    )


def _activity_recommendation(trend: TrendDirection, average: float) -> tuple[str, dict[str, Any]]:
    return (
        f"Based on your {trend.value} activity level, we recommend increasing daily steps.",
        {"trend": trend.value, "average": average},
    )


def _health_risk(trend: TrendDirection, average: float) -> tuple[str, dict[str, Any]]:
    declining = trend is TrendDirection.DECLINING
    risk = "moderate" if declining else "low"
    advice = "Consider consulting your healthcare provider." if declining else "Keep up the good work!"
    return (
        f"Health risk level: {risk}. {advice}",
        {"risk": risk, "trend": trend.value, "average": average},
    )


TEMPLATES: dict[PredictionType, _Template] = {
    PredictionType.SLEEP_QUALITY: _sleep_quality,
    PredictionType.STRESS_LEVEL: _stress_level,
    PredictionType.ACTIVITY_RECOMMENDATION: _activity_recommendation,
    PredictionType.HEALTH_RISK: _health_risk,
}


class PredictionEngine:
    """Generate, persist and hand off predictions.

    *points* are expected oldest-first (arrival order); the average is taken
    over the most recent ``average_points`` of them.
    """

    def __init__(
        self,
        settings: Settings,
        repository: PredictionRepository,
        dispatcher: AlertDispatcher,
        analyzer: TrendAnalyzer | None = None,
    ) -> None:
        self._settings = settings
        self._repo = repository
        self._dispatcher = dispatcher
        self._analyzer = analyzer or TrendAnalyzer(
            settings.trend_window_size,
            improving_ratio=settings.trend_improving_ratio,
            declining_ratio=settings.trend_declining_ratio,
        )

    def predict(
        self,
        user_id: str,
        prediction_type: PredictionType,
        points: Sequence[HealthDataPoint],
    ) -> HealthPrediction:
        """Build an unsaved prediction from *points*."""
        values = [p.value for p in points]
        trend = self._analyzer.classify(values)
        average = mean(values[-self._settings.prediction_average_points:])
        text, metadata = TEMPLATES[prediction_type](trend, average)
        return HealthPrediction(
            user_id=user_id,
            device_id=points[0].device_id if points else None,
            type=prediction_type,
            prediction=text,
            confidence=self._settings.confidence_for(prediction_type),
            metadata=metadata,
        )

    async def generate(
        self,
        user_id: str,
        points: Sequence[HealthDataPoint],
        types: Sequence[PredictionType],
    ) -> list[HealthPrediction]:
        """Generate one prediction per requested type.

        Raises :class:`~wearable_telemetry.errors.PersistenceFailed` if a
        prediction cannot be stored; those already stored stay stored.
        """
        results: list[HealthPrediction] = []
        for prediction_type in types:
            prediction = self.predict(user_id, prediction_type, points)
            saved = await self._repo.save(prediction)
            logger.info(
                "predictions.generated",
                user=user_id,
                device=saved.device_id,
                type=saved.type.value,
                confidence=saved.confidence,
                points=len(points),
            )
            self._dispatcher.dispatch_prediction(saved)
            results.append(saved)
        return results
