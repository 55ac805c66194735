"""Rolling-window trend classification per device and data type."""

from __future__ import annotations

import statistics
from collections import deque
from typing import Sequence

from wearable_telemetry.models import DataType, HealthDataPoint, HealthTrend, TrendDirection


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean, ``0.0`` for an empty sequence."""
    return statistics.fmean(values) if values else 0.0


def classify_trend(
    values: Sequence[float],
    *,
    improving_ratio: float = 1.1,
    declining_ratio: float = 0.9,
) -> TrendDirection:
    """Compare the mean of the second half of *values* against the first.

    The halves are split by index; for an odd length the middle sample
    belongs to neither.  Fewer than two samples is always ``stable``.
    """
    if len(values) < 2:
        return TrendDirection.STABLE

    half = len(values) // 2
    first = mean(values[:half])
    second = mean(values[len(values) - half:])

    if second > first * improving_ratio:
        return TrendDirection.IMPROVING
    if second < first * declining_ratio:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


class TrendAnalyzer:
    """Keeps the most recent ``window_size`` points per device+type.

    A window is only ever mutated by its device's ingestion task, so no
    locking is done here.

    Usage::

        analyzer = TrendAnalyzer(window_size=10)
        if analyzer.append(point):
            trend = analyzer.trend(point.device_id, point.type)
    """

    def __init__(
        self,
        window_size: int = 10,
        *,
        improving_ratio: float = 1.1,
        declining_ratio: float = 0.9,
    ) -> None:
        if window_size < 2:
            raise ValueError("window_size must be at least 2")
        self.window_size = window_size
        self.improving_ratio = improving_ratio
        self.declining_ratio = declining_ratio
        self._windows: dict[tuple[str, DataType], deque[HealthDataPoint]] = {}
        self._since_close: dict[tuple[str, DataType], int] = {}

    def append(self, point: HealthDataPoint) -> bool:
        """Add *point* to its window; return ``True`` when the window closes.

        A window closes every ``window_size`` new points.
        """
        key = (point.device_id, point.type)
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = deque(maxlen=self.window_size)
        window.append(point)

        count = self._since_close.get(key, 0) + 1
        if count >= self.window_size:
            self._since_close[key] = 0
            return True
        self._since_close[key] = count
        return False

    def window(self, device_id: str, data_type: DataType) -> list[HealthDataPoint]:
        return list(self._windows.get((device_id, data_type), ()))

    def classify(self, values: Sequence[float]) -> TrendDirection:
        return classify_trend(
            values,
            improving_ratio=self.improving_ratio,
            declining_ratio=self.declining_ratio,
        )

    def trend(self, device_id: str, data_type: DataType) -> HealthTrend:
        return self.build_trend(self.window(device_id, data_type), data_type)

    def build_trend(
        self,
        points: Sequence[HealthDataPoint],
        data_type: DataType | None = None,
    ) -> HealthTrend:
        values = [p.value for p in points]
        return HealthTrend(
            type=data_type if data_type is not None else (points[0].type if points else None),
            trend=self.classify(values),
            start_date=points[0].timestamp if points else None,
            end_date=points[-1].timestamp if points else None,
            data=values,
        )

    def reset(self, device_id: str) -> None:
        """Forget every window belonging to *device_id*."""
        for key in [k for k in self._windows if k[0] == device_id]:
            del self._windows[key]
            self._since_close.pop(key, None)

    def clear(self) -> None:
        self._windows.clear()
        self._since_close.clear()
