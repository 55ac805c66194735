"""Threshold evaluation — classify single readings as normal or critical."""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping

import structlog

from wearable_telemetry.config import default_thresholds
from wearable_telemetry.models import DataType, HealthDataPoint, ThresholdBand, WearableDevice

if TYPE_CHECKING:
    from wearable_telemetry.notifications.dispatcher import AlertDispatcher

logger = structlog.get_logger(__name__)


def is_critical(
    point: HealthDataPoint,
    thresholds: Mapping[DataType, ThresholdBand] | None = None,
) -> bool:
    """Return ``True`` when *point* falls outside its type's safe band.

    Bounds are inclusive on the safe side.  Types without a band are
    never critical.
    """
    band = (thresholds if thresholds is not None else default_thresholds()).get(point.type)
    if band is None:
        return False
    return point.value < band.min or point.value > band.max


class ThresholdEvaluator:
    """Fast-path check run on every ingested reading.

    A critical reading is handed to the :class:`AlertDispatcher` before
    :meth:`evaluate` returns, so it is never only buffered.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        thresholds: Mapping[DataType, ThresholdBand] | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._thresholds: dict[DataType, ThresholdBand] = dict(
            thresholds if thresholds is not None else default_thresholds()
        )
        self.critical_count = 0

    @property
    def thresholds(self) -> dict[DataType, ThresholdBand]:
        return dict(self._thresholds)

    def evaluate(self, point: HealthDataPoint, device: WearableDevice, *, once: bool = False) -> bool:
        """Return whether *point* is critical, dispatching it if so.

        With *once* a reading already dispatched (same device, type, value
        and timestamp) is not dispatched or counted again.
        """
        if not is_critical(point, self._thresholds):
            return False
        key = ("reading", point.device_id, point.type, point.value, point.timestamp) if once else None
        if self._dispatcher.dispatch_critical(point, device, dedupe_key=key) is None:
            return True
        self.critical_count += 1
        band = self._thresholds[point.type]
        logger.info(
            "thresholds.critical",
            device=point.device_id,
            type=point.type.value,
            value=point.value,
            min=band.min,
            max=band.max,
        )
        return True
