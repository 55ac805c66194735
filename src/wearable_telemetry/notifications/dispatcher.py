"""Alert dispatcher — turn critical readings, predictions and device changes
into tactile feedback and local notifications.

The ``dispatch_*`` entry points are synchronous and never block: they
build the alert, put a job on a bounded queue and return.  A small pool of
worker tasks drains the queue and fans each job out to every handler.  A
full queue drops the job with a warning; a failing handler is logged and
never retried.  Nothing here raises into the evaluation or prediction path.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Hashable

import structlog

from wearable_telemetry.config import Settings, get_settings
from wearable_telemetry.models import (
    AlertEvent,
    AlertSeverity,
    DeviceStatus,
    HealthDataPoint,
    HealthPrediction,
    Notification,
    PredictionType,
    SoundProfile,
    TactileIntensity,
    WearableDevice,
)
from wearable_telemetry.notifications.handlers import LogHandler, NotificationHandler

logger = structlog.get_logger(__name__)

_PREDICTION_PREFIXES: dict[PredictionType, str] = {
    PredictionType.HEALTH_RISK: "⚠️ Health Risk Alert",
    PredictionType.STRESS_LEVEL: "😌 Stress Level Update",
    PredictionType.SLEEP_QUALITY: "😴 Sleep Quality Insight",
    PredictionType.ACTIVITY_RECOMMENDATION: "🏃‍♂️ Activity Suggestion",
}

_SEVERITY_BY_TACTILE: dict[TactileIntensity | None, AlertSeverity] = {
    TactileIntensity.HEAVY: AlertSeverity.HIGH,
    TactileIntensity.MEDIUM: AlertSeverity.MEDIUM,
    TactileIntensity.LIGHT: AlertSeverity.LOW,
    None: AlertSeverity.LOW,
}


def format_value(value: float) -> str:
    """Render ``72.0`` as ``72`` and keep fractional readings as-is."""
    return str(int(value)) if float(value).is_integer() else str(value)


def critical_message(point: HealthDataPoint, device: WearableDevice) -> str:
    return f"Abnormal {point.type.value} reading from {device.name}: {format_value(point.value)}{point.unit}"


def prediction_message(prediction: HealthPrediction) -> str:
    prefix = _PREDICTION_PREFIXES[prediction.type]
    if prediction.type is PredictionType.HEALTH_RISK:
        percent = round(prediction.confidence * 100)
        return f"{prefix}: {prediction.prediction} ({percent}% confidence)"
    return f"{prefix}: {prediction.prediction}"


# ── Jobs & results ────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class DispatchJob:
    """One unit of side-effect work for the worker pool."""

    label: str
    tactile: TactileIntensity | None = None
    notification: Notification | None = None


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome summary for one delivered job."""

    label: str
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return len(self.failed) == 0


# ── Dispatcher ────────────────────────────────────────────────


class AlertDispatcher:
    """Fan alerts out to registered handlers with error isolation."""

    def __init__(
        self,
        handlers: list[NotificationHandler] | None = None,
        *,
        settings: Settings | None = None,
        dedupe_size: int = 1024,
    ) -> None:
        self._settings = settings or get_settings()
        self._handlers: list[NotificationHandler] = handlers if handlers is not None else [LogHandler()]
        self._queue: asyncio.Queue[DispatchJob] = asyncio.Queue(maxsize=self._settings.dispatch_queue_size)
        self._workers: list[asyncio.Task] = []
        self._seen: OrderedDict[Hashable, None] = OrderedDict()
        self._dedupe_size = dedupe_size
        self._stats = {"enqueued": 0, "delivered": 0, "dropped": 0, "failed": 0, "duplicates": 0}

    # ── Introspection ─────────────────────────────────────────

    @property
    def handler_names(self) -> list[str]:
        return [h.name for h in self._handlers]

    @property
    def stats(self) -> dict[str, Any]:
        return {**self._stats, "pending": self._queue.qsize()}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"alert-dispatcher-{i}")
            for i in range(self._settings.dispatch_workers)
        ]
        logger.info("dispatcher.started", workers=len(self._workers), handlers=self.handler_names)

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Deliver what is queued (up to *drain_timeout*), then stop workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("dispatcher.drain_timeout", pending=self._queue.qsize())
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._seen.clear()
        logger.info("dispatcher.stopped", **self._stats)

    async def drain(self) -> None:
        """Wait until every queued job has been delivered."""
        await self._queue.join()

    # ── Entry points ──────────────────────────────────────────

    def feedback(self, intensity: TactileIntensity, *, label: str = "feedback") -> None:
        """Fire-and-forget tactile feedback."""
        self._enqueue(DispatchJob(label=label, tactile=intensity))

    def dispatch_critical(
        self,
        point: HealthDataPoint,
        device: WearableDevice,
        *,
        dedupe_key: Hashable | None = None,
    ) -> AlertEvent | None:
        """Dispatch a critical reading with heavy feedback.

        Returns ``None`` only when *dedupe_key* has been dispatched already.
        """
        if dedupe_key is not None and self._already_seen(dedupe_key):
            return None
        message = critical_message(point, device)
        notification = Notification(
            title="Health Alert",
            body=message,
            sound=SoundProfile.ALERT,
            action_type="health_alert",
            metadata={
                "device_id": device.id,
                "data_type": point.type.value,
                "value": point.value,
            },
        )
        self._enqueue(DispatchJob(label="critical", tactile=TactileIntensity.HEAVY, notification=notification))
        return AlertEvent(
            severity=AlertSeverity.HIGH,
            source=point,
            message=message,
            tactile=TactileIntensity.HEAVY,
        )

    def is_important(self, prediction: HealthPrediction) -> bool:
        s = self._settings
        return (
            prediction.type is PredictionType.HEALTH_RISK
            or (prediction.type is PredictionType.STRESS_LEVEL and prediction.confidence > s.stress_alert_confidence)
            or (prediction.type is PredictionType.SLEEP_QUALITY and prediction.confidence > s.sleep_alert_confidence)
        )

    def feedback_for(self, confidence: float) -> TactileIntensity | None:
        if confidence > self._settings.heavy_feedback_confidence:
            return TactileIntensity.HEAVY
        if confidence > self._settings.medium_feedback_confidence:
            return TactileIntensity.MEDIUM
        return None

    def dispatch_prediction(self, prediction: HealthPrediction) -> AlertEvent | None:
        """Dispatch an important prediction once.

        Returns ``None`` when the prediction is not important or has been
        dispatched already (duplicate delivery).
        """
        if not self.is_important(prediction):
            return None
        if self._already_seen(("prediction", prediction.id)):
            return None

        tactile = self.feedback_for(prediction.confidence)
        message = prediction_message(prediction)
        notification = Notification(
            title="Health Insight",
            body=message,
            sound=SoundProfile.ALERT if prediction.type is PredictionType.HEALTH_RISK else SoundProfile.NOTIFICATION,
            action_type="health_prediction",
            metadata={
                "prediction_id": prediction.id,
                "type": prediction.type.value,
                "confidence": prediction.confidence,
            },
        )
        self._enqueue(DispatchJob(label=f"prediction:{prediction.type.value}", tactile=tactile, notification=notification))
        return AlertEvent(
            severity=_SEVERITY_BY_TACTILE[tactile],
            source=prediction,
            message=message,
            tactile=tactile,
        )

    def dispatch_device_change(self, device: WearableDevice) -> bool:
        """Light feedback for any device update; a notification as well
        when the device dropped to ``disconnected`` or ``error``.

        Returns ``False`` for a duplicate delivery of the same change.
        """
        key = ("device", device.id, device.status, device.last_sync, device.battery_level)
        if self._already_seen(key):
            return False
        notification = None
        if device.status in (DeviceStatus.DISCONNECTED, DeviceStatus.ERROR):
            notification = Notification(
                title="Device Status Update",
                body=f"{device.name} is {device.status.value}",
                sound=SoundProfile.BEEP,
                metadata={"device_id": device.id, "status": device.status.value},
            )
        self._enqueue(DispatchJob(label="device_change", tactile=TactileIntensity.LIGHT, notification=notification))
        return True

    # ── Internals ─────────────────────────────────────────────

    def _already_seen(self, key: Hashable) -> bool:
        if key in self._seen:
            self._stats["duplicates"] += 1
            return True
        self._seen[key] = None
        if len(self._seen) > self._dedupe_size:
            self._seen.popitem(last=False)
        return False

    def _enqueue(self, job: DispatchJob) -> None:
        try:
            self._queue.put_nowait(job)
            self._stats["enqueued"] += 1
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            logger.warning("dispatcher.queue_full", label=job.label, dropped=self._stats["dropped"])

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            finally:
                self._queue.task_done()

    async def deliver(self, job: DispatchJob) -> DispatchResult:
        """Send *job* to every handler, collecting per-handler outcomes.

        A handler that raises is caught, logged, and marked as failed so
        remaining handlers still execute.
        """
        sent: list[str] = []
        failed: list[str] = []

        for handler in self._handlers:
            try:
                ok = True
                if job.tactile is not None:
                    ok = await handler.tactile_feedback(job.tactile) and ok
                if job.notification is not None:
                    ok = await handler.schedule_notification(job.notification) and ok
                (sent if ok else failed).append(handler.name)
            except Exception:
                logger.exception("dispatcher.handler_error", handler=handler.name, label=job.label)
                failed.append(handler.name)

        result = DispatchResult(label=job.label, sent=sent, failed=failed)
        self._stats["delivered"] += 1
        if result.failed:
            self._stats["failed"] += 1
            logger.warning("dispatcher.partial_failure", label=job.label, failed=result.failed)
        return result
