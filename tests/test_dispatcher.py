"""Tests for alert gating, messages and handler isolation."""

import pytest

from wearable_telemetry.config import Settings
from wearable_telemetry.models import (
    DeviceStatus,
    HealthPrediction,
    PredictionType,
    SoundProfile,
    TactileIntensity,
    WearableDevice,
)
from wearable_telemetry.notifications.dispatcher import (
    AlertDispatcher,
    critical_message,
    format_value,
    prediction_message,
)
from wearable_telemetry.notifications.handlers import LogHandler, NotificationHandler, create_handlers


def _prediction(ptype: PredictionType, confidence: float, text: str = "text") -> HealthPrediction:
    return HealthPrediction(user_id="U001", type=ptype, prediction=text, confidence=confidence)


class FailingHandler(NotificationHandler):
    name = "failing"

    async def tactile_feedback(self, intensity):
        raise RuntimeError("motor jammed")

    async def schedule_notification(self, notification):
        raise RuntimeError("no permission")


# ── Gating ────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("ptype", "confidence", "expected"),
    [
        (PredictionType.STRESS_LEVEL, 0.81, True),
        (PredictionType.STRESS_LEVEL, 0.79, False),
        (PredictionType.STRESS_LEVEL, 0.8, False),
        (PredictionType.HEALTH_RISK, 0.1, True),
        (PredictionType.HEALTH_RISK, 0.9, True),
        (PredictionType.SLEEP_QUALITY, 0.91, True),
        (PredictionType.SLEEP_QUALITY, 0.9, False),
        (PredictionType.ACTIVITY_RECOMMENDATION, 0.99, False),
    ],
)
def test_importance(settings, ptype, confidence, expected):
    dispatcher = AlertDispatcher([], settings=settings)
    assert dispatcher.is_important(_prediction(ptype, confidence)) is expected
    assert (dispatcher.dispatch_prediction(_prediction(ptype, confidence)) is not None) is expected


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [
        (0.95, TactileIntensity.HEAVY),
        (0.81, TactileIntensity.HEAVY),
        (0.8, TactileIntensity.MEDIUM),
        (0.51, TactileIntensity.MEDIUM),
        (0.5, None),
        (0.1, None),
    ],
)
def test_feedback_scales_with_confidence(settings, confidence, expected):
    assert AlertDispatcher([], settings=settings).feedback_for(confidence) is expected


def test_gating_thresholds_are_configurable():
    settings = Settings(stress_alert_confidence=0.7, database_url="sqlite+aiosqlite:///:memory:")
    dispatcher = AlertDispatcher([], settings=settings)
    assert dispatcher.is_important(_prediction(PredictionType.STRESS_LEVEL, 0.75)) is True


# ── Messages ──────────────────────────────────────────────────


def test_format_value():
    assert format_value(72.0) == "72"
    assert format_value(36.6) == "36.6"


def test_critical_message(device, make_point):
    assert critical_message(make_point(38), device) == "Abnormal heart_rate reading from Pulse Watch: 38bpm"


@pytest.mark.parametrize(
    ("ptype", "prefix"),
    [
        (PredictionType.STRESS_LEVEL, "😌 Stress Level Update: "),
        (PredictionType.SLEEP_QUALITY, "😴 Sleep Quality Insight: "),
        (PredictionType.ACTIVITY_RECOMMENDATION, "🏃‍♂️ Activity Suggestion: "),
    ],
)
def test_prediction_message_prefixes(ptype, prefix):
    assert prediction_message(_prediction(ptype, 0.5, "hello")) == f"{prefix}hello"


def test_risk_message_shows_rounded_confidence():
    message = prediction_message(_prediction(PredictionType.HEALTH_RISK, 0.876, "Health risk level: low."))
    assert message == "⚠️ Health Risk Alert: Health risk level: low. (88% confidence)"


# ── Delivery ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_others(settings, recorder, device, make_point):
    dispatcher = AlertDispatcher([FailingHandler(), recorder], settings=settings)
    await dispatcher.start()

    event = dispatcher.dispatch_critical(make_point(170), device)
    await dispatcher.drain()

    assert event.severity.value == "high"
    assert event.tactile is TactileIntensity.HEAVY
    assert len(recorder.notifications) == 1
    assert dispatcher.stats["failed"] == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_deliver_reports_per_handler(settings, recorder, device, make_point):
    dispatcher = AlertDispatcher([FailingHandler(), recorder, LogHandler()], settings=settings)
    dispatcher.dispatch_critical(make_point(170), device)
    job = dispatcher._queue.get_nowait()

    result = await dispatcher.deliver(job)

    assert result.sent == ["recording", "log"]
    assert result.failed == ["failing"]
    assert result.all_ok is False


@pytest.mark.asyncio
async def test_duplicate_prediction_dispatched_once(dispatcher, recorder):
    prediction = _prediction(PredictionType.HEALTH_RISK, 0.9)

    assert dispatcher.dispatch_prediction(prediction) is not None
    assert dispatcher.dispatch_prediction(prediction) is None
    await dispatcher.drain()

    assert len(recorder.notifications) == 1
    assert recorder.notifications[0].sound is SoundProfile.ALERT
    assert dispatcher.stats["duplicates"] == 1


@pytest.mark.asyncio
async def test_stress_notification_uses_notification_sound(dispatcher, recorder):
    event = dispatcher.dispatch_prediction(_prediction(PredictionType.STRESS_LEVEL, 0.85))
    await dispatcher.drain()

    assert event is not None and event.severity.value == "high"
    assert recorder.tactile == [TactileIntensity.HEAVY]
    assert recorder.notifications[0].sound is SoundProfile.NOTIFICATION
    assert recorder.notifications[0].action_type == "health_prediction"


@pytest.mark.asyncio
async def test_device_change_feedback(dispatcher, recorder):
    device = WearableDevice(device_id="AA:01", user_id="U001", name="Pulse Watch", status=DeviceStatus.CONNECTED)
    gone = device.model_copy(update={"status": DeviceStatus.DISCONNECTED})

    assert dispatcher.dispatch_device_change(device) is True
    assert dispatcher.dispatch_device_change(gone) is True
    assert dispatcher.dispatch_device_change(gone) is False
    await dispatcher.drain()

    assert recorder.tactile == [TactileIntensity.LIGHT, TactileIntensity.LIGHT]
    [note] = recorder.notifications
    assert note.title == "Device Status Update"
    assert note.body == "Pulse Watch is disconnected"
    assert note.sound is SoundProfile.BEEP


@pytest.mark.asyncio
async def test_full_queue_drops_job(device, make_point):
    settings = Settings(dispatch_queue_size=1, database_url="sqlite+aiosqlite:///:memory:")
    dispatcher = AlertDispatcher([], settings=settings)

    dispatcher.dispatch_critical(make_point(170), device)
    dispatcher.dispatch_critical(make_point(171), device)

    assert dispatcher.stats["enqueued"] == 1
    assert dispatcher.stats["dropped"] == 1


def test_create_handlers(settings):
    assert [h.name for h in create_handlers(settings)] == ["log"]
    with_hook = settings.model_copy(update={"webhook_url": "http://localhost:9/hook"})
    assert [h.name for h in create_handlers(with_hook)] == ["log", "webhook"]
