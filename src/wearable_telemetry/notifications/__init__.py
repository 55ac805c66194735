"""Notification sub-package — tactile feedback and local notification delivery."""

from wearable_telemetry.notifications.dispatcher import AlertDispatcher
from wearable_telemetry.notifications.handlers import (
    LogHandler,
    NotificationHandler,
    WebhookHandler,
    create_handlers,
)

__all__ = ["AlertDispatcher", "LogHandler", "NotificationHandler", "WebhookHandler", "create_handlers"]
