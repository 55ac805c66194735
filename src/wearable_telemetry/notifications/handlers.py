"""Notification handlers — the feedback/notification collaborator boundary.

Architecture
~~~~~~~~~~~~
* **NotificationHandler** — abstract base for delivery channels.
* **LogHandler / WebhookHandler** — concrete channels.
* **create_handlers()** — factory that wires handlers from settings.

Both operations are best-effort: a handler returns ``True`` on success,
and the dispatcher logs (never retries) anything else.

Adding a new channel
~~~~~~~~~~~~~~~~~~~~
1. Subclass ``NotificationHandler``.
2. Implement ``tactile_feedback`` and ``schedule_notification``.
3. Optionally set ``name`` for debug output.
4. Pass it to :class:`~wearable_telemetry.notifications.dispatcher.AlertDispatcher`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx
import structlog

from wearable_telemetry.models import Notification, TactileIntensity

if TYPE_CHECKING:
    from wearable_telemetry.config import Settings

logger = structlog.get_logger(__name__)


# ── Abstract handler ──────────────────────────────────────────


class NotificationHandler(ABC):
    """Contract for feedback and notification channels."""

    name: str = "base"

    @abstractmethod
    async def tactile_feedback(self, intensity: TactileIntensity) -> bool:
        """Produce an impact of the given intensity."""

    @abstractmethod
    async def schedule_notification(self, notification: Notification) -> bool:
        """Schedule a local notification."""


# ── Concrete handlers ────────────────────────────────────────


class LogHandler(NotificationHandler):
    """Write feedback and notifications to the structured log (always enabled)."""

    name = "log"

    async def tactile_feedback(self, intensity: TactileIntensity) -> bool:
        logger.debug("notification.tactile", intensity=intensity.value)
        return True

    async def schedule_notification(self, notification: Notification) -> bool:
        logger.info(
            "notification.log",
            title=notification.title,
            body=notification.body,
            sound=notification.sound.value,
            action=notification.action_type,
        )
        return True


class WebhookHandler(NotificationHandler):
    """POST notification JSON to an external webhook URL.

    Tactile feedback has no webhook equivalent and is accepted as a no-op.
    """

    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    async def tactile_feedback(self, intensity: TactileIntensity) -> bool:  # noqa: ARG002
        return True

    async def schedule_notification(self, notification: Notification) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._url, json=notification.model_dump(mode="json"),
                )
                resp.raise_for_status()
            logger.info("notification.webhook_sent", url=self._url, title=notification.title)
            return True
        except httpx.HTTPError as exc:
            logger.error("notification.webhook_failed", url=self._url, error=str(exc))
            return False


# ── Factory ───────────────────────────────────────────────────


def create_handlers(settings: Settings) -> list[NotificationHandler]:
    """Build the handler list from application settings.

    * **LogHandler** is always registered.
    * **WebhookHandler** is added when ``settings.webhook_url`` is non-empty.
    """
    handlers: list[NotificationHandler] = [LogHandler()]
    if settings.webhook_url:
        handlers.append(WebhookHandler(settings.webhook_url, timeout=settings.webhook_timeout_seconds))
    return handlers
