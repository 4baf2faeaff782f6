"""
Notification sink: fire-and-forget delivery of warnings, terminations and
summaries for presentation. The engine never waits on it.
"""

import logging
from typing import Protocol

from consultline.models.notification import Notification, NotificationKind

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None:
        """Deliver a notification. Must not block."""


class LoggingNotificationSink:
    """Writes notifications to the consultline log."""

    def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.kind == NotificationKind.WARNING else logging.INFO
        logger.log(
            level,
            "session=%s [%s] %s: %s",
            notification.session_id, notification.kind.value, notification.title, notification.message,
        )


def deliver(sink: NotificationSink, notification: Notification) -> None:
    """Hand a notification to the sink; a failing sink is logged, never raised."""
    try:
        sink.notify(notification)
    except Exception:
        logger.exception("Notification sink failed for %s", notification.kind.value)
