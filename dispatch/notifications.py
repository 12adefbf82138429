"""
Purpose: The advisory side channel (`notify(message, severity)`).
What it does:
Fire-and-forget messages to operators/users. No delivery guarantee;
a failing notifier must never undo a committed routing write.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    URGENT = "urgent"


@dataclass(frozen=True)
class Notification:
    message: str
    severity: Severity = Severity.INFO
    order_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class LoggingNotifier:
    """
    Default notifier: writes notifications to the log.
    """

    def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.severity == Severity.URGENT else logging.INFO
        logger.log(level, "[%s] %s", notification.severity.value, notification.message)


class InMemoryNotifier(LoggingNotifier):
    """
    Keeps every notification so terminals (or tests) can display them.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        super().notify(notification)
        with self._lock:
            self.notifications.append(notification)

    def messages(self, severity: Optional[Severity] = None) -> List[str]:
        with self._lock:
            return [
                n.message for n in self.notifications
                if severity is None or n.severity == severity
            ]


def safe_notify(notifier, notification: Optional[Notification]) -> None:
    if notifier is None or notification is None:
        return
    try:
        notifier.notify(notification)
    except Exception:
        # advisory only
        logger.exception("Notifier failed for: %s", notification.message)
