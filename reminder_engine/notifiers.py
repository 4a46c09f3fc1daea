"""Notification surfaces that do not need a GUI."""

import logging
import threading
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)


class LogNotifier:
    """Writes deliveries to the log. Used when the tray is disabled."""

    def deliver(self, notification_id: int, title: str, message: str, payload: dict) -> None:
        logger.info("Reminder [%d] %s%s", notification_id, title, f": {message}" if message else "")


class RecordingNotifier:
    """Keeps every delivery in memory, for dry runs and tests."""

    def __init__(self):
        self.deliveries: List[Tuple[int, str, str, dict]] = []
        self._lock = threading.Lock()

    def deliver(self, notification_id: int, title: str, message: str, payload: dict) -> None:
        with self._lock:
            self.deliveries.append((notification_id, title, message, dict(payload)))

    def count_for(self, reminder_id: str, offset_millis: Optional[int] = None) -> int:
        with self._lock:
            return sum(
                1 for _, _, _, payload in self.deliveries
                if payload["reminder_id"] == reminder_id
                and (offset_millis is None or payload["offset_millis"] == offset_millis)
            )
