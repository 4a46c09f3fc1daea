"""Reminder store used by the engine to look reminders up."""

import threading
from typing import Dict, Iterable, List, Optional

from .models import Reminder


class InMemoryReminderStore:
    """
    Thread-safe reminder store backed by a dict.

    Provides the two lookups the engine consumes
    (``get_all_enabled_non_deleted`` and ``get_by_id``) plus simple mutation
    helpers for the application and tests.
    """

    def __init__(self, reminders: Optional[Iterable[Reminder]] = None):
        self._reminders: Dict[str, Reminder] = {}
        self._lock = threading.Lock()
        for reminder in reminders or ():
            self._reminders[reminder.id] = reminder

    def get_all_enabled_non_deleted(self) -> List[Reminder]:
        with self._lock:
            return [r for r in self._reminders.values() if r.schedulable]

    def get_by_id(self, reminder_id: str) -> Optional[Reminder]:
        with self._lock:
            return self._reminders.get(reminder_id)

    def put(self, reminder: Reminder) -> Optional[Reminder]:
        """Insert or replace a reminder, returning the version it replaced."""
        with self._lock:
            previous = self._reminders.get(reminder.id)
            self._reminders[reminder.id] = reminder
        return previous

    def remove(self, reminder_id: str) -> Optional[Reminder]:
        with self._lock:
            return self._reminders.pop(reminder_id, None)

    def all(self) -> List[Reminder]:
        with self._lock:
            return list(self._reminders.values())
