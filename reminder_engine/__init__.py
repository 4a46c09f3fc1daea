"""Reminder scheduling and recurrence engine."""

from .engine import RestoreReport, SchedulingEngine
from .models import FireOutcome, Reminder, RepeatRule, ScheduledTrigger, TriggerFired

__all__ = [
    "FireOutcome",
    "Reminder",
    "RepeatRule",
    "RestoreReport",
    "ScheduledTrigger",
    "SchedulingEngine",
    "TriggerFired",
]
