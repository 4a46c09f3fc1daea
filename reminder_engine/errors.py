"""Exceptions raised by the reminder engine."""

from typing import List, Tuple


class ReminderEngineError(Exception):
    """Base class for all reminder engine errors."""


class RecurrenceError(ReminderEngineError, ValueError):
    """A repeat rule or time zone could not be interpreted."""


class LedgerError(ReminderEngineError):
    """The fire-state ledger could not be read."""


class LedgerWriteError(LedgerError):
    """The fire-state ledger could not persist a delivery."""


class SchedulerRegistrationError(ReminderEngineError):
    """The alarm primitive refused to register a wake callback."""


class SchedulerPermissionDenied(SchedulerRegistrationError):
    """The alarm primitive is not accepting registrations."""


class SchedulerQuotaExceeded(SchedulerRegistrationError):
    """The alarm primitive has no room left for another registration."""


class SchedulerRegistrationFailure(ReminderEngineError):
    """
    One or more offsets of a reminder could not be registered.

    The failed pairs stay unscheduled until the next boot restore or an
    explicit retry.
    """

    def __init__(self, reminder_id: str, failures: List[Tuple[int, SchedulerRegistrationError]]):
        self.reminder_id = reminder_id
        self.failures = failures
        offsets = ", ".join(str(offset) for offset, _ in failures)
        super().__init__(
            f"Could not register alarms for reminder '{reminder_id}' (offsets: {offsets})"
        )

    @property
    def quota_exhausted(self) -> bool:
        """True if any failure was caused by the alarm quota running out."""
        return any(isinstance(error, SchedulerQuotaExceeded) for _, error in self.failures)
