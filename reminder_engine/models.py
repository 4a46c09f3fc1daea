"""Data model shared by the scheduling engine and its collaborators."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import RecurrenceError


MINUTE_MILLIS = 60_000
HOUR_MILLIS = 60 * MINUTE_MILLIS
DAY_MILLIS = 24 * HOUR_MILLIS

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MILLI = timedelta(milliseconds=1)


class RepeatRule(Enum):
    """How a reminder repeats after its anchor."""
    NONE = ""
    EVERY_MINUTE = "every_minute"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def from_key(cls, key) -> "RepeatRule":
        """
        Resolve a stored repeat rule.

        ``None`` and the empty string mean a one-time reminder. Anything that
        is not a known key raises RecurrenceError.
        """
        if isinstance(key, RepeatRule):
            return key
        if key is None:
            return cls.NONE
        normalized = str(key).strip().lower()
        for rule in cls:
            if rule.value == normalized:
                return rule
        raise RecurrenceError(f"Unknown repeat rule: {key!r}")

    @property
    def is_recurring(self) -> bool:
        return self is not RepeatRule.NONE


class FireOutcome(Enum):
    """Result of handling one (reminder, offset) pair."""
    DELIVERED = "delivered"
    DEGRADED = "degraded"  # delivered, ledger write failed
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_DUE = "not_due"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


def _normalize_offsets(offsets) -> Tuple[int, ...]:
    if not offsets:
        return (0,)
    result = []
    for offset in offsets:
        offset = int(offset)
        if offset < 0:
            raise ValueError(f"Offsets must be non-negative, got {offset}")
        if offset not in result:
            result.append(offset)
    return tuple(result)


def to_epoch_millis(moment: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds without float rounding."""
    return (moment - _EPOCH) // _ONE_MILLI


def parse_anchor(value, time_zone: str) -> int:
    """
    Parse a configured anchor into epoch milliseconds.

    Accepts epoch milliseconds, a datetime (naive values are local wall-clock
    time in ``time_zone``), a date (midnight local time) or an ISO-8601 string.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid anchor: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time())
    if not isinstance(value, datetime):
        raise ValueError(f"Invalid anchor: {value!r}")
    if value.tzinfo is None:
        try:
            value = value.replace(tzinfo=ZoneInfo(time_zone))
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise RecurrenceError(f"Unknown time zone: {time_zone!r}") from e
    return to_epoch_millis(value)


@dataclass(frozen=True)
class Reminder:
    """A reminder definition as owned by the reminder store."""
    id: str
    title: str
    anchor_epoch_millis: int
    time_zone: str = "UTC"
    repeat_rule: Optional[str] = None
    offsets: Tuple[int, ...] = (0,)
    description: Optional[str] = None
    enabled: bool = True
    deleted: bool = False

    def __post_init__(self):
        object.__setattr__(self, "offsets", _normalize_offsets(self.offsets))

    @property
    def schedulable(self) -> bool:
        """Disabled and soft-deleted reminders are never scheduled or fired."""
        return self.enabled and not self.deleted

    @classmethod
    def from_dict(cls, reminder_id: str, settings: dict, default_time_zone: str = "UTC") -> "Reminder":
        """Create a Reminder from a configuration table."""
        if "anchor" not in settings:
            raise ValueError(f"Reminder '{reminder_id}' is missing 'anchor' field")

        time_zone = settings.get("time_zone", default_time_zone)
        return cls(
            id=reminder_id,
            title=settings.get("title", reminder_id),
            anchor_epoch_millis=parse_anchor(settings["anchor"], time_zone),
            time_zone=time_zone,
            repeat_rule=settings.get("repeat") or None,
            offsets=tuple(settings.get("offsets", (0,))),
            description=settings.get("description"),
            enabled=settings.get("enabled", True),
            deleted=settings.get("deleted", False),
        )


@dataclass(frozen=True)
class TriggerFired:
    """Alarm payload: one (reminder, offset) pair came due."""
    reminder_id: str
    offset_millis: int
    scheduled_trigger_epoch_millis: Optional[int] = None


@dataclass(frozen=True)
class ScheduledTrigger:
    """A wake-up registered with the alarm primitive. Never persisted."""
    reminder_id: str
    offset_millis: int
    trigger_epoch_millis: int
    notification_id: int = field(compare=False, default=0)

    def to_event(self) -> TriggerFired:
        return TriggerFired(
            reminder_id=self.reminder_id,
            offset_millis=self.offset_millis,
            scheduled_trigger_epoch_millis=self.trigger_epoch_millis,
        )
