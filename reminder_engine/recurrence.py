"""
Recurrence calculation for reminders.

Occurrence *k* of a repeating reminder is the anchor's local wall-clock
date-time advanced by *k* calendar periods, converted back to an instant in
the reminder's time zone. Every occurrence is derived from the anchor itself,
so a day-of-month clamp (Jan 31 -> Feb 29) never drifts into later months
(-> Mar 31, not Mar 29).

All functions here are pure: same inputs, same result, no side effects.
"""

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from .errors import RecurrenceError
from .models import RepeatRule, to_epoch_millis


# Wall-clock and absolute time can disagree by a DST shift; stay this many
# periods behind the estimate when skipping ahead.
_SKIP_MARGIN = {
    RepeatRule.EVERY_MINUTE: 180,
    RepeatRule.DAILY: 2,
    RepeatRule.WEEKLY: 1,
    RepeatRule.MONTHLY: 1,
    RepeatRule.YEARLY: 1,
}


def resolve_zone(time_zone: str) -> ZoneInfo:
    """Look up an IANA zone, raising RecurrenceError if it does not exist."""
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise RecurrenceError(f"Unknown time zone: {time_zone!r}") from e


def to_local(epoch_millis: int, zone: ZoneInfo) -> datetime:
    """Naive local wall-clock date-time of an instant in ``zone``."""
    seconds, millis = divmod(epoch_millis, 1000)
    moment = datetime.fromtimestamp(seconds, tz=zone) + timedelta(milliseconds=millis)
    return moment.replace(tzinfo=None)


def from_local(local: datetime, zone: ZoneInfo) -> int:
    """
    Instant of a local wall-clock date-time in ``zone``.

    Ambiguous times (DST fall-back) resolve to the earlier instant;
    non-existent times (DST gap) use the offset in force before the gap,
    which moves them forward by the gap length.
    """
    return to_epoch_millis(local.replace(tzinfo=zone, fold=0))


def _step(rule: RepeatRule, count: int) -> relativedelta:
    if rule is RepeatRule.EVERY_MINUTE:
        return relativedelta(minutes=count)
    if rule is RepeatRule.DAILY:
        return relativedelta(days=count)
    if rule is RepeatRule.WEEKLY:
        return relativedelta(weeks=count)
    if rule is RepeatRule.MONTHLY:
        return relativedelta(months=count)
    if rule is RepeatRule.YEARLY:
        return relativedelta(years=count)
    raise RecurrenceError(f"Repeat rule {rule.name} has no period")


def _periods_between(rule: RepeatRule, start: datetime, end: datetime) -> int:
    """Whole periods from ``start`` to ``end`` on the wall clock (may be negative)."""
    if rule is RepeatRule.EVERY_MINUTE:
        return (end - start) // timedelta(minutes=1)
    if rule is RepeatRule.DAILY:
        return (end - start).days
    if rule is RepeatRule.WEEKLY:
        return (end - start).days // 7
    if rule is RepeatRule.MONTHLY:
        return (end.year - start.year) * 12 + (end.month - start.month)
    return end.year - start.year


class _Series:
    """The occurrences of one periodic reminder."""

    def __init__(self, anchor_epoch_millis: int, time_zone: str, rule: RepeatRule):
        self.rule = rule
        self.zone = resolve_zone(time_zone)
        local = to_local(anchor_epoch_millis, self.zone)
        if rule is RepeatRule.EVERY_MINUTE:
            local = local.replace(second=0, microsecond=0)
        self.local_anchor = local

    def at(self, index: int) -> int:
        return from_local(self.local_anchor + _step(self.rule, index), self.zone)

    def first_index(self, reference: int, strict: bool) -> int:
        """Smallest index whose occurrence is after (or, non-strict, at) ``reference``."""
        reference_local = to_local(reference, self.zone)
        estimate = _periods_between(self.rule, self.local_anchor, reference_local)
        index = max(0, estimate - _SKIP_MARGIN[self.rule])
        while True:
            occurrence = self.at(index)
            if occurrence > reference or (not strict and occurrence == reference):
                return index
            index += 1


def next_occurrence(
    anchor_epoch_millis: int,
    time_zone: str,
    repeat_rule,
    reference_now: int,
) -> Optional[int]:
    """
    Compute the next occurrence strictly after ``reference_now``.

    Args:
        anchor_epoch_millis: The reminder's anchor instant
        time_zone: IANA zone the anchor's wall-clock time belongs to
        repeat_rule: A RepeatRule or its stored key
        reference_now: Instant (epoch millis) the result must be after

    Returns:
        Epoch millis of the occurrence, or None once a one-time reminder is
        exhausted.

    Raises:
        RecurrenceError: If the rule or time zone cannot be interpreted.
    """
    rule = RepeatRule.from_key(repeat_rule)
    if not rule.is_recurring:
        resolve_zone(time_zone)
        return anchor_epoch_millis if anchor_epoch_millis > reference_now else None

    series = _Series(anchor_epoch_millis, time_zone, rule)
    return series.at(series.first_index(reference_now, strict=True))


def previous_occurrence(
    anchor_epoch_millis: int,
    time_zone: str,
    repeat_rule,
    reference: int,
) -> Optional[int]:
    """
    Compute the latest occurrence strictly before ``reference``.

    Returns None when the first occurrence is not before ``reference``.
    """
    rule = RepeatRule.from_key(repeat_rule)
    if not rule.is_recurring:
        resolve_zone(time_zone)
        return anchor_epoch_millis if anchor_epoch_millis < reference else None

    series = _Series(anchor_epoch_millis, time_zone, rule)
    index = series.first_index(reference, strict=False)
    if index == 0:
        return None
    return series.at(index - 1)


def first_occurrence(anchor_epoch_millis: int, time_zone: str, repeat_rule) -> int:
    """The occurrence the series starts with (the anchor, minute-aligned for every_minute)."""
    rule = RepeatRule.from_key(repeat_rule)
    if not rule.is_recurring:
        resolve_zone(time_zone)
        return anchor_epoch_millis
    return _Series(anchor_epoch_millis, time_zone, rule).at(0)
