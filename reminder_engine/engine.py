"""
Scheduling engine: turns reminders into alarms and alarms into deliveries.

Each (reminder, offset) pair moves through

    Idle -> Scheduled -> Fired -> Scheduled (recurring) | terminal (one-time)

and back to Idle on cancel. All work on one pair is serialized by a per-pair
lock; unrelated pairs never wait on each other.

Delivery is always "deliver, then persist": the notifier runs before the
ledger write, so a ledger outage can repeat a notification but never drop one.
"""

import contextlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Tuple

from .alarms import now_millis
from .errors import (
    LedgerError,
    RecurrenceError,
    SchedulerRegistrationError,
    SchedulerRegistrationFailure,
)
from .identity import notification_id
from .models import FireOutcome, Reminder, RepeatRule, ScheduledTrigger, TriggerFired
from .recurrence import first_occurrence, next_occurrence, previous_occurrence


logger = logging.getLogger(__name__)


class KeyedLocks:
    """One re-entrant lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextlib.contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def forget(self, key: Hashable) -> None:
        """Drop the lock of a key that will not be used again."""
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class RestoreReport:
    """Summary of one boot-restore pass."""
    started_at_epoch_millis: int
    finished_at_epoch_millis: int = 0
    reminders: int = 0
    delivered: int = 0
    degraded: int = 0
    duplicates: int = 0
    registered: int = 0
    failed: int = 0

    @property
    def duration_millis(self) -> int:
        return self.finished_at_epoch_millis - self.started_at_epoch_millis

    def record(self, results: Dict[int, Tuple[FireOutcome, Optional[ScheduledTrigger]]]) -> None:
        self.reminders += 1
        for outcome, trigger in results.values():
            if outcome is FireOutcome.DELIVERED:
                self.delivered += 1
            elif outcome is FireOutcome.DEGRADED:
                self.degraded += 1
            elif outcome in (FireOutcome.DUPLICATE, FireOutcome.EXHAUSTED):
                self.duplicates += 1
            elif outcome is FireOutcome.FAILED:
                self.failed += 1
            if trigger is not None:
                self.registered += 1


class SchedulingEngine:
    """
    Orchestrates recurrence, the fire-state ledger and the alarm primitive.

    Collaborators are injected:

    - store: ``get_all_enabled_non_deleted()`` and ``get_by_id(id)``
    - ledger: ``get``, ``upsert`` and ``delete_for_reminder``
    - scheduler: ``schedule_exact_at(id, trigger, payload)`` and ``cancel(id)``
    - notifier: ``deliver(id, title, message, payload)``
    """

    def __init__(
        self,
        store,
        ledger,
        scheduler,
        notifier,
        clock: Callable[[], int] = now_millis,
        restore_workers: int = 4,
    ):
        self.store = store
        self.ledger = ledger
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock
        self.restore_workers = restore_workers
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def schedule(self, reminder: Reminder) -> List[ScheduledTrigger]:
        """
        Register one alarm per offset at the next occurrence minus the offset.

        Offsets whose reminder is exhausted or whose rule cannot be computed
        are left unscheduled. Every offset is attempted before registration
        failures are reported.

        Raises:
            SchedulerRegistrationFailure: If any offset could not be registered
        """
        if not reminder.schedulable:
            logger.debug("Not scheduling %s (disabled or deleted)", reminder.id)
            return []

        now = self.clock()
        scheduled: List[ScheduledTrigger] = []
        failures = []
        for offset in reminder.offsets:
            with self._locks.hold((reminder.id, offset)):
                try:
                    trigger = self._schedule_pair(reminder, offset, now)
                except SchedulerRegistrationError as e:
                    logger.error("Could not register %s offset=%d: %s", reminder.id, offset, e)
                    failures.append((offset, e))
                    continue
            if trigger is not None:
                scheduled.append(trigger)

        if failures:
            raise SchedulerRegistrationFailure(reminder.id, failures)
        return scheduled

    def cancel(self, reminder: Reminder) -> None:
        """Remove the alarm of every offset. Safe if nothing is registered."""
        for offset in reminder.offsets:
            with self._locks.hold((reminder.id, offset)):
                self._cancel_pair(reminder.id, offset)

    def reschedule(self, reminder: Reminder, previous: Optional[Reminder] = None) -> List[ScheduledTrigger]:
        """
        Cancel and schedule again after an update.

        Each pair is cancelled and re-registered while holding its lock, so no
        reader observes the gap. Offsets that only ``previous`` had are
        cancelled as well.

        Raises:
            SchedulerRegistrationFailure: If any offset could not be registered
        """
        if previous is not None:
            for offset in previous.offsets:
                if offset not in reminder.offsets:
                    with self._locks.hold((reminder.id, offset)):
                        self._cancel_pair(reminder.id, offset)

        now = self.clock()
        scheduled: List[ScheduledTrigger] = []
        failures = []
        for offset in reminder.offsets:
            with self._locks.hold((reminder.id, offset)):
                self._cancel_pair(reminder.id, offset)
                if not reminder.schedulable:
                    continue
                try:
                    trigger = self._schedule_pair(reminder, offset, now)
                except SchedulerRegistrationError as e:
                    logger.error("Could not re-register %s offset=%d: %s", reminder.id, offset, e)
                    failures.append((offset, e))
                    continue
            if trigger is not None:
                scheduled.append(trigger)

        if failures:
            raise SchedulerRegistrationFailure(reminder.id, failures)
        return scheduled

    def purge(self, reminder: Reminder) -> int:
        """Hard delete: cancel every alarm and forget the reminder's fire state."""
        self.cancel(reminder)
        removed = self.ledger.delete_for_reminder(reminder.id)
        for offset in reminder.offsets:
            self._locks.forget((reminder.id, offset))
        logger.info("Purged %s (%d fire records)", reminder.id, removed)
        return removed

    # ------------------------------------------------------------------
    # Alarm callbacks
    # ------------------------------------------------------------------

    def handle(self, event: TriggerFired) -> FireOutcome:
        """Entry point for alarm payloads."""
        return self.on_trigger_fired(
            event.reminder_id,
            event.offset_millis,
            self.clock(),
            scheduled_trigger=event.scheduled_trigger_epoch_millis,
        )

    def on_trigger_fired(
        self,
        reminder_id: str,
        offset_millis: int,
        fired_at: int,
        scheduled_trigger: Optional[int] = None,
    ) -> FireOutcome:
        """
        Deliver a pair whose alarm fired, then schedule its next occurrence.

        A pair whose ledger entry is at or after the scheduled trigger was
        already delivered and is skipped. Recurring reminders re-register
        only the offset that fired; one-time pairs become terminal.
        """
        with self._locks.hold((reminder_id, offset_millis)):
            reminder = self.store.get_by_id(reminder_id)
            if reminder is None or not reminder.schedulable or offset_millis not in reminder.offsets:
                logger.info("Ignoring trigger for %s offset=%d (gone or disabled)", reminder_id, offset_millis)
                self._cancel_pair(reminder_id, offset_millis)
                return FireOutcome.IGNORED

            if scheduled_trigger is None:
                scheduled_trigger = self._due_trigger(reminder, offset_millis, fired_at)

            outcome = self._fire(reminder, offset_millis, scheduled_trigger, fired_at)

            if self._is_recurring(reminder):
                try:
                    self._schedule_after(reminder, offset_millis, fired_at)
                except SchedulerRegistrationError as e:
                    logger.error("Could not reschedule %s offset=%d: %s", reminder_id, offset_millis, e)
            else:
                logger.debug("%s offset=%d is one-time, not rescheduling", reminder_id, offset_millis)
                self._cancel_pair(reminder_id, offset_millis)
            return outcome

    # ------------------------------------------------------------------
    # Boot restore
    # ------------------------------------------------------------------

    def process_boot_restore(self, reminder: Reminder, now: Optional[int] = None) -> Dict[int, FireOutcome]:
        """
        Reconcile one reminder after a restart.

        Alarms are assumed lost. For each offset the most recent trigger
        before ``now`` is delivered once if the ledger has not seen it, and
        the following trigger is registered. Errors on one offset are logged
        and do not stop the others.
        """
        now = self.clock() if now is None else now
        results = self._restore_reminder(reminder, now)
        return {offset: outcome for offset, (outcome, _) in results.items()}

    def restore_all(self, now: Optional[int] = None, max_workers: Optional[int] = None) -> RestoreReport:
        """Run boot restore for every enabled, non-deleted reminder concurrently."""
        started = self.clock()
        now = started if now is None else now
        report = RestoreReport(started_at_epoch_millis=started)

        reminders = self.store.get_all_enabled_non_deleted()
        logger.info("Boot restore: %d reminders", len(reminders))

        with ThreadPoolExecutor(max_workers=max_workers or self.restore_workers) as pool:
            futures = {pool.submit(self._restore_reminder, r, now): r for r in reminders}
            for future in as_completed(futures):
                reminder = futures[future]
                try:
                    report.record(future.result())
                except Exception:
                    logger.exception("Boot restore failed for %s", reminder.id)
                    report.reminders += 1
                    report.failed += len(reminder.offsets)

        report.finished_at_epoch_millis = self.clock()
        logger.info(
            "Boot restore complete: reminders=%d delivered=%d degraded=%d duplicates=%d "
            "registered=%d failed=%d durationMs=%d",
            report.reminders, report.delivered, report.degraded, report.duplicates,
            report.registered, report.failed, report.duration_millis,
        )
        return report

    def _restore_reminder(
        self, reminder: Reminder, now: int
    ) -> Dict[int, Tuple[FireOutcome, Optional[ScheduledTrigger]]]:
        results: Dict[int, Tuple[FireOutcome, Optional[ScheduledTrigger]]] = {}
        if not reminder.schedulable:
            for offset in reminder.offsets:
                results[offset] = (FireOutcome.IGNORED, None)
            return results

        for offset in reminder.offsets:
            try:
                results[offset] = self._restore_pair(reminder, offset, now)
            except Exception:
                logger.exception("Boot restore failed for %s offset=%d", reminder.id, offset)
                results[offset] = (FireOutcome.FAILED, None)
        return results

    def _restore_pair(
        self, reminder: Reminder, offset: int, now: int
    ) -> Tuple[FireOutcome, Optional[ScheduledTrigger]]:
        with self._locks.hold((reminder.id, offset)):
            try:
                missed = previous_occurrence(
                    reminder.anchor_epoch_millis, reminder.time_zone, reminder.repeat_rule, now + offset
                )
                if missed is None:
                    upcoming = first_occurrence(
                        reminder.anchor_epoch_millis, reminder.time_zone, reminder.repeat_rule
                    )
                else:
                    # The next period counts from the missed occurrence, not from now.
                    upcoming = next_occurrence(
                        reminder.anchor_epoch_millis, reminder.time_zone, reminder.repeat_rule, missed
                    )
            except RecurrenceError as e:
                logger.warning("Boot restore cannot compute %s offset=%d: %s", reminder.id, offset, e)
                return FireOutcome.FAILED, None

            outcome = FireOutcome.NOT_DUE
            if missed is not None:
                logger.info("Boot restore: %s offset=%d missed trigger %d", reminder.id, offset, missed - offset)
                outcome = self._fire(reminder, offset, missed - offset, now)

            if upcoming is None:
                self._cancel_pair(reminder.id, offset)
                if outcome is FireOutcome.DUPLICATE:
                    outcome = FireOutcome.EXHAUSTED
                return outcome, None

            try:
                trigger = self._register(reminder, offset, upcoming - offset)
            except SchedulerRegistrationError as e:
                logger.error("Boot restore could not register %s offset=%d: %s", reminder.id, offset, e)
                return outcome, None
            return outcome, trigger

    # ------------------------------------------------------------------
    # Internals (caller holds the pair lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _is_recurring(reminder: Reminder) -> bool:
        try:
            return RepeatRule.from_key(reminder.repeat_rule).is_recurring
        except RecurrenceError:
            return False

    def _next_occurrence(self, reminder: Reminder, reference: int) -> Optional[int]:
        try:
            return next_occurrence(
                reminder.anchor_epoch_millis, reminder.time_zone, reminder.repeat_rule, reference
            )
        except RecurrenceError as e:
            logger.warning("No next occurrence for %s: %s", reminder.id, e)
            return None

    def _due_trigger(self, reminder: Reminder, offset: int, fired_at: int) -> int:
        """Latest trigger at or before ``fired_at``; ``fired_at`` if there is none."""
        try:
            occurrence = previous_occurrence(
                reminder.anchor_epoch_millis, reminder.time_zone, reminder.repeat_rule,
                fired_at + offset + 1,
            )
        except RecurrenceError as e:
            logger.warning("Cannot resolve trigger of %s offset=%d: %s", reminder.id, offset, e)
            return fired_at
        return fired_at if occurrence is None else occurrence - offset

    def _schedule_pair(self, reminder: Reminder, offset: int, now: int) -> Optional[ScheduledTrigger]:
        base = self._next_occurrence(reminder, now)
        if base is None:
            logger.debug("%s offset=%d has no next occurrence", reminder.id, offset)
            return None
        return self._register(reminder, offset, base - offset)

    def _schedule_after(self, reminder: Reminder, offset: int, fired_at: int) -> Optional[ScheduledTrigger]:
        """Register the first trigger strictly after ``fired_at``."""
        base = self._next_occurrence(reminder, fired_at + offset)
        if base is None:
            return None
        return self._register(reminder, offset, base - offset)

    def _register(self, reminder: Reminder, offset: int, trigger: int) -> ScheduledTrigger:
        alarm_id = notification_id(reminder.id, offset)
        scheduled = ScheduledTrigger(reminder.id, offset, trigger, alarm_id)
        self.scheduler.schedule_exact_at(alarm_id, trigger, scheduled.to_event())
        logger.debug("Scheduled %s offset=%d at %d (id=%d)", reminder.id, offset, trigger, alarm_id)
        return scheduled

    def _cancel_pair(self, reminder_id: str, offset: int) -> None:
        self.scheduler.cancel(notification_id(reminder_id, offset))

    def _fire(self, reminder: Reminder, offset: int, scheduled_trigger: int, fired_at: int) -> FireOutcome:
        try:
            last_fired_at = self.ledger.get(reminder.id, offset)
        except LedgerError:
            # Unknown state: prefer a possible repeat over a lost reminder.
            logger.exception("Ledger read failed for %s offset=%d, delivering anyway", reminder.id, offset)
            last_fired_at = None

        if last_fired_at is not None and last_fired_at >= scheduled_trigger:
            logger.info(
                "Skipping %s offset=%d: already delivered at %d for trigger %d",
                reminder.id, offset, last_fired_at, scheduled_trigger,
            )
            return FireOutcome.DUPLICATE

        self._deliver(reminder, offset, scheduled_trigger)

        try:
            self.ledger.upsert(reminder.id, offset, fired_at)
        except LedgerError:
            logger.exception(
                "Delivered %s offset=%d but could not record it; it may be delivered again",
                reminder.id, offset,
            )
            return FireOutcome.DEGRADED
        return FireOutcome.DELIVERED

    def _deliver(self, reminder: Reminder, offset: int, scheduled_trigger: int) -> None:
        alarm_id = notification_id(reminder.id, offset)
        payload = {
            "reminder_id": reminder.id,
            "offset_millis": offset,
            "trigger_epoch_millis": scheduled_trigger,
        }
        logger.info("Delivering %s offset=%d (id=%d)", reminder.id, offset, alarm_id)
        try:
            self.notifier.deliver(alarm_id, reminder.title, reminder.description or "", payload)
        except Exception:
            logger.exception("Notifier failed for %s offset=%d", reminder.id, offset)
