"""Unit tests for the scheduling engine."""

import pytest
import threading
from datetime import datetime
from unittest.mock import Mock
from zoneinfo import ZoneInfo

from reminder_engine.alarms import AlarmClock
from reminder_engine.engine import KeyedLocks, RestoreReport, SchedulingEngine
from reminder_engine.errors import (
    LedgerError,
    LedgerWriteError,
    SchedulerPermissionDenied,
    SchedulerRegistrationFailure,
)
from reminder_engine.identity import notification_id
from reminder_engine.ledger import FireStateLedger
from reminder_engine.models import (
    DAY_MILLIS,
    HOUR_MILLIS,
    MINUTE_MILLIS,
    FireOutcome,
    Reminder,
    ScheduledTrigger,
    TriggerFired,
    to_epoch_millis,
)
from reminder_engine.notifiers import RecordingNotifier
from reminder_engine.store import InMemoryReminderStore


NEW_YORK = "America/New_York"


def _millis(*args, tz="UTC"):
    return to_epoch_millis(datetime(*args, tzinfo=ZoneInfo(tz)))


NOW = _millis(2024, 1, 10, 12, 0)
ANCHOR = _millis(2024, 1, 1, 9, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FlakyLedger:
    """Wraps a real ledger and fails reads or writes on demand."""

    def __init__(self, ledger):
        self.ledger = ledger
        self.fail_reads = False
        self.fail_writes = False

    def get(self, reminder_id, offset_millis):
        if self.fail_reads:
            raise LedgerError("disk unreadable")
        return self.ledger.get(reminder_id, offset_millis)

    def upsert(self, reminder_id, offset_millis, timestamp):
        if self.fail_writes:
            raise LedgerWriteError("disk full")
        self.ledger.upsert(reminder_id, offset_millis, timestamp)

    def delete_for_reminder(self, reminder_id):
        return self.ledger.delete_for_reminder(reminder_id)


class Harness:
    """An engine wired to an inline alarm clock, a file ledger and a fake clock."""

    def __init__(self, tmp_path, now=NOW, notifier=None, max_alarms=500):
        self.clock = FakeClock(now)
        self.store = InMemoryReminderStore()
        self.file_ledger = FireStateLedger(tmp_path / "fire_state.db")
        self.ledger = FlakyLedger(self.file_ledger)
        self.notifier = notifier if notifier is not None else RecordingNotifier()
        self.alarms = AlarmClock(clock=self.clock, inline=True, max_alarms=max_alarms)
        self.engine = SchedulingEngine(self.store, self.ledger, self.alarms, self.notifier, clock=self.clock)
        self.alarms.callback = self.engine.handle

    def add(self, reminder):
        self.store.put(reminder)
        return reminder

    def trigger_of(self, reminder_id, offset=0):
        alarm = self.alarms.alarms.get(notification_id(reminder_id, offset))
        return None if alarm is None else alarm.trigger_epoch_millis

    def close(self):
        self.file_ledger.close()


@pytest.fixture
def harness(tmp_path):
    harness = Harness(tmp_path)
    yield harness
    harness.close()


def _daily(reminder_id="water", offsets=(0,), **kwargs):
    return Reminder(
        id=reminder_id,
        title="Water the plants",
        anchor_epoch_millis=ANCHOR,
        repeat_rule="daily",
        offsets=offsets,
        **kwargs
    )


def _once(reminder_id, anchor, offsets=(0,), **kwargs):
    return Reminder(id=reminder_id, title="Dentist", anchor_epoch_millis=anchor, offsets=offsets, **kwargs)


class TestKeyedLocks:
    """Tests for KeyedLocks class."""

    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock_for(("a", 0)) is locks.lock_for(("a", 0))
        assert locks.lock_for(("a", 0)) is not locks.lock_for(("a", 1))

    def test_hold_is_reentrant(self):
        locks = KeyedLocks()
        with locks.hold("key"):
            with locks.hold("key"):
                pass

    def test_different_keys_do_not_block(self):
        """Test that holding one pair never delays another."""
        locks = KeyedLocks()
        acquired = threading.Event()

        def other():
            with locks.hold(("b", 0)):
                acquired.set()

        with locks.hold(("a", 0)):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=2.0)
        thread.join()

    def test_same_key_blocks_other_threads(self):
        locks = KeyedLocks()
        result = []

        def other():
            lock = locks.lock_for(("a", 0))
            got = lock.acquire(timeout=0.1)
            result.append(got)
            if got:
                lock.release()

        with locks.hold(("a", 0)):
            thread = threading.Thread(target=other)
            thread.start()
            thread.join()

        assert result == [False]

    def test_forget(self):
        locks = KeyedLocks()
        first = locks.lock_for(("a", 0))
        locks.lock_for(("b", 0))

        locks.forget(("a", 0))
        locks.forget(("missing", 0))

        assert len(locks) == 1
        assert locks.lock_for(("a", 0)) is not first


class TestRestoreReport:
    """Tests for RestoreReport dataclass."""

    def test_record(self):
        report = RestoreReport(started_at_epoch_millis=100)
        trigger = ScheduledTrigger("a", 0, 5_000)
        report.record({
            0: (FireOutcome.DELIVERED, trigger),
            1: (FireOutcome.EXHAUSTED, None),
            2: (FireOutcome.FAILED, None),
        })
        report.finished_at_epoch_millis = 350

        assert report.reminders == 1
        assert report.delivered == 1
        assert report.duplicates == 1
        assert report.failed == 1
        assert report.registered == 1
        assert report.duration_millis == 250


class TestSchedule:
    """Tests for schedule, cancel, reschedule and purge."""

    def test_registers_each_offset(self, harness):
        """Test one alarm per offset at the next occurrence minus the offset."""
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))

        scheduled = harness.engine.schedule(reminder)

        base = _millis(2024, 1, 11, 9, 0)
        assert scheduled == [
            ScheduledTrigger("water", 0, base),
            ScheduledTrigger("water", HOUR_MILLIS, base - HOUR_MILLIS),
        ]
        assert harness.trigger_of("water", 0) == base
        assert harness.trigger_of("water", HOUR_MILLIS) == base - HOUR_MILLIS
        assert harness.alarms.alarms[notification_id("water", 0)].payload == TriggerFired("water", 0, base)
        assert scheduled[1].notification_id == notification_id("water", HOUR_MILLIS)

    def test_does_not_touch_ledger(self, harness):
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))

        harness.engine.schedule(reminder)

        assert harness.file_ledger.get_all_for_reminder("water") == {}
        assert harness.notifier.deliveries == []

    def test_schedule_twice_keeps_one_alarm_per_offset(self, harness):
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))

        harness.engine.schedule(reminder)
        harness.engine.schedule(reminder)

        assert len(harness.alarms) == 2

    def test_past_trigger_is_registered(self, harness):
        """Test that an offset reaching into the past still gets an alarm that fires at once."""
        reminder = harness.add(_once("dentist", NOW + 30 * MINUTE_MILLIS, offsets=(HOUR_MILLIS,)))

        harness.engine.schedule(reminder)

        assert harness.trigger_of("dentist", HOUR_MILLIS) == NOW - 30 * MINUTE_MILLIS
        harness.alarms.fire_due()
        assert harness.notifier.count_for("dentist", HOUR_MILLIS) == 1
        assert len(harness.alarms) == 0

    @pytest.mark.parametrize("flags", [{"enabled": False}, {"deleted": True}])
    def test_not_schedulable(self, harness, flags):
        reminder = harness.add(_daily(**flags))

        assert harness.engine.schedule(reminder) == []
        assert len(harness.alarms) == 0

    def test_exhausted_one_time(self, harness):
        reminder = harness.add(_once("dentist", NOW - DAY_MILLIS))

        assert harness.engine.schedule(reminder) == []
        assert len(harness.alarms) == 0

    def test_invalid_time_zone_is_skipped(self, harness):
        reminder = harness.add(_daily(time_zone="Mars/Olympus"))

        assert harness.engine.schedule(reminder) == []
        assert len(harness.alarms) == 0

    def test_unknown_rule_is_skipped(self, harness):
        reminder = harness.add(Reminder("odd", "Odd", ANCHOR, repeat_rule="fortnightly"))

        assert harness.engine.schedule(reminder) == []

    def test_quota_failure_after_all_offsets(self, tmp_path):
        """Test that a full alarm quota is reported once every offset was attempted."""
        harness = Harness(tmp_path, max_alarms=1)
        try:
            reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))

            with pytest.raises(SchedulerRegistrationFailure) as excinfo:
                harness.engine.schedule(reminder)

            assert excinfo.value.quota_exhausted
            assert [offset for offset, _ in excinfo.value.failures] == [HOUR_MILLIS]
            assert harness.trigger_of("water", 0) == _millis(2024, 1, 11, 9, 0)
        finally:
            harness.close()

    def test_registration_denied(self, harness):
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.alarms.stop()

        with pytest.raises(SchedulerRegistrationFailure) as excinfo:
            harness.engine.schedule(reminder)

        assert not excinfo.value.quota_exhausted
        assert len(excinfo.value.failures) == 2
        assert isinstance(excinfo.value.failures[0][1], SchedulerPermissionDenied)

    def test_cancel(self, harness):
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.engine.schedule(reminder)

        harness.engine.cancel(reminder)
        harness.engine.cancel(reminder)

        assert len(harness.alarms) == 0

    def test_reschedule_with_previous(self, harness):
        """Test that an update moves alarms and drops offsets that were removed."""
        previous = harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.engine.schedule(previous)

        updated = Reminder(
            id="water",
            title="Water the plants",
            anchor_epoch_millis=_millis(2024, 1, 1, 18, 0),
            repeat_rule="daily",
            offsets=(0,),
        )
        harness.store.put(updated)
        scheduled = harness.engine.reschedule(updated, previous=previous)

        assert scheduled == [ScheduledTrigger("water", 0, _millis(2024, 1, 10, 18, 0))]
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 10, 18, 0)
        assert harness.trigger_of("water", HOUR_MILLIS) is None

    def test_reschedule_disabled(self, harness):
        reminder = harness.add(_daily())
        harness.engine.schedule(reminder)

        disabled = _daily(enabled=False)
        harness.store.put(disabled)

        assert harness.engine.reschedule(disabled) == []
        assert len(harness.alarms) == 0

    def test_purge(self, harness):
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.engine.schedule(reminder)
        harness.file_ledger.upsert("water", 0, NOW)
        harness.file_ledger.upsert("water", HOUR_MILLIS, NOW)

        assert harness.engine.purge(reminder) == 2
        assert len(harness.alarms) == 0
        assert harness.file_ledger.get_all_for_reminder("water") == {}

    def test_purge_forgets_pair_locks(self, harness):
        """Test that purged reminders do not leave locks behind."""
        kept = harness.add(_daily("kept"))
        for index in range(5):
            reminder = harness.add(_daily(f"temp-{index}", offsets=(0, HOUR_MILLIS)))
            harness.engine.schedule(reminder)
            harness.engine.purge(reminder)
        harness.engine.schedule(kept)

        assert len(harness.engine._locks) == 1

    def test_reschedule_races_trigger(self, harness):
        """Test that an update racing a fired alarm always ends on the updated time."""
        old = _daily()
        updated = Reminder(
            id="water",
            title="Water the plants",
            anchor_epoch_millis=_millis(2024, 1, 1, 18, 0),
            repeat_rule="daily",
        )
        fired_at = _millis(2024, 1, 10, 9, 0)

        for _ in range(10):
            harness.store.put(old)
            harness.engine.schedule(old)
            harness.store.put(updated)
            barrier = threading.Barrier(2)

            def update():
                barrier.wait()
                harness.engine.reschedule(updated, previous=old)

            def fire():
                barrier.wait()
                harness.engine.on_trigger_fired("water", 0, fired_at, scheduled_trigger=fired_at)

            threads = [threading.Thread(target=update), threading.Thread(target=fire)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert harness.trigger_of("water", 0) == _millis(2024, 1, 10, 18, 0)
            assert len(harness.alarms) == 1

    def test_reschedule_has_no_visible_gap(self, harness):
        """Test that another holder of the pair lock never sees the alarm missing mid-update."""
        reminder = harness.add(_daily())
        harness.engine.schedule(reminder)
        alarm_id = notification_id("water", 0)
        missing = []
        done = threading.Event()
        barrier = threading.Barrier(2)

        def observe():
            barrier.wait()
            while not done.is_set():
                with harness.engine._locks.hold(("water", 0)):
                    if alarm_id not in harness.alarms:
                        missing.append(True)

        def update():
            barrier.wait()
            try:
                for _ in range(200):
                    harness.engine.reschedule(reminder)
            finally:
                done.set()

        threads = [threading.Thread(target=observe), threading.Thread(target=update)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert missing == []
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 11, 9, 0)


class TestOnTriggerFired:
    """Tests for on_trigger_fired and handle."""

    def test_delivers_and_reschedules(self, harness):
        harness.add(_daily(description="Ferns first"))
        trigger = _millis(2024, 1, 10, 9, 0)

        outcome = harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)

        assert outcome is FireOutcome.DELIVERED
        assert harness.notifier.deliveries == [(
            notification_id("water", 0),
            "Water the plants",
            "Ferns first",
            {"reminder_id": "water", "offset_millis": 0, "trigger_epoch_millis": trigger},
        )]
        assert harness.file_ledger.get("water", 0) == trigger
        assert harness.trigger_of("water", 0) == trigger + DAY_MILLIS

    def test_duplicate(self, harness):
        """Test that a repeated firing of the same trigger is not delivered twice."""
        harness.add(_daily())
        trigger = _millis(2024, 1, 10, 9, 0)

        harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)
        outcome = harness.engine.on_trigger_fired("water", 0, trigger + 500, scheduled_trigger=trigger)

        assert outcome is FireOutcome.DUPLICATE
        assert harness.notifier.count_for("water") == 1
        assert harness.trigger_of("water", 0) == trigger + DAY_MILLIS

    def test_next_occurrence_is_delivered(self, harness):
        harness.add(_daily())
        trigger = _millis(2024, 1, 10, 9, 0)

        harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)
        outcome = harness.engine.on_trigger_fired(
            "water", 0, trigger + DAY_MILLIS, scheduled_trigger=trigger + DAY_MILLIS
        )

        assert outcome is FireOutcome.DELIVERED
        assert harness.notifier.count_for("water") == 2

    def test_offset_reschedules_only_itself(self, harness):
        harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        trigger = _millis(2024, 1, 10, 8, 0)

        harness.engine.on_trigger_fired("water", HOUR_MILLIS, trigger, scheduled_trigger=trigger)

        assert harness.trigger_of("water", HOUR_MILLIS) == _millis(2024, 1, 11, 8, 0)
        assert harness.trigger_of("water", 0) is None

    def test_one_time_is_terminal(self, harness):
        anchor = NOW
        harness.add(_once("dentist", anchor))

        first = harness.engine.on_trigger_fired("dentist", 0, anchor, scheduled_trigger=anchor)
        second = harness.engine.on_trigger_fired("dentist", 0, anchor + 1_000, scheduled_trigger=anchor)

        assert first is FireOutcome.DELIVERED
        assert second is FireOutcome.DUPLICATE
        assert harness.notifier.count_for("dentist") == 1
        assert len(harness.alarms) == 0

    def test_missing_scheduled_trigger(self, harness):
        """Test that the trigger is recovered from the fire time."""
        harness.add(_daily())
        trigger = _millis(2024, 1, 10, 9, 0)

        outcome = harness.engine.on_trigger_fired("water", 0, trigger + 500)

        assert outcome is FireOutcome.DELIVERED
        assert harness.notifier.deliveries[0][3]["trigger_epoch_millis"] == trigger

    def test_unknown_reminder_is_ignored(self, harness):
        harness.alarms.schedule_exact_at(notification_id("gone", 0), NOW, TriggerFired("gone", 0, NOW))

        outcome = harness.engine.on_trigger_fired("gone", 0, NOW)

        assert outcome is FireOutcome.IGNORED
        assert len(harness.alarms) == 0
        assert harness.notifier.deliveries == []

    def test_disabled_reminder_is_ignored(self, harness):
        harness.add(_daily(enabled=False))

        assert harness.engine.on_trigger_fired("water", 0, NOW) is FireOutcome.IGNORED
        assert harness.file_ledger.get("water", 0) is None

    def test_unknown_offset_is_ignored(self, harness):
        harness.add(_daily())

        assert harness.engine.on_trigger_fired("water", HOUR_MILLIS, NOW) is FireOutcome.IGNORED

    def test_notifier_failure_still_recorded(self, tmp_path):
        notifier = Mock()
        notifier.deliver.side_effect = RuntimeError("tray gone")
        harness = Harness(tmp_path, notifier=notifier)
        try:
            harness.add(_daily())
            trigger = _millis(2024, 1, 10, 9, 0)

            outcome = harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)

            assert outcome is FireOutcome.DELIVERED
            notifier.deliver.assert_called_once()
            assert harness.file_ledger.get("water", 0) == trigger
        finally:
            harness.close()

    def test_ledger_write_failure_is_degraded(self, harness):
        """Test that the notification goes out even when it cannot be recorded."""
        harness.add(_daily())
        harness.ledger.fail_writes = True
        trigger = _millis(2024, 1, 10, 9, 0)

        outcome = harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)

        assert outcome is FireOutcome.DEGRADED
        assert harness.notifier.count_for("water") == 1
        assert harness.file_ledger.get("water", 0) is None
        assert harness.trigger_of("water", 0) == trigger + DAY_MILLIS

    def test_ledger_read_failure_delivers(self, harness):
        harness.add(_daily())
        harness.ledger.fail_reads = True
        trigger = _millis(2024, 1, 10, 9, 0)

        outcome = harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger)

        assert outcome is FireOutcome.DELIVERED
        assert harness.notifier.count_for("water") == 1

    def test_end_to_end_through_alarm_clock(self, harness):
        """Test alarms firing, delivering and re-arming across two days."""
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.engine.schedule(reminder)

        harness.clock.now = _millis(2024, 1, 11, 8, 0)
        assert len(harness.alarms.fire_due()) == 1
        assert harness.notifier.count_for("water", HOUR_MILLIS) == 1
        assert harness.notifier.count_for("water", 0) == 0

        harness.clock.now = _millis(2024, 1, 11, 9, 0)
        assert len(harness.alarms.fire_due()) == 1
        assert harness.notifier.count_for("water", 0) == 1

        assert harness.trigger_of("water", HOUR_MILLIS) == _millis(2024, 1, 12, 8, 0)
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 12, 9, 0)

        harness.clock.now = _millis(2024, 1, 12, 9, 0)
        assert len(harness.alarms.fire_due()) == 2
        assert harness.notifier.count_for("water") == 4


class TestBootRestore:
    """Tests for process_boot_restore and restore_all."""

    def test_missed_daily_across_dst(self, harness):
        """Test that a missed 09:00 occurrence is delivered and the next one armed."""
        reminder = harness.add(Reminder(
            id="vitamins",
            title="Take vitamins",
            anchor_epoch_millis=_millis(2024, 3, 8, 9, 0, tz=NEW_YORK),
            time_zone=NEW_YORK,
            repeat_rule="daily",
        ))
        now = _millis(2024, 3, 11, 12, 0, tz=NEW_YORK)

        results = harness.engine.process_boot_restore(reminder, now=now)

        assert results == {0: FireOutcome.DELIVERED}
        payload = harness.notifier.deliveries[0][3]
        assert payload["trigger_epoch_millis"] == _millis(2024, 3, 11, 9, 0, tz=NEW_YORK)
        assert harness.trigger_of("vitamins", 0) == _millis(2024, 3, 12, 9, 0, tz=NEW_YORK)
        assert harness.file_ledger.get("vitamins", 0) == now

    def test_restore_is_idempotent(self, harness):
        reminder = harness.add(_daily())

        first = harness.engine.process_boot_restore(reminder)
        second = harness.engine.process_boot_restore(reminder)

        assert first == {0: FireOutcome.DELIVERED}
        assert second == {0: FireOutcome.DUPLICATE}
        assert harness.notifier.count_for("water") == 1
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 11, 9, 0)

    def test_not_due(self, harness):
        reminder = harness.add(_once("dentist", NOW + DAY_MILLIS, offsets=(HOUR_MILLIS,)))

        results = harness.engine.process_boot_restore(reminder)

        assert results == {HOUR_MILLIS: FireOutcome.NOT_DUE}
        assert harness.trigger_of("dentist", HOUR_MILLIS) == NOW + DAY_MILLIS - HOUR_MILLIS
        assert harness.notifier.deliveries == []

    def test_recurring_not_started(self, harness):
        anchor = NOW + 3 * DAY_MILLIS
        reminder = harness.add(Reminder("later", "Later", anchor, repeat_rule="weekly"))

        assert harness.engine.process_boot_restore(reminder) == {0: FireOutcome.NOT_DUE}
        assert harness.trigger_of("later", 0) == anchor

    def test_missed_one_time_then_exhausted(self, harness):
        reminder = harness.add(_once("dentist", NOW - HOUR_MILLIS))

        assert harness.engine.process_boot_restore(reminder) == {0: FireOutcome.DELIVERED}
        assert harness.engine.process_boot_restore(reminder) == {0: FireOutcome.EXHAUSTED}
        assert harness.notifier.count_for("dentist") == 1
        assert len(harness.alarms) == 0

    def test_offsets_are_independent(self, harness):
        """Test that only the offset whose trigger passed is delivered."""
        anchor = NOW + 30 * MINUTE_MILLIS
        reminder = harness.add(_once("dentist", anchor, offsets=(0, HOUR_MILLIS)))

        results = harness.engine.process_boot_restore(reminder)

        assert results == {0: FireOutcome.NOT_DUE, HOUR_MILLIS: FireOutcome.DELIVERED}
        assert harness.notifier.deliveries[0][3]["trigger_epoch_millis"] == anchor - HOUR_MILLIS
        assert harness.trigger_of("dentist", 0) == anchor
        assert harness.trigger_of("dentist", HOUR_MILLIS) is None

    def test_prepopulated_ledger(self, harness):
        """Test the ledger being consulted per offset."""
        reminder = harness.add(_daily(offsets=(0, HOUR_MILLIS, 2 * HOUR_MILLIS)))
        harness.file_ledger.upsert("water", 0, _millis(2024, 1, 10, 9, 0))
        harness.file_ledger.upsert("water", HOUR_MILLIS, _millis(2024, 1, 9, 8, 0))

        results = harness.engine.process_boot_restore(reminder)

        assert results == {
            0: FireOutcome.DUPLICATE,
            HOUR_MILLIS: FireOutcome.DELIVERED,
            2 * HOUR_MILLIS: FireOutcome.DELIVERED,
        }
        assert harness.notifier.count_for("water", 0) == 0
        assert harness.notifier.count_for("water", HOUR_MILLIS) == 1
        assert len(harness.alarms) == 3

    def test_degraded_delivery_is_retried(self, harness):
        """Test that a delivery the ledger missed is repeated once, then settles."""
        reminder = harness.add(_once("dentist", NOW))
        harness.ledger.fail_writes = True

        assert harness.engine.on_trigger_fired("dentist", 0, NOW, scheduled_trigger=NOW) is FireOutcome.DEGRADED

        harness.ledger.fail_writes = False
        later = NOW + 5 * MINUTE_MILLIS
        assert harness.engine.process_boot_restore(reminder, now=later) == {0: FireOutcome.DELIVERED}
        assert harness.engine.process_boot_restore(reminder, now=later) == {0: FireOutcome.EXHAUSTED}
        assert harness.notifier.count_for("dentist") == 2

    def test_degraded_restore(self, harness):
        reminder = harness.add(_daily())
        harness.ledger.fail_writes = True

        assert harness.engine.process_boot_restore(reminder) == {0: FireOutcome.DEGRADED}
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 11, 9, 0)

    def test_race_with_trigger(self, harness):
        """Test that an alarm and a restore handling the same trigger deliver once."""
        reminder = harness.add(_daily())
        trigger = _millis(2024, 1, 10, 9, 0)
        barrier = threading.Barrier(2)
        outcomes = []

        def fire():
            barrier.wait()
            outcomes.append(harness.engine.on_trigger_fired("water", 0, trigger, scheduled_trigger=trigger))

        def restore():
            barrier.wait()
            outcomes.extend(harness.engine.process_boot_restore(reminder, now=trigger + 1_000).values())

        threads = [threading.Thread(target=fire), threading.Thread(target=restore)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcome.value for outcome in outcomes) == ["delivered", "duplicate"]
        assert harness.notifier.count_for("water") == 1
        assert harness.trigger_of("water", 0) == trigger + DAY_MILLIS

    def test_disabled_is_ignored(self, harness):
        reminder = _daily(offsets=(0, HOUR_MILLIS), deleted=True)

        results = harness.engine.process_boot_restore(reminder)

        assert results == {0: FireOutcome.IGNORED, HOUR_MILLIS: FireOutcome.IGNORED}
        assert len(harness.alarms) == 0

    def test_invalid_zone_fails_only_that_reminder(self, harness):
        harness.add(_daily())
        harness.add(_daily("broken", time_zone="Mars/Olympus"))
        harness.add(_daily("paused", enabled=False))

        report = harness.engine.restore_all()

        assert report.reminders == 2
        assert report.delivered == 1
        assert report.failed == 1
        assert report.registered == 1
        assert harness.trigger_of("water", 0) == _millis(2024, 1, 11, 9, 0)
        assert harness.trigger_of("broken", 0) is None
        assert harness.trigger_of("paused", 0) is None

    def test_restore_all(self, harness):
        harness.add(_daily(offsets=(0, HOUR_MILLIS)))
        harness.add(_once("dentist", NOW + DAY_MILLIS))
        harness.add(_once("past", NOW - DAY_MILLIS))
        harness.file_ledger.upsert("past", 0, NOW - DAY_MILLIS)

        report = harness.engine.restore_all(max_workers=2)

        assert report.reminders == 3
        assert report.delivered == 2
        assert report.duplicates == 1
        assert report.registered == 3
        assert report.failed == 0
        assert len(harness.alarms) == 3

    def test_registration_failure_keeps_delivery(self, harness):
        """Test that a missed occurrence is delivered even if re-arming fails."""
        harness.add(_daily())
        harness.alarms.stop()

        report = harness.engine.restore_all()

        assert report.delivered == 1
        assert report.registered == 0
        assert harness.notifier.count_for("water") == 1
