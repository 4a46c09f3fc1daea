"""In-process exact alarm clock used as the wake-up primitive."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import SchedulerPermissionDenied, SchedulerQuotaExceeded


logger = logging.getLogger(__name__)


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass
class PendingAlarm:
    """A registered alarm waiting for its trigger instant."""
    alarm_id: int
    trigger_epoch_millis: int
    payload: Any

    @property
    def trigger_time(self) -> datetime:
        return datetime.fromtimestamp(self.trigger_epoch_millis / 1000, tz=timezone.utc)


class AlarmClock:
    """
    Exact alarms keyed by integer id.

    Uses a background thread to check for due alarms. Registrations live only
    in memory, so they are gone after a restart exactly like OS alarms after a
    reboot; the engine's boot restore rebuilds them.

    Registering an id that is already pending replaces it. Alarms whose
    trigger is already in the past fire on the next check. Each alarm fires
    once and is then forgotten.
    """

    CHECK_INTERVAL = 1.0  # Check every second

    def __init__(
        self,
        callback: Optional[Callable[[Any], None]] = None,
        check_interval: Optional[float] = None,
        max_alarms: int = 500,
        clock: Callable[[], int] = now_millis,
        inline: bool = False,
    ):
        """
        Initialize the AlarmClock.

        Args:
            callback: Called with an alarm's payload when it comes due
            check_interval: Seconds between checks (defaults to CHECK_INTERVAL)
            max_alarms: Registration quota
            clock: Returns the current epoch millis
            inline: Run callbacks on the checking thread instead of a new one
        """
        self.callback = callback
        self.check_interval = check_interval or self.CHECK_INTERVAL
        self.max_alarms = max_alarms
        self.clock = clock
        self.inline = inline
        self.alarms: Dict[int, PendingAlarm] = {}
        self._running = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def schedule_exact_at(self, alarm_id: int, trigger_epoch_millis: int, payload: Any) -> None:
        """
        Register (or replace) an alarm.

        Raises:
            SchedulerPermissionDenied: If the clock has been shut down
            SchedulerQuotaExceeded: If max_alarms alarms are already pending
        """
        with self._lock:
            if self._closed:
                raise SchedulerPermissionDenied("Alarm clock is shut down")
            if alarm_id not in self.alarms and len(self.alarms) >= self.max_alarms:
                raise SchedulerQuotaExceeded(
                    f"Alarm quota of {self.max_alarms} reached, cannot register {alarm_id}"
                )
            alarm = PendingAlarm(alarm_id, trigger_epoch_millis, payload)
            self.alarms[alarm_id] = alarm

        logger.debug("Alarm %d set for %s", alarm_id, alarm.trigger_time)

    def cancel(self, alarm_id: int) -> None:
        """Remove an alarm. Does nothing if it already fired or never existed."""
        with self._lock:
            removed = self.alarms.pop(alarm_id, None)
        if removed is not None:
            logger.debug("Alarm %d cancelled", alarm_id)

    def __contains__(self, alarm_id: int) -> bool:
        with self._lock:
            return alarm_id in self.alarms

    def __len__(self) -> int:
        with self._lock:
            return len(self.alarms)

    def start(self) -> None:
        """Start the alarm clock background thread."""
        if self._running:
            return

        self._running = True
        self._closed = False
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info("Alarm clock started")

    def stop(self) -> None:
        """Stop the alarm clock. Later registrations are refused."""
        self._running = False
        with self._lock:
            self._closed = True
        if self._thread:
            self._thread.join(timeout=2.0)
        logger.info("Alarm clock stopped")

    def fire_due(self, now: Optional[int] = None) -> List[Any]:
        """Fire every alarm due at ``now`` and return their payloads."""
        now = self.clock() if now is None else now

        with self._lock:
            due = [alarm for alarm in self.alarms.values() if alarm.trigger_epoch_millis <= now]
            for alarm in due:
                del self.alarms[alarm.alarm_id]

        due.sort(key=lambda alarm: alarm.trigger_epoch_millis)
        for alarm in due:
            logger.debug("Alarm %d due", alarm.alarm_id)
            self._dispatch(alarm.payload)
        return [alarm.payload for alarm in due]

    def _dispatch(self, payload: Any) -> None:
        if self.callback is None:
            return
        if self.inline:
            self._invoke(payload)
            return
        # Run the callback in a separate thread to not block the clock
        threading.Thread(target=self._invoke, args=(payload,), daemon=True).start()

    def _invoke(self, payload: Any) -> None:
        try:
            self.callback(payload)
        except Exception:
            logger.exception("Alarm callback failed for %r", payload)

    def _run_loop(self) -> None:
        """Main alarm loop."""
        while self._running:
            self.fire_due()
            time.sleep(self.check_interval)

    def get_status(self) -> Dict[int, dict]:
        """Get the status of all pending alarms."""
        status = {}
        with self._lock:
            for alarm_id, alarm in self.alarms.items():
                status[alarm_id] = {
                    "trigger": alarm.trigger_time.isoformat(),
                    "trigger_epoch_millis": alarm.trigger_epoch_millis,
                    "payload": alarm.payload,
                }
        return status
