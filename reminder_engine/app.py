"""Desktop shell: tray icon, alarm clock and scheduling engine wired together."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, Optional

from PyQt6.QtWidgets import QApplication, QSystemTrayIcon, QMenu
from PyQt6.QtGui import QIcon, QPixmap, QPainter, QColor, QAction
from PyQt6.QtCore import QObject, pyqtSignal, QTimer

from .alarms import AlarmClock
from .config import ConfigManager
from .engine import SchedulingEngine
from .errors import SchedulerRegistrationFailure
from .ledger import FireStateLedger
from .models import Reminder, TriggerFired
from .notifiers import LogNotifier
from .store import InMemoryReminderStore


logger = logging.getLogger(__name__)

NOTIFICATION_TIMEOUT = 10000  # milliseconds


class TrayNotifier(QObject):
    """
    Shows deliveries as tray notifications.

    ``deliver`` is called from alarm and restore threads; the signal hands the
    message to the Qt main thread.
    """
    requested = pyqtSignal(int, str, str)

    def __init__(self, tray_icon: QSystemTrayIcon):
        super().__init__()
        self.tray_icon = tray_icon
        self.requested.connect(self._show)

    def deliver(self, notification_id: int, title: str, message: str, payload: dict) -> None:
        logger.info("Reminder [%d] %s", notification_id, title)
        self.requested.emit(notification_id, title, message)

    def _show(self, notification_id: int, title: str, message: str):
        self.tray_icon.showMessage(
            title,
            message or title,
            QSystemTrayIcon.MessageIcon.Information,
            NOTIFICATION_TIMEOUT,
        )


class ReminderApp(QObject):
    """
    Main application class that coordinates the reminder engine.

    Manages:
    - Configuration loading
    - Fire-state ledger and alarm clock lifecycle
    - Boot restore on startup
    - System tray icon and notifications
    """

    def __init__(self, config_dir: Optional[Path] = None, enable_tray: bool = True):
        """
        Initialize the ReminderApp.

        Args:
            config_dir: Optional custom config directory path
            enable_tray: Whether to enable the system tray icon
        """
        super().__init__()

        self.config_manager = ConfigManager(config_dir)
        self.store = InMemoryReminderStore()
        self.ledger: Optional[FireStateLedger] = None
        self.alarm_clock: Optional[AlarmClock] = None
        self.engine: Optional[SchedulingEngine] = None
        self.notifier = None
        self.tray_icon: Optional[QSystemTrayIcon] = None
        self._enable_tray = enable_tray

    def initialize(self) -> bool:
        """
        Load the configuration, open the ledger and restore all reminders.

        Returns:
            True on success
        """
        try:
            reminders = self.config_manager.load_config()
        except FileNotFoundError as e:
            logger.error("%s", e)
            logger.info("Creating example configuration...")
            self.config_manager.create_example_config()
            logger.info("Please edit %s and restart.", self.config_manager.config_file)
            return False
        except ValueError as e:
            logger.error("Invalid configuration: %s", e)
            return False

        general = self.config_manager.general
        logging.getLogger().setLevel(general.log_level)

        logger.info("Loaded %d reminders:", len(reminders))
        for reminder in reminders.values():
            logger.info("  - %s: %s", reminder.id, reminder.repeat_rule or "one-time")

        if self._enable_tray and general.enable_tray:
            self._setup_tray()
            self.notifier = TrayNotifier(self.tray_icon)
        else:
            self.notifier = LogNotifier()

        self.ledger = FireStateLedger(self.config_manager.ledger_path)
        self.alarm_clock = AlarmClock(
            callback=self._on_alarm,
            check_interval=general.check_interval,
            max_alarms=general.max_alarms,
        )
        self.engine = SchedulingEngine(
            store=self.store,
            ledger=self.ledger,
            scheduler=self.alarm_clock,
            notifier=self.notifier,
            restore_workers=general.restore_workers,
        )

        for reminder in reminders.values():
            self.store.put(reminder)

        # Alarms never survive a restart, so every start is a boot restore
        report = self.engine.restore_all()
        if report.failed:
            self._warn_unreliable(f"{report.failed} reminder offsets could not be restored")
        return True

    def reload_config(self) -> bool:
        """Apply config file changes: schedule new, reschedule changed, purge removed."""
        try:
            reminders = self.config_manager.load_config()
        except (FileNotFoundError, ValueError) as e:
            logger.error("Could not reload configuration: %s", e)
            return False

        self.apply_changes(reminders)
        return True

    def apply_changes(self, reminders: Dict[str, Reminder]) -> None:
        """Bring the store and the alarms in line with a new set of reminders."""
        for reminder_id in {r.id for r in self.store.all()} - set(reminders):
            removed = self.store.remove(reminder_id)
            if removed is not None:
                self.engine.purge(removed)

        for reminder in reminders.values():
            previous = self.store.put(reminder)
            if previous == reminder:
                continue
            try:
                if previous is None:
                    self.engine.schedule(reminder)
                else:
                    self.engine.reschedule(reminder, previous=previous)
            except SchedulerRegistrationFailure as e:
                logger.error("%s", e)
                if e.quota_exhausted:
                    self._warn_unreliable("Too many pending alarms, some reminders are not scheduled")

    def _on_alarm(self, payload: TriggerFired):
        """Alarm clock callback (alarm thread)."""
        self.engine.handle(payload)

    def _warn_unreliable(self, message: str):
        logger.warning("Reminders may be unreliable: %s", message)
        if self.tray_icon is not None:
            self.tray_icon.showMessage(
                "Reminders may be unreliable",
                message,
                QSystemTrayIcon.MessageIcon.Warning,
                NOTIFICATION_TIMEOUT,
            )

    def _setup_tray(self):
        """Set up the system tray icon."""
        # Create a simple icon
        pixmap = QPixmap(32, 32)
        pixmap.fill(QColor("transparent"))
        painter = QPainter(pixmap)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing)
        painter.setBrush(QColor("#3F51B5"))
        painter.setPen(QColor("#303F9F"))
        painter.drawEllipse(2, 2, 28, 28)
        painter.end()

        self.tray_icon = QSystemTrayIcon(QIcon(pixmap))
        self.tray_icon.setToolTip("Reminder Engine")

        menu = QMenu()

        status_action = QAction("Reminder Engine", menu)
        status_action.setEnabled(False)
        menu.addAction(status_action)

        menu.addSeparator()

        show_status = QAction("Show Status", menu)
        show_status.triggered.connect(self._show_status)
        menu.addAction(show_status)

        reload_action = QAction("Reload Config", menu)
        reload_action.triggered.connect(self.reload_config)
        menu.addAction(reload_action)

        test_action = QAction("Test Notification", menu)
        test_action.triggered.connect(self._test_notification)
        menu.addAction(test_action)

        menu.addSeparator()

        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self._quit)
        menu.addAction(quit_action)

        self.tray_icon.setContextMenu(menu)
        self.tray_icon.show()

    def _show_status(self):
        """Log all pending alarms."""
        status = self.alarm_clock.get_status()
        logger.info("=== Pending alarms (%d) ===", len(status))
        for alarm_id, info in sorted(status.items(), key=lambda item: item[1]["trigger_epoch_millis"]):
            event = info["payload"]
            logger.info(
                "  %s offset=%d at %s (id=%d)",
                event.reminder_id, event.offset_millis, info["trigger"], alarm_id,
            )

    def _test_notification(self):
        self.notifier.deliver(0, "Reminder Engine", "Notifications are working", {})

    def _quit(self):
        """Quit the application."""
        logger.info("Shutting down...")
        if self.alarm_clock is not None:
            self.alarm_clock.stop()
        if self.ledger is not None:
            self.ledger.close()
        QApplication.quit()

    def run(self):
        """Start the application."""
        self.alarm_clock.start()
        logger.info("Reminder engine is running. Press Ctrl+C to quit.")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reminder scheduling engine")
    parser.add_argument(
        "--config-dir", "-c",
        type=Path,
        default=None,
        help="Directory containing config.toml (default: ~/.config/reminder-engine)"
    )
    parser.add_argument(
        "--no-tray",
        action="store_true",
        help="Log deliveries instead of showing tray notifications"
    )
    return parser.parse_args(argv)


def main():
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Create Qt application
    app = QApplication(sys.argv)
    app.setQuitOnLastWindowClosed(False)  # Keep running with just tray icon
    app.setApplicationName("Reminder Engine")

    reminder_app = ReminderApp(config_dir=args.config_dir, enable_tray=not args.no_tray)

    if not reminder_app.initialize():
        sys.exit(1)

    # Handle SIGINT (Ctrl+C)
    signal.signal(signal.SIGINT, lambda *args: reminder_app._quit())

    # Timer to allow signal handling
    timer = QTimer()
    timer.timeout.connect(lambda: None)
    timer.start(500)

    reminder_app.run()

    sys.exit(app.exec())


if __name__ == "__main__":
    main()
