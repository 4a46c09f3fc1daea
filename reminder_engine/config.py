"""Configuration parser for the reminder engine."""

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .models import Reminder


logger = logging.getLogger(__name__)


@dataclass
class GeneralConfig:
    """General settings for the reminder engine."""
    database: str = "fire_state.db"  # Ledger file, relative to the config dir
    check_interval: float = 1.0  # seconds
    max_alarms: int = 500
    restore_workers: int = 4
    log_level: str = "INFO"
    default_time_zone: str = "UTC"
    enable_tray: bool = True

    @classmethod
    def from_dict(cls, settings: dict) -> "GeneralConfig":
        """Create a GeneralConfig from a dictionary."""
        return cls(
            database=settings.get("database", "fire_state.db"),
            check_interval=settings.get("check_interval", 1.0),
            max_alarms=settings.get("max_alarms", 500),
            restore_workers=settings.get("restore_workers", 4),
            log_level=str(settings.get("log_level", "INFO")).upper(),
            default_time_zone=settings.get("default_time_zone", "UTC"),
            enable_tray=settings.get("enable_tray", True),
        )


def parse_config_data(config_data: dict) -> tuple[Dict[str, Reminder], GeneralConfig]:
    """
    Parse configuration data into Reminder objects and GeneralConfig.

    Args:
        config_data: Raw parsed TOML data

    Returns:
        Tuple of (dictionary mapping reminder ids to Reminder objects, GeneralConfig)
    """
    general_config = GeneralConfig.from_dict(config_data.get("general", {}))
    reminders = {}

    for name, settings in config_data.items():
        if not isinstance(settings, dict):
            continue

        # [general] is parsed above
        if name == "general":
            continue

        reminders[name] = Reminder.from_dict(name, settings, general_config.default_time_zone)

    return reminders, general_config


def load_config_file(config_file: Path) -> dict:
    """Load and parse a TOML configuration file."""
    if not config_file.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_file}\n"
            f"Please create a config file at {config_file}"
        )

    with open(config_file, "rb") as f:
        return tomllib.load(f)


class ConfigManager:
    """Manages loading and parsing of the reminder configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "reminder-engine"
    CONFIG_FILE = "config.toml"

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else self.DEFAULT_CONFIG_DIR
        self.config_file = self.config_dir / self.CONFIG_FILE
        self.reminders: Dict[str, Reminder] = {}
        self.general: GeneralConfig = GeneralConfig()

    @property
    def ledger_path(self) -> Path:
        """Where the fire-state ledger lives."""
        path = Path(self.general.database).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    def ensure_config_dir(self) -> None:
        """Create the config directory if it doesn't exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> Dict[str, Reminder]:
        """Load and parse the configuration file."""
        config_data = load_config_file(self.config_file)
        self.reminders, self.general = parse_config_data(config_data)
        logger.debug("Loaded %d reminders from %s", len(self.reminders), self.config_file)
        return self.reminders

    def load_from_data(self, config_data: dict) -> Dict[str, Reminder]:
        """Load reminders from already-parsed config data."""
        self.reminders, self.general = parse_config_data(config_data)
        return self.reminders

    def create_example_config(self) -> None:
        """Create an example configuration file."""
        self.ensure_config_dir()

        example_config = '''# Reminder Engine Configuration

# General settings (optional - these are the defaults)
[general]
database = "fire_state.db"     # Delivery ledger, relative to this directory
check_interval = 1.0           # Seconds between alarm checks
max_alarms = 500               # Maximum pending alarms
restore_workers = 4            # Reminders restored in parallel at startup
log_level = "INFO"
default_time_zone = "UTC"      # Used when a reminder has no time_zone
enable_tray = true             # Show deliveries as tray notifications

[mom_birthday]
title = "Mom's birthday"
description = "Call her before dinner"
anchor = 1960-03-14T09:00:00   # Local wall-clock time in time_zone
time_zone = "Europe/London"
repeat = "yearly"              # every_minute, daily, weekly, monthly, yearly
offsets = [0, 86400000]        # At the time and one day before (milliseconds)

[rent]
title = "Pay rent"
anchor = 2024-01-31T09:00:00
time_zone = "America/New_York"
repeat = "monthly"             # Short months fall back to their last day

[dentist]
title = "Dentist appointment"
anchor = 2030-06-02T14:30:00
time_zone = "America/New_York"
offsets = [3600000]            # One hour before
'''

        with open(self.config_file, "w") as f:
            f.write(example_config)

        logger.info("Created example config at: %s", self.config_file)
