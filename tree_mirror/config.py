"""Configuration management for Tree Mirror.

Stores and retrieves settings from a JSON config file in the
platform-appropriate application data directory. Command-line
arguments override whatever the file holds.
"""

import json
import logging
from pathlib import Path
from typing import Any

from tree_mirror.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from tree_mirror.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "master_folder": "",
    "target_folders": [],
    "poll_interval_ms": 10,
    "exclude_patterns": [],  # Glob patterns never mirrored (e.g. ["*.tmp", "~*"])
    "dry_run": False,
    "use_polling": False,  # stat-polling observer instead of native notifications
    "log_level": "INFO",
    # ---- log rotation ----
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if not self._path.exists():
            self._data = dict(DEFAULT_CONFIG)
            return
        try:
            with open(self._path, encoding="utf-8") as fh:
                stored = json.load(fh)
            # Merge stored values over defaults so new keys get defaults
            self._data = {**DEFAULT_CONFIG, **stored}
            logger.info("Configuration loaded from %s", self._path)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read config (%s); using defaults.", exc)
            self._data = dict(DEFAULT_CONFIG)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved to %s", self._path)
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- accessors ----

    @property
    def master_folder(self) -> str:
        """Return the master folder path."""
        return self._data["master_folder"]

    @master_folder.setter
    def master_folder(self, value: str) -> None:
        self._data["master_folder"] = str(value)

    @property
    def target_folders(self) -> list[str]:
        """Return the target folder paths, in propagation order."""
        return list(self._data["target_folders"])

    @target_folders.setter
    def target_folders(self, value: list[str]) -> None:
        """Set target folders, dropping blanks."""
        self._data["target_folders"] = [str(t) for t in value if str(t).strip()]

    @property
    def poll_interval_ms(self) -> int:
        """Return the delay between poll cycles in milliseconds."""
        return int(self._data["poll_interval_ms"])

    @poll_interval_ms.setter
    def poll_interval_ms(self, value: int) -> None:
        """Set the poll delay (minimum 1 ms)."""
        self._data["poll_interval_ms"] = max(1, int(value))

    @property
    def exclude_patterns(self) -> list[str]:
        """Return glob patterns of entry names that are never mirrored."""
        return self._data.get("exclude_patterns", [])

    @exclude_patterns.setter
    def exclude_patterns(self, value: list[str]) -> None:
        self._data["exclude_patterns"] = [p.strip() for p in value if p.strip()]

    @property
    def dry_run(self) -> bool:
        """Return whether changes are only logged, not applied."""
        return bool(self._data.get("dry_run", False))

    @dry_run.setter
    def dry_run(self, value: bool) -> None:
        self._data["dry_run"] = bool(value)

    @property
    def use_polling(self) -> bool:
        """Return whether the stat-polling observer replaces native notifications."""
        return bool(self._data.get("use_polling", False))

    @use_polling.setter
    def use_polling(self, value: bool) -> None:
        self._data["use_polling"] = bool(value)

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._data["log_level"] = value.upper()

    # ---- log rotation ----

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        """Set the number of rotated log backups to keep."""
        self._data["log_backup_count"] = max(0, int(value))

    # ---- convenience ----

    def is_configured(self) -> bool:
        """Return True when a master folder and at least one target are set."""
        return bool(self.master_folder) and bool(self.target_folders)
