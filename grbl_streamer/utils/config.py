"""Persistent settings for GRBL Streamer.

Settings live in one JSON file, grouped by concern (``connection``,
``controller``, ``gcode``, ``work_offsets``) and addressed with dotted keys
such as ``controller.rx_buffer_size``. Missing keys fall back to
``DEFAULT_SETTINGS``; unknown keys in the file are kept as they are.
"""

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import (
    ACK_TIMEOUT_DEFAULT,
    ARC_RADIUS_EPSILON_DEFAULT,
    ARC_RADIUS_RATIO_DEFAULT,
    ARC_TOLERANCE_DEFAULT,
    BAUD_DEFAULT,
    OUTPUT_DECIMALS_DEFAULT,
    QUEUE_CAPACITY_DEFAULT,
    RX_BUFFER_RESERVE,
    RX_BUFFER_SIZE,
    SETTINGS_BACKUP_SUFFIX,
    SETTINGS_FILENAME,
    SETTINGS_TEMP_SUFFIX,
    STATUS_POLL_DEFAULT,
    STATUS_POLL_INTERVAL_MIN,
    TCP_PORT_DEFAULT,
    VALID_BAUD_RATES,
)
from .exceptions import SettingsLoadError, SettingsSaveError, SettingsValidationError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "connection": {
        "kind": "serial",
        "port": "",
        "baud_rate": BAUD_DEFAULT,
        "host": "",
        "tcp_port": TCP_PORT_DEFAULT,
    },
    "controller": {
        "rx_buffer_size": RX_BUFFER_SIZE,
        "rx_buffer_reserve": RX_BUFFER_RESERVE,
        "ack_timeout": ACK_TIMEOUT_DEFAULT,
        "status_poll_interval": STATUS_POLL_DEFAULT,
        "queue_capacity": QUEUE_CAPACITY_DEFAULT,
    },
    "gcode": {
        "arc_tolerance": ARC_TOLERANCE_DEFAULT,
        "arc_radius_epsilon": ARC_RADIUS_EPSILON_DEFAULT,
        "arc_radius_ratio": ARC_RADIUS_RATIO_DEFAULT,
        "arcs_as_lines": False,
        "output_decimals": OUTPUT_DECIMALS_DEFAULT,
    },
    "work_offsets": {f"G5{n}": [0.0, 0.0, 0.0] for n in range(4, 10)},
    "max_recent_files": 10,
    "recent_files": [],
}


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _positive(value: Any) -> bool:
    return _number(value) and value > 0


def _point(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and len(value) == 3 and all(_number(v) for v in value)


# (dotted key, check, description used in the error message)
_CHECKS: List[Tuple[str, Callable[[Any], bool], str]] = [
    ("connection.kind", lambda v: v in ("serial", "tcp"), "connection kind"),
    ("connection.baud_rate", lambda v: v in VALID_BAUD_RATES, "baud rate"),
    ("connection.tcp_port", lambda v: isinstance(v, int) and 1 <= v <= 65535, "TCP port"),
    ("controller.rx_buffer_size", lambda v: isinstance(v, int) and v > 1, "RX buffer size"),
    ("controller.rx_buffer_reserve", lambda v: isinstance(v, int) and v >= 0, "RX buffer reserve"),
    ("controller.ack_timeout", _positive, "ack timeout"),
    ("controller.status_poll_interval",
     lambda v: _number(v) and v >= STATUS_POLL_INTERVAL_MIN, "status poll interval"),
    ("controller.queue_capacity", lambda v: isinstance(v, int) and v >= 1, "queue capacity"),
    ("gcode.arc_tolerance", _positive, "arc tolerance"),
    ("gcode.arc_radius_epsilon", _positive, "arc radius epsilon"),
    ("gcode.arc_radius_ratio", _positive, "arc radius ratio"),
    ("gcode.output_decimals", lambda v: isinstance(v, int) and 0 <= v <= 6, "output decimals"),
]


def _merge(defaults: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(loaded)
    for key, default in defaults.items():
        if key not in loaded:
            merged[key] = default
        elif isinstance(default, dict) and isinstance(loaded[key], dict):
            merged[key] = _merge(default, loaded[key])
    return merged


def _fresh_defaults() -> Dict[str, Any]:
    return json.loads(json.dumps(DEFAULT_SETTINGS))


def get_default_settings_dir() -> str:
    """Per-user settings directory; ``GRBL_STREAMER_CONFIG_DIR`` overrides it."""
    override = os.getenv("GRBL_STREAMER_CONFIG_DIR")
    if override:
        return override
    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    else:
        base = os.getenv("XDG_CONFIG_HOME")
    return os.path.join(base or os.path.expanduser("~"), "GrblStreamer")


def get_settings_path() -> str:
    """Path of the settings file, creating its directory if needed.

    Falls back to ``~/.grbl_streamer`` and then the working directory when
    the preferred directory cannot be created.
    """
    candidates = [get_default_settings_dir(), os.path.join(os.path.expanduser("~"), ".grbl_streamer")]
    for directory in candidates:
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot use settings directory {directory}: {e}")
            continue
        return os.path.join(directory, SETTINGS_FILENAME)
    return os.path.join(os.getcwd(), SETTINGS_FILENAME)


class Settings:
    """Settings store backed by a JSON file.

    Example:
        settings = Settings()
        settings.load()
        settings.set("controller.rx_buffer_size", 256)
        settings.save()
    """

    def __init__(self, filepath: Optional[str] = None):
        self.filepath = filepath or get_settings_path()
        self.data: Dict[str, Any] = _fresh_defaults()
        logger.debug(f"Settings file: {self.filepath}")

    def load(self) -> bool:
        """Read the settings file over the defaults.

        Returns:
            False if there is no file yet (defaults stay in place)

        Raises:
            SettingsLoadError: The file exists but is unreadable or not a JSON object
        """
        path = Path(self.filepath)
        if not path.exists():
            logger.info("No settings file found, using defaults")
            return False
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise SettingsLoadError(f"Invalid JSON in {path}: {e}")
        except OSError as e:
            raise SettingsLoadError(f"Cannot read {path}: {e}")
        if not isinstance(loaded, dict):
            raise SettingsLoadError(f"{path} must contain a JSON object")
        self.data = _merge(_fresh_defaults(), loaded)
        logger.info(f"Settings loaded from {path}")
        return True

    def save(self) -> None:
        """Write the settings atomically, keeping the previous file as a backup.

        Raises:
            SettingsSaveError: The file could not be written
        """
        path = Path(self.filepath)
        temp = path.with_name(path.name + SETTINGS_TEMP_SUFFIX)
        backup = path.with_name(path.name + SETTINGS_BACKUP_SUFFIX)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp.write_text(json.dumps(self.data, indent=2, sort_keys=True), encoding="utf-8")
            if path.exists():
                shutil.copy2(path, backup)
            os.replace(temp, path)
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")
            raise SettingsSaveError(f"Cannot write {path}: {e}")
        finally:
            if temp.exists():
                try:
                    temp.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove {temp}: {e}")
        logger.info(f"Settings saved to {path}")

    def get(self, key: str, default: Any = None) -> Any:
        """Value at a dotted key, or ``default`` if any part is missing."""
        node: Any = self.data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` at a dotted key, creating groups as needed."""
        *groups, leaf = key.split(".")
        node = self.data
        for part in groups:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[leaf] = value

    def get_all(self) -> Dict[str, Any]:
        """Deep copy of every setting."""
        return json.loads(json.dumps(self.data))

    def reset_to_defaults(self) -> None:
        self.data = _fresh_defaults()
        logger.info("Settings reset to defaults")

    def validate(self) -> bool:
        """Check every known setting.

        Raises:
            SettingsValidationError: Naming the first bad setting
        """
        for key, check, label in _CHECKS:
            value = self.get(key)
            if not check(value):
                raise SettingsValidationError(f"Invalid {label}: {value!r}")

        size = self.get("controller.rx_buffer_size")
        reserve = self.get("controller.rx_buffer_reserve")
        if size - reserve < 1:
            raise SettingsValidationError(
                f"RX buffer reserve {reserve} leaves nothing of {size} bytes to send"
            )

        offsets = self.get("work_offsets")
        if not isinstance(offsets, dict):
            raise SettingsValidationError("work_offsets must be a mapping")
        for name, value in offsets.items():
            if not _point(value):
                raise SettingsValidationError(f"Invalid work offset {name}: {value!r}")
        return True

    def add_recent_file(self, filepath: str) -> None:
        """Move ``filepath`` to the front of the recent files list."""
        recent = [f for f in self.data.get("recent_files", []) if f != filepath]
        recent.insert(0, filepath)
        self.data["recent_files"] = recent[: self.data.get("max_recent_files", 10)]

    def get_recent_files(self) -> List[str]:
        """Recent files that still exist."""
        return [f for f in self.data.get("recent_files", []) if os.path.exists(f)]
