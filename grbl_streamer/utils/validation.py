"""Parameter checks shared by the transports, the preprocessor and the
``$`` command builders.

Each validator returns the value converted to its working type, or raises
``InvalidParameterError`` (wrong type or shape) / ``InvalidRangeError``
(right type, outside the allowed interval).
"""

from typing import Any, Callable, Tuple

from .constants import GRBL_SETTING_LIMITS, VALID_BAUD_RATES
from .exceptions import InvalidParameterError, InvalidRangeError


def _convert(name: str, value: Any, kind: Callable[[Any], Any], what: str) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, value, f"must be {what}")


def validate_feed_rate(feed: float) -> float:
    """Feed rate for jogs, in the jog's units per minute; must be positive."""
    feed = _convert("feed_rate", feed, float, "numeric")
    if feed <= 0:
        raise InvalidParameterError("feed_rate", feed, "must be positive")
    return feed


def validate_unit_mode(unit_mode: str) -> str:
    if unit_mode not in ("mm", "inch"):
        raise InvalidParameterError("unit_mode", unit_mode, "must be 'mm' or 'inch'")
    return unit_mode


def validate_grbl_setting(setting_id: int, value: Any) -> Tuple[int, float]:
    """Check a ``$n=value`` write against the known setting ranges.

    Args:
        setting_id: GRBL setting number (e.g. 110 for X max rate)
        value: New value, numeric or numeric text

    Returns:
        Tuple of (setting_id, value as float)

    Raises:
        InvalidParameterError: Unknown setting or non-numeric value
        InvalidRangeError: Value outside the setting's range
    """
    setting_id = _convert("setting_id", setting_id, int, "integer")
    limits = GRBL_SETTING_LIMITS.get(setting_id)
    if limits is None:
        raise InvalidParameterError("setting_id", setting_id, "unknown GRBL setting")
    number = _convert(f"${setting_id}", value, float, "numeric")
    low, high = limits
    if not low <= number <= high:
        raise InvalidRangeError(number, low, high)
    return setting_id, number


def validate_port_name(port: str) -> str:
    """Serial device name such as ``COM3`` or ``/dev/ttyUSB0``, stripped."""
    if not isinstance(port, str) or not port.strip():
        raise InvalidParameterError("port", port, "must be a non-empty string")
    return port.strip()


def validate_baud_rate(baud: int) -> int:
    baud = _convert("baud_rate", baud, int, "integer")
    if baud not in VALID_BAUD_RATES:
        raise InvalidParameterError("baud_rate", baud, f"must be one of {list(VALID_BAUD_RATES)}")
    return baud


def validate_tcp_port(port: int) -> int:
    port = _convert("tcp_port", port, int, "integer")
    if not 1 <= port <= 65535:
        raise InvalidRangeError(port, 1, 65535)
    return port


def validate_interval(interval: float, min_val: float = 0.0) -> float:
    """Polling or wait interval in seconds, at least ``min_val``."""
    interval = _convert("interval", interval, float, "numeric")
    if interval < min_val:
        raise InvalidRangeError(interval, min_val, "unbounded")
    return interval


def validate_tolerance(value: float, name: str = "tolerance") -> float:
    """Strictly positive length in mm (arc tolerance, radius epsilon)."""
    value = _convert(name, value, float, "numeric")
    if not value > 0:
        raise InvalidParameterError(name, value, "must be positive")
    return value
