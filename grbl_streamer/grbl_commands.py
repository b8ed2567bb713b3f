#!/usr/bin/env python3
# GRBL Streamer (G-code pipeline and GRBL sender)
# Copyright (C) 2026 Bob Kolbasowski
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
# Optional (not required by the license): If you make improvements, please consider
# contributing them back upstream (e.g., via a pull request) so others can benefit.
#
# SPDX-License-Identifier: GPL-3.0-or-later

"""Formatting of GRBL ``$`` system commands.

These go through the command queue like G-code lines: each one is consumed
from the RX buffer and answered with ``ok``/``error``.
"""

from __future__ import annotations

import re

from grbl_streamer.utils.exceptions import InvalidParameterError
from grbl_streamer.utils.validation import (
    validate_feed_rate,
    validate_grbl_setting,
    validate_unit_mode,
)

VIEW_SETTINGS = "$$"
VIEW_PARAMETERS = "$#"
VIEW_PARSER_STATE = "$G"
VIEW_BUILD_INFO = "$I"
VIEW_STARTUP_BLOCKS = "$N"
TOGGLE_CHECK_MODE = "$C"
KILL_ALARM_LOCK = "$X"
RUN_HOMING = "$H"
SLEEP = "$SLP"

_RESET_TARGETS = {
    "settings": "$RST=$",
    "parameters": "$RST=#",
    "all": "$RST=*",
}

# Commands GRBL still accepts while in alarm.
ALARM_SAFE_COMMANDS = frozenset({
    KILL_ALARM_LOCK,
    RUN_HOMING,
    VIEW_SETTINGS,
    VIEW_PARAMETERS,
    VIEW_PARSER_STATE,
    VIEW_BUILD_INFO,
    VIEW_STARTUP_BLOCKS,
})

# $n=value and $RST= are refused only during a cycle or hold.
_SETTING_WRITE = re.compile(r"^\$(\d+=|RST=)")


def normalize(command: str) -> str:
    return command.strip().upper()


def is_unlock(command: str) -> bool:
    """True for ``$X`` and homing (``$H``, ``$HX`` ...), both of which clear an alarm."""
    text = normalize(command)
    return text == KILL_ALARM_LOCK or text.startswith(RUN_HOMING)


def allowed_in_alarm(command: str) -> bool:
    text = normalize(command)
    return text in ALARM_SAFE_COMMANDS or is_unlock(text) or bool(_SETTING_WRITE.match(text))


def is_system_command(command: str) -> bool:
    return command.strip().startswith("$")


def is_jog(command: str) -> bool:
    return normalize(command).startswith("$J=")


def reset_command(target: str) -> str:
    """``$RST=`` command for ``"settings"``, ``"parameters"`` or ``"all"``."""
    try:
        return _RESET_TARGETS[target]
    except KeyError:
        raise ValueError(f"unknown reset target: {target}")


def set_setting(setting_id: int, value) -> str:
    """``$n=value`` after range-checking the value.

    Raises:
        InvalidParameterError: Unknown setting or non-numeric value
        InvalidRangeError: Value outside the setting's range
    """
    setting_id, checked = validate_grbl_setting(setting_id, value)
    if isinstance(checked, float) and checked.is_integer():
        checked = int(checked)
    return f"${setting_id}={checked}"


def jog(
    dx: float | None = None,
    dy: float | None = None,
    dz: float | None = None,
    feed: float = 0.0,
    unit_mode: str = "mm",
    relative: bool = True,
) -> str:
    """Jog line, e.g. ``$J=G21G91X1Y0F500``.

    Raises:
        InvalidParameterError: Bad feed rate or unit mode, or no axis given
    """
    feed = validate_feed_rate(feed)
    unit_mode = validate_unit_mode(unit_mode)
    parts = ["$J=", "G21" if unit_mode == "mm" else "G20", "G91" if relative else "G90"]
    axes = [("X", dx), ("Y", dy), ("Z", dz)]
    if all(value is None for _, value in axes):
        raise InvalidParameterError("jog", None, "at least one axis is required")
    for letter, value in axes:
        if value is not None:
            parts.append(f"{letter}{value:.4f}")
    parts.append(f"F{feed:.1f}")
    return "".join(parts)
