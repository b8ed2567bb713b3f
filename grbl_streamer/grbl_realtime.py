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

"""GRBL real-time command bytes.

Real-time commands are single bytes picked out of the serial stream by the
controller as they arrive. They are never newline terminated, never queued
and never counted against the RX buffer budget.
"""

from __future__ import annotations

from enum import Enum

from grbl_streamer.grbl_responses import Overrides
from grbl_streamer.utils.constants import (
    RT_COOLANT_FLOOD,
    RT_COOLANT_MIST,
    RT_FO_MINUS_1,
    RT_FO_MINUS_10,
    RT_FO_PLUS_1,
    RT_FO_PLUS_10,
    RT_FO_RESET,
    RT_HOLD,
    RT_JOG_CANCEL,
    RT_RESET,
    RT_RESUME,
    RT_RO_25,
    RT_RO_50,
    RT_RO_RESET,
    RT_SAFETY_DOOR,
    RT_SO_MINUS_1,
    RT_SO_MINUS_10,
    RT_SO_PLUS_1,
    RT_SO_PLUS_10,
    RT_SO_RESET,
    RT_SO_STOP,
    RT_STATUS,
)

# GRBL 1.1 override limits (percent).
FEED_OVERRIDE_MIN = 10
FEED_OVERRIDE_MAX = 200
SPINDLE_OVERRIDE_MIN = 10
SPINDLE_OVERRIDE_MAX = 200


class RealtimeCommand(Enum):
    STATUS = RT_STATUS
    CYCLE_START = RT_RESUME
    FEED_HOLD = RT_HOLD
    SOFT_RESET = RT_RESET
    SAFETY_DOOR = RT_SAFETY_DOOR
    JOG_CANCEL = RT_JOG_CANCEL
    FEED_RESET = RT_FO_RESET
    FEED_PLUS_10 = RT_FO_PLUS_10
    FEED_MINUS_10 = RT_FO_MINUS_10
    FEED_PLUS_1 = RT_FO_PLUS_1
    FEED_MINUS_1 = RT_FO_MINUS_1
    RAPID_100 = RT_RO_RESET
    RAPID_50 = RT_RO_50
    RAPID_25 = RT_RO_25
    SPINDLE_RESET = RT_SO_RESET
    SPINDLE_PLUS_10 = RT_SO_PLUS_10
    SPINDLE_MINUS_10 = RT_SO_MINUS_10
    SPINDLE_PLUS_1 = RT_SO_PLUS_1
    SPINDLE_MINUS_1 = RT_SO_MINUS_1
    SPINDLE_STOP = RT_SO_STOP
    COOLANT_FLOOD = RT_COOLANT_FLOOD
    COOLANT_MIST = RT_COOLANT_MIST

    @property
    def byte(self) -> bytes:
        return self.value

    @property
    def is_override(self) -> bool:
        if self is RealtimeCommand.FEED_HOLD:
            return False
        return self.name.startswith(("FEED_", "RAPID_", "SPINDLE_"))


REALTIME_BYTES = frozenset(cmd.value for cmd in RealtimeCommand)

_FEED_STEPS = {
    RealtimeCommand.FEED_PLUS_10: 10,
    RealtimeCommand.FEED_MINUS_10: -10,
    RealtimeCommand.FEED_PLUS_1: 1,
    RealtimeCommand.FEED_MINUS_1: -1,
}
_SPINDLE_STEPS = {
    RealtimeCommand.SPINDLE_PLUS_10: 10,
    RealtimeCommand.SPINDLE_MINUS_10: -10,
    RealtimeCommand.SPINDLE_PLUS_1: 1,
    RealtimeCommand.SPINDLE_MINUS_1: -1,
}
_RAPID_LEVELS = {
    RealtimeCommand.RAPID_100: 100,
    RealtimeCommand.RAPID_50: 50,
    RealtimeCommand.RAPID_25: 25,
}


def is_realtime_byte(data: bytes) -> bool:
    return data in REALTIME_BYTES


def expected_overrides(current: Overrides, command: RealtimeCommand) -> Overrides:
    """Override values the controller should report after ``command``.

    Used only as a hint until the next status report arrives.
    """
    feed, rapid, spindle = current.feed, current.rapid, current.spindle
    if command is RealtimeCommand.FEED_RESET:
        feed = 100
    elif command in _FEED_STEPS:
        feed = min(FEED_OVERRIDE_MAX, max(FEED_OVERRIDE_MIN, feed + _FEED_STEPS[command]))
    elif command in _RAPID_LEVELS:
        rapid = _RAPID_LEVELS[command]
    elif command is RealtimeCommand.SPINDLE_RESET:
        spindle = 100
    elif command in _SPINDLE_STEPS:
        spindle = min(
            SPINDLE_OVERRIDE_MAX,
            max(SPINDLE_OVERRIDE_MIN, spindle + _SPINDLE_STEPS[command]),
        )
    return Overrides(feed=feed, rapid=rapid, spindle=spindle)


def override_commands(kind: str, delta: int) -> list[RealtimeCommand]:
    """Break a feed or spindle override change (percent) into coarse and fine steps.

    ``override_commands("feed", 23)`` gives two +10 steps and three +1 steps.
    """
    if kind == "feed":
        coarse_up, coarse_down = RealtimeCommand.FEED_PLUS_10, RealtimeCommand.FEED_MINUS_10
        fine_up, fine_down = RealtimeCommand.FEED_PLUS_1, RealtimeCommand.FEED_MINUS_1
    elif kind == "spindle":
        coarse_up, coarse_down = RealtimeCommand.SPINDLE_PLUS_10, RealtimeCommand.SPINDLE_MINUS_10
        fine_up, fine_down = RealtimeCommand.SPINDLE_PLUS_1, RealtimeCommand.SPINDLE_MINUS_1
    else:
        raise ValueError(f"unknown override kind: {kind}")
    coarse, fine = divmod(abs(int(delta)), 10)
    if delta >= 0:
        return [coarse_up] * coarse + [fine_up] * fine
    return [coarse_down] * coarse + [fine_down] * fine


def rapid_command(percent: int) -> RealtimeCommand:
    for command, level in _RAPID_LEVELS.items():
        if level == percent:
            return command
    raise ValueError(f"rapid override must be 100, 50 or 25, not {percent}")
