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

"""GRBL response-line grammar and the machine status model.

Every line the controller sends is one of: ``ok``, ``error:<n>``,
``ALARM:<n>``, a ``<...>`` status report, the ``Grbl <version>`` boot
banner, a ``$n=value`` setting, a ``[...]`` feedback message, or free text.
Status report fields vary in order and presence with the ``$10`` mask and
firmware build; malformed fields are skipped.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

Point = tuple[float, float, float]


class MachineState(Enum):
    IDLE = "Idle"
    RUN = "Run"
    HOLD = "Hold"
    JOG = "Jog"
    ALARM = "Alarm"
    DOOR = "Door"
    CHECK = "Check"
    HOME = "Home"
    SLEEP = "Sleep"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, text: str) -> tuple["MachineState", int | None] | None:
        """Split ``Hold:1`` style text into (state, sub-state)."""
        name, _, sub = text.strip().partition(":")
        for state in cls:
            if state is not cls.UNKNOWN and state.value.lower() == name.lower():
                break
        else:
            return None
        substate = int(sub) if sub.isdigit() else None
        return state, substate

    @property
    def pauses_timeouts(self) -> bool:
        """States in which the controller legitimately stops consuming lines."""
        return self in (MachineState.HOLD, MachineState.DOOR, MachineState.SLEEP)


@dataclass(frozen=True)
class Overrides:
    feed: int = 100
    rapid: int = 100
    spindle: int = 100


@dataclass(frozen=True)
class MachineStatus:
    """Immutable snapshot of the controller as last reported."""

    state: MachineState = MachineState.UNKNOWN
    substate: int | None = None
    machine_position: Point | None = None
    work_position: Point | None = None
    work_offset: Point | None = None
    coordinate_system: str = "G54"
    overrides: Overrides = Overrides()
    feed_rate: float | None = None
    spindle_speed: float | None = None
    planner_blocks_free: int | None = None
    rx_bytes_free: int | None = None
    pins: str = ""
    accessories: str = ""
    line_number: int | None = None
    alarm_code: int | None = None
    firmware_version: str | None = None
    connected: bool = False

    def replace(self, **changes) -> "MachineStatus":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class StatusReport:
    """Fields present in one ``<...>`` report; absent fields are None."""

    state: MachineState | None
    substate: int | None = None
    machine_position: Point | None = None
    work_position: Point | None = None
    work_offset: Point | None = None
    planner_blocks_free: int | None = None
    rx_bytes_free: int | None = None
    feed_rate: float | None = None
    spindle_speed: float | None = None
    overrides: Overrides | None = None
    pins: str | None = None
    accessories: str | None = None
    line_number: int | None = None


class ResponseKind(Enum):
    OK = "ok"
    ERROR = "error"
    ALARM = "alarm"
    STATUS = "status"
    WELCOME = "welcome"
    SETTING = "setting"
    FEEDBACK = "feedback"
    MESSAGE = "message"


@dataclass(frozen=True)
class Response:
    kind: ResponseKind
    raw: str
    code: int | None = None
    status: StatusReport | None = None
    version: str | None = None
    setting: tuple[int, str] | None = None
    text: str = ""


def _parse_point(text: str) -> Point | None:
    parts = text.split(",")
    if len(parts) < 3:
        return None
    try:
        return (float(parts[0]), float(parts[1]), float(parts[2]))
    except ValueError:
        return None


def _parse_ints(text: str, count: int) -> list[int] | None:
    parts = text.split(",")
    if len(parts) < count:
        return None
    try:
        return [int(p) for p in parts[:count]]
    except ValueError:
        return None


def parse_status_report(body: str) -> StatusReport:
    """Parse the text between ``<`` and ``>``."""
    parts = body.split("|")
    parsed = MachineState.parse(parts[0]) if parts else None
    if parsed is None:
        logger.debug(f"Unknown machine state in status report: {parts[0] if parts else ''!r}")
        fields: dict[str, object] = {"state": None}
    else:
        fields = {"state": parsed[0], "substate": parsed[1]}

    for part in parts[1:]:
        key, sep, value = part.partition(":")
        if not sep:
            continue
        if key == "MPos":
            fields["machine_position"] = _parse_point(value)
        elif key == "WPos":
            fields["work_position"] = _parse_point(value)
        elif key == "WCO":
            fields["work_offset"] = _parse_point(value)
        elif key == "Bf":
            buf = _parse_ints(value, 2)
            if buf:
                fields["planner_blocks_free"], fields["rx_bytes_free"] = buf
        elif key == "F":
            try:
                fields["feed_rate"] = float(value)
            except ValueError:
                pass
        elif key == "FS":
            speeds = value.split(",")
            try:
                fields["feed_rate"] = float(speeds[0])
                if len(speeds) > 1:
                    fields["spindle_speed"] = float(speeds[1])
            except ValueError:
                pass
        elif key == "Ov":
            ov = _parse_ints(value, 3)
            if ov:
                fields["overrides"] = Overrides(*ov)
        elif key == "Pn":
            fields["pins"] = value
        elif key == "A":
            fields["accessories"] = value
        elif key == "Ln":
            if value.isdigit():
                fields["line_number"] = int(value)
        else:
            logger.debug(f"Ignoring status field {part!r}")
    return StatusReport(**fields)  # type: ignore[arg-type]


def parse_response(line: str) -> Response:
    """Classify one line received from the controller."""
    text = line.strip()
    lower = text.lower()
    if lower == "ok":
        return Response(ResponseKind.OK, text)
    if lower.startswith("error:") or lower.startswith("alarm:"):
        code_text = text[6:].strip()
        if code_text.isdigit():
            kind = ResponseKind.ERROR if lower.startswith("error:") else ResponseKind.ALARM
            return Response(kind, text, code=int(code_text))
        return Response(ResponseKind.MESSAGE, text, text=text)
    if text.startswith("<") and text.endswith(">"):
        return Response(ResponseKind.STATUS, text, status=parse_status_report(text[1:-1]))
    if text.startswith("Grbl "):
        version = text[5:].split("[", 1)[0].strip()
        return Response(ResponseKind.WELCOME, text, version=version)
    if text.startswith("$") and "=" in text:
        number, _, value = text[1:].partition("=")
        if number.isdigit():
            return Response(ResponseKind.SETTING, text, setting=(int(number), value.strip()))
    if text.startswith("[") and text.endswith("]"):
        return Response(ResponseKind.FEEDBACK, text, text=text[1:-1])
    return Response(ResponseKind.MESSAGE, text, text=text)


def split_feedback(text: str) -> tuple[str, str]:
    """``"GC:G0 G54"`` -> ``("GC", "G0 G54")``; untagged text has an empty tag."""
    tag, sep, value = text.partition(":")
    if not sep:
        return "", text
    return tag, value


def parse_parser_state(value: str) -> dict[str, str]:
    """Words from a ``[GC:...]`` report keyed by meaning.

    Only the coordinate system, units and distance mode are picked out;
    every word is also available under its own text.
    """
    result: dict[str, str] = {}
    for word in value.split():
        result[word] = word
        if word in ("G54", "G55", "G56", "G57", "G58", "G59"):
            result["coordinate_system"] = word
        elif word in ("G20", "G21"):
            result["units"] = word
        elif word in ("G90", "G91"):
            result["distance"] = word
    return result


def parse_probe(value: str) -> tuple[Point, bool] | None:
    """``[PRB:1.000,2.000,-3.000:1]`` body -> (position, success)."""
    coords, _, flag = value.rpartition(":")
    point = _parse_point(coords)
    if point is None:
        return None
    return point, flag.strip() == "1"


def work_position_from(report: StatusReport, work_offset: Point | None) -> Point | None:
    """Work position from a report, deriving it from MPos - WCO when needed."""
    if report.work_position is not None:
        return report.work_position
    if report.machine_position is None or work_offset is None:
        return None
    return tuple(m - o for m, o in zip(report.machine_position, work_offset))  # type: ignore[return-value]


def machine_position_from(report: StatusReport, work_offset: Point | None) -> Point | None:
    if report.machine_position is not None:
        return report.machine_position
    if report.work_position is None or work_offset is None:
        return None
    return tuple(w + o for w, o in zip(report.work_position, work_offset))  # type: ignore[return-value]
