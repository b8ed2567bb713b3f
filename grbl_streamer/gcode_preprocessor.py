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

"""Turn parsed commands into machine-space segments and outbound lines.

The preprocessor tracks the machine position (millimetres, machine
coordinates) plus every offset GRBL applies: the G54-G59 work offsets, the
G92 offset and the G43.1 tool length offset. Relative moves always build on
the last emitted position, so a jog reported through ``sync_position`` keeps
later G91 moves in step with the machine.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Mapping, Sequence, Union

from grbl_streamer.gcode_parser import (
    AXIS_WORDS,
    Command,
    CoordinateSystem,
    DistanceMode,
    ArcDistanceMode,
    FeedMode,
    ModalState,
    MotionMode,
    Plane,
    format_word,
)
from grbl_streamer.utils.constants import (
    ARC_RADIUS_EPSILON_DEFAULT,
    ARC_RADIUS_RATIO_DEFAULT,
    ARC_TOLERANCE_DEFAULT,
    OUTPUT_DECIMALS_DEFAULT,
    POSITION_EPSILON,
)
from grbl_streamer.utils.exceptions import GeometryError
from grbl_streamer.utils.validation import validate_tolerance

logger = logging.getLogger(__name__)

Point = tuple[float, float, float]

# GRBL's in-plane axis order: (axis_0, axis_1, linear axis).
PLANE_AXES: dict[Plane, tuple[int, int, int]] = {
    Plane.XY: (0, 1, 2),
    Plane.XZ: (2, 0, 1),
    Plane.YZ: (1, 2, 0),
}
_OFFSET_LETTERS = ("I", "J", "K")

# Angular travel below this is treated as a full circle, as GRBL does.
_ANGULAR_EPSILON = 5e-7


class SegmentKind(Enum):
    RAPID = "rapid"
    LINE = "line"
    ARC_CHORD = "arc_chord"


@dataclass(frozen=True)
class Segment:
    """Straight move in machine coordinates (mm); feed rate in mm/min."""

    kind: SegmentKind
    start: Point
    end: Point
    feed_rate: float | None
    index: int
    line_index: int

    @property
    def length(self) -> float:
        return math.dist(self.start, self.end)


@dataclass(frozen=True)
class ArcPath:
    """Chord expansion of one arc.

    Iterating recomputes the chords each time, so the same path can be
    walked any number of times; ``len()`` is known up front.
    """

    start: Point
    end: Point
    center: tuple[float, float]
    axes: tuple[int, int, int]
    radius: float
    sweep: float
    clockwise: bool
    count: int
    feed_rate: float | None
    first_index: int
    line_index: int

    def __len__(self) -> int:
        return self.count

    @property
    def length(self) -> float:
        """Path length including any helical travel."""
        lin = self.axes[2]
        return math.hypot(self.radius * self.sweep, self.end[lin] - self.start[lin])

    @property
    def max_deviation(self) -> float:
        """Largest distance between any chord and the true arc."""
        return self.radius * (1.0 - math.cos(self.sweep / (2 * self.count)))

    def points(self) -> Iterator[Point]:
        """Chord end points, the last one exactly the commanded end."""
        a0, a1, lin = self.axes
        c0, c1 = self.center
        start_angle = math.atan2(self.start[a1] - c1, self.start[a0] - c0)
        direction = -1.0 if self.clockwise else 1.0
        lin_delta = self.end[lin] - self.start[lin]
        for i in range(1, self.count):
            t = i / self.count
            angle = start_angle + direction * self.sweep * t
            point = [0.0, 0.0, 0.0]
            point[a0] = c0 + self.radius * math.cos(angle)
            point[a1] = c1 + self.radius * math.sin(angle)
            point[lin] = self.start[lin] + lin_delta * t
            yield (point[0], point[1], point[2])
        yield self.end

    def __iter__(self) -> Iterator[Segment]:
        prev = self.start
        for i, point in enumerate(self.points()):
            yield Segment(
                SegmentKind.ARC_CHORD,
                prev,
                point,
                self.feed_rate,
                self.first_index + i,
                self.line_index,
            )
            prev = point


Motion = Union[Segment, ArcPath]


@dataclass(frozen=True)
class Step:
    """Everything one command produced."""

    command: Command
    motions: tuple[Motion, ...] = ()
    outbound: tuple[str, ...] = ()

    def segments(self) -> Iterator[Segment]:
        for motion in self.motions:
            if isinstance(motion, ArcPath):
                yield from motion
            else:
                yield motion


def _format_float(value: float, max_decimals: int) -> str:
    text = f"{value:.{max_decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def chord_count(radius: float, sweep: float, tolerance: float) -> int:
    """Smallest chord count keeping every chord within ``tolerance`` of the arc."""
    if tolerance >= radius:
        max_angle = math.pi
    else:
        max_angle = 2.0 * math.acos(1.0 - tolerance / radius)
    return max(1, math.ceil(sweep / max_angle))


def _arc_sweep(
    u0: float, v0: float, u1: float, v1: float, cu: float, cv: float, cw: bool
) -> float:
    start_ang = math.atan2(v0 - cv, u0 - cu)
    end_ang = math.atan2(v1 - cv, u1 - cu)
    if cw:
        return (start_ang - end_ang) % (2 * math.pi)
    return (end_ang - start_ang) % (2 * math.pi)


class Preprocessor:
    """Stateful command-to-segment converter for one pass over a program.

    Args:
        arc_tolerance: Maximum chord deviation from the true arc (mm)
        radius_epsilon: Absolute start/end radius mismatch allowed (mm)
        radius_ratio: Mismatch allowed as a fraction of the radius
        work_offsets: G54-G59 offsets in mm, keyed by coordinate system
            (enum member or ``"G54"`` style name)
        stored_positions: G28/G30 machine positions keyed ``"G28"``/``"G30"``
        arcs_as_lines: Send arcs as G1 chord lines instead of G2/G3
        decimals: Decimal places for generated coordinates
        start: Initial machine position
    """

    def __init__(
        self,
        arc_tolerance: float = ARC_TOLERANCE_DEFAULT,
        radius_epsilon: float = ARC_RADIUS_EPSILON_DEFAULT,
        radius_ratio: float = ARC_RADIUS_RATIO_DEFAULT,
        work_offsets: Mapping[CoordinateSystem | str, Sequence[float]] | None = None,
        stored_positions: Mapping[str, Sequence[float]] | None = None,
        arcs_as_lines: bool = False,
        decimals: int = OUTPUT_DECIMALS_DEFAULT,
        start: Sequence[float] = (0.0, 0.0, 0.0),
    ):
        self.arc_tolerance = validate_tolerance(arc_tolerance, "arc_tolerance")
        self.radius_epsilon = validate_tolerance(radius_epsilon, "radius_epsilon")
        self.radius_ratio = validate_tolerance(radius_ratio, "radius_ratio")
        self.arcs_as_lines = bool(arcs_as_lines)
        self.decimals = int(decimals)
        self._initial_offsets = dict(work_offsets or {})
        self._initial_stored = dict(stored_positions or {})
        self._initial_start = tuple(float(v) for v in start)
        self.reset()

    @classmethod
    def from_settings(cls, settings, **overrides) -> "Preprocessor":
        """Build from a ``Settings`` store (``gcode.*`` and ``work_offsets`` keys)."""
        options = {
            "arc_tolerance": settings.get("gcode.arc_tolerance", ARC_TOLERANCE_DEFAULT),
            "radius_epsilon": settings.get("gcode.arc_radius_epsilon", ARC_RADIUS_EPSILON_DEFAULT),
            "radius_ratio": settings.get("gcode.arc_radius_ratio", ARC_RADIUS_RATIO_DEFAULT),
            "arcs_as_lines": settings.get("gcode.arcs_as_lines", False),
            "decimals": settings.get("gcode.output_decimals", OUTPUT_DECIMALS_DEFAULT),
            "work_offsets": settings.get("work_offsets") or None,
        }
        options.update(overrides)
        return cls(**options)

    def reset(self) -> None:
        """Return to the state given at construction."""
        self._offsets: dict[CoordinateSystem, list[float]] = {
            cs: [0.0, 0.0, 0.0] for cs in CoordinateSystem
        }
        for key, value in self._initial_offsets.items():
            cs = key if isinstance(key, CoordinateSystem) else CoordinateSystem(str(key).upper())
            self._offsets[cs] = [float(v) for v in value]
        self._stored = {"G28": [0.0, 0.0, 0.0], "G30": [0.0, 0.0, 0.0]}
        for key, value in self._initial_stored.items():
            self._stored[str(key).upper()] = [float(v) for v in value]
        self._g92 = [0.0, 0.0, 0.0]
        self._position = list(self._initial_start)
        self._next_index = 0

    @property
    def position(self) -> Point:
        """Last emitted machine position (mm)."""
        return (self._position[0], self._position[1], self._position[2])

    @property
    def g92_offset(self) -> Point:
        return (self._g92[0], self._g92[1], self._g92[2])

    def work_offset(self, cs: CoordinateSystem) -> Point:
        value = self._offsets[cs]
        return (value[0], value[1], value[2])

    def stored_position(self, code: str) -> Point:
        value = self._stored[code]
        return (value[0], value[1], value[2])

    def sync_position(self, position: Sequence[float]) -> None:
        """Adopt a machine position reached outside the program (jog, probe)."""
        self._position = [float(v) for v in position]

    def work_position(self, modal: ModalState) -> Point:
        offset = self._program_offset(modal)
        return tuple(p - o for p, o in zip(self._position, offset))  # type: ignore[return-value]

    def _program_offset(self, modal: ModalState) -> list[float]:
        wcs = self._offsets[modal.coordinate_system]
        offset = [wcs[i] + self._g92[i] for i in range(3)]
        offset[2] += modal.tool_length_offset
        return offset

    def process(self, commands: Iterable[Command]) -> Iterator[Step]:
        for command in commands:
            yield self.step(command)

    def segments(self, commands: Iterable[Command]) -> Iterator[Segment]:
        for command in commands:
            yield from self.step(command).segments()

    def step(self, command: Command) -> Step:
        """Apply one command.

        Raises:
            GeometryError: Arc that cannot be realised. The position still
                moves to the commanded end point so later lines stay usable.
        """
        motions: list[Motion] = []
        non_modal = command.non_modal
        if non_modal == "G10":
            self._set_work_offset(command)
        elif non_modal in ("G28", "G30"):
            motions.extend(self._go_stored(command, non_modal))
        elif non_modal in ("G28.1", "G30.1"):
            self._stored[non_modal[:3]] = list(self._position)
        elif non_modal == "G92":
            self._set_g92(command)
        elif non_modal == "G92.1":
            self._g92 = [0.0, 0.0, 0.0]

        if command.moves:
            target = self._target(command)
            if command.modal.motion.is_arc:
                try:
                    motions.append(self._arc(command, target))
                except GeometryError:
                    self._position = list(target)
                    raise
            else:
                segment = self._line(command, target)
                if segment is not None:
                    motions.append(segment)

        return Step(command, tuple(motions), self._outbound(command, motions))

    # -- coordinates -------------------------------------------------------

    def _target(self, command: Command) -> Point:
        modal = command.modal
        scale = modal.units_scale
        offset = self._program_offset(modal)
        target = list(self._position)
        for i, axis in enumerate(AXIS_WORDS):
            value = command.get(axis)
            if value is None:
                continue
            value *= scale
            if command.non_modal == "G53":
                target[i] = value
            elif modal.distance is DistanceMode.RELATIVE:
                target[i] = self._position[i] + value
            else:
                target[i] = value + offset[i]
        return (target[0], target[1], target[2])

    def _set_work_offset(self, command: Command) -> None:
        modal = command.modal
        p = int(command.get("P", 0))
        cs = modal.coordinate_system if p == 0 else CoordinateSystem.from_number(p)
        offset = self._offsets[cs]
        scale = modal.units_scale
        for i, axis in enumerate(AXIS_WORDS):
            value = command.get(axis)
            if value is None:
                continue
            value *= scale
            if command.get("L") == 20:
                # Make the current position read as the given value.
                tlo = modal.tool_length_offset if i == 2 else 0.0
                offset[i] = self._position[i] - self._g92[i] - tlo - value
            else:
                offset[i] = value
        logger.debug(f"Work offset {cs.value} set to {offset}")

    def _set_g92(self, command: Command) -> None:
        modal = command.modal
        wcs = self._offsets[modal.coordinate_system]
        for i, axis in enumerate(AXIS_WORDS):
            value = command.get(axis)
            if value is None:
                continue
            tlo = modal.tool_length_offset if i == 2 else 0.0
            self._g92[i] = self._position[i] - wcs[i] - tlo - value * modal.units_scale

    def _go_stored(self, command: Command, code: str) -> list[Segment]:
        segments = []
        stored = list(self._stored[code])
        if command.has_axis_words:
            intermediate = self._target(command)
            segment = self._line(command, intermediate, SegmentKind.RAPID)
            if segment is not None:
                segments.append(segment)
            # Only the named axes continue to the stored position.
            for i, axis in enumerate(AXIS_WORDS):
                if command.get(axis) is None:
                    stored[i] = self._position[i]
        segment = self._line(command, (stored[0], stored[1], stored[2]), SegmentKind.RAPID)
        if segment is not None:
            segments.append(segment)
        return segments

    # -- motion ------------------------------------------------------------

    def _feed_rate(self, command: Command, length: float) -> float | None:
        modal = command.modal
        if modal.motion is MotionMode.RAPID or modal.feed_rate is None:
            return None
        if modal.feed_mode is FeedMode.INVERSE_TIME:
            return length * modal.feed_rate
        return modal.feed_rate * modal.units_scale

    def _line(
        self,
        command: Command,
        target: Point,
        kind: SegmentKind | None = None,
    ) -> Segment | None:
        start = self.position
        self._position = list(target)
        if math.dist(start, target) < POSITION_EPSILON:
            return None
        if kind is None:
            kind = SegmentKind.RAPID if command.modal.motion is MotionMode.RAPID else SegmentKind.LINE
        feed = None if kind is SegmentKind.RAPID else self._feed_rate(command, math.dist(start, target))
        segment = Segment(kind, start, target, feed, self._next_index, command.line_index)
        self._next_index += 1
        return segment

    def _geometry_error(self, command: Command, message: str) -> GeometryError:
        return GeometryError(message, command.line_index, command.raw)

    def _arc(self, command: Command, target: Point) -> ArcPath:
        modal = command.modal
        scale = modal.units_scale
        a0, a1, lin = PLANE_AXES[modal.plane]
        start = self.position
        cw = modal.motion is MotionMode.ARC_CW
        chord = math.hypot(target[a0] - start[a0], target[a1] - start[a1])

        r_word = command.get("R")
        if r_word is not None:
            if chord < POSITION_EPSILON:
                raise self._geometry_error(command, "radius-format arc cannot be a full circle")
            center, sweep = self._center_from_radius(command, start, target, r_word * scale, cw)
            radius = abs(r_word * scale)
        else:
            letters = (_OFFSET_LETTERS[a0], _OFFSET_LETTERS[a1])
            off0 = (command.get(letters[0]) or 0.0) * scale
            off1 = (command.get(letters[1]) or 0.0) * scale
            if modal.arc_distance is ArcDistanceMode.ABSOLUTE:
                offset = self._program_offset(modal)
                center = (off0 + offset[a0], off1 + offset[a1])
            else:
                center = (start[a0] + off0, start[a1] + off1)
            radius = math.hypot(start[a0] - center[0], start[a1] - center[1])
            if radius < self.radius_epsilon:
                raise self._geometry_error(command, "arc radius is zero")
            end_radius = math.hypot(target[a0] - center[0], target[a1] - center[1])
            limit = max(self.radius_epsilon, self.radius_ratio * radius)
            if abs(end_radius - radius) > limit:
                raise self._geometry_error(
                    command,
                    f"arc end radius {end_radius:.4f} differs from start radius "
                    f"{radius:.4f} by more than {limit:.4f} mm",
                )
            if chord < POSITION_EPSILON:
                sweep = 2 * math.pi
            else:
                sweep = _arc_sweep(start[a0], start[a1], target[a0], target[a1],
                                   center[0], center[1], cw)
                if sweep < _ANGULAR_EPSILON:
                    sweep += 2 * math.pi

        count = chord_count(radius, sweep, self.arc_tolerance)
        length = math.hypot(radius * sweep, target[lin] - start[lin])
        path = ArcPath(
            start=start,
            end=target,
            center=center,
            axes=(a0, a1, lin),
            radius=radius,
            sweep=sweep,
            clockwise=cw,
            count=count,
            feed_rate=self._feed_rate(command, length),
            first_index=self._next_index,
            line_index=command.line_index,
        )
        self._next_index += count
        self._position = list(target)
        return path

    def _center_from_radius(
        self,
        command: Command,
        start: Point,
        target: Point,
        r: float,
        cw: bool,
    ) -> tuple[tuple[float, float], float]:
        a0, a1, _ = PLANE_AXES[command.modal.plane]
        r_abs = abs(r)
        if r_abs < self.radius_epsilon:
            raise self._geometry_error(command, "arc radius is zero")
        du = target[a0] - start[a0]
        dv = target[a1] - start[a1]
        d = math.hypot(du, dv)
        half = d / 2.0
        if half > r_abs:
            if half - r_abs > self.radius_epsilon:
                raise self._geometry_error(
                    command,
                    f"arc radius {r_abs:.4f} is too small for a {d:.4f} mm chord",
                )
            h = 0.0
        else:
            h = math.sqrt(r_abs * r_abs - half * half)
        um = (start[a0] + target[a0]) / 2.0
        vm = (start[a1] + target[a1]) / 2.0
        ux = -dv / d
        uy = du / d
        candidates = [(um + ux * h, vm + uy * h), (um - ux * h, vm - uy * h)]
        sweeps = [
            _arc_sweep(start[a0], start[a1], target[a0], target[a1], cu, cv, cw)
            for cu, cv in candidates
        ]
        # Positive R takes the shorter arc, negative R the longer one.
        pick = min if r > 0 else max
        idx = sweeps.index(pick(sweeps))
        return candidates[idx], sweeps[idx]

    # -- outbound text -----------------------------------------------------

    def _outbound(self, command: Command, motions: list[Motion]) -> tuple[str, ...]:
        if command.is_blank:
            return ()
        modal = command.modal
        if (
            self.arcs_as_lines
            and command.moves
            and modal.motion.is_arc
            and motions
            and isinstance(motions[-1], ArcPath)
        ):
            return self._arc_lines(command, motions[-1])

        return ("".join(format_word(w) for w in command.words),)

    def _arc_lines(self, command: Command, path: ArcPath) -> tuple[str, ...]:
        modal = command.modal
        skip = set(AXIS_WORDS) | {"I", "J", "K", "R", "F"}
        prefix = "".join(
            format_word(w)
            for w in command.words
            if w.letter not in skip
            and not (w.letter == "G" and w.value in (2, 3))
        )
        lines = [prefix] if prefix else []

        scale = modal.units_scale
        relative = modal.distance is DistanceMode.RELATIVE
        offset = self._program_offset(modal)
        inverse_time = modal.feed_mode is FeedMode.INVERSE_TIME
        linear = path.axes[2]
        emitted = list(path.start)
        for i, point in enumerate(path.points()):
            parts = ["G1"] if i == 0 else []
            for axis_idx, axis in enumerate(AXIS_WORDS):
                delta = point[axis_idx] - emitted[axis_idx]
                if axis_idx == linear and abs(delta) < POSITION_EPSILON:
                    continue
                if relative:
                    text = _format_float(delta / scale, self.decimals)
                    # Track what the controller will actually add up.
                    emitted[axis_idx] += float(text) * scale
                else:
                    text = _format_float((point[axis_idx] - offset[axis_idx]) / scale, self.decimals)
                    emitted[axis_idx] = point[axis_idx]
                parts.append(f"{axis}{text}")
            if inverse_time and modal.feed_rate:
                parts.append(f"F{_format_float(modal.feed_rate * path.count, self.decimals)}")
            elif i == 0 and command.has("F"):
                parts.append(f"F{_format_float(modal.feed_rate or 0.0, self.decimals)}")
            lines.append("".join(parts))
        return tuple(lines)
