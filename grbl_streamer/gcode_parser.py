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

"""Modal G-code parser.

``parse_line`` takes one line's tokens plus the modal state in force before
the line and returns the parsed :class:`Command` together with the modal
state after it. Modal state is an immutable value threaded from line to line.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Sequence

from grbl_streamer.gcode_tokenizer import (
    Checksum,
    Comment,
    LineNumber,
    Token,
    Word,
    tokenize_line,
)
from grbl_streamer.utils.constants import MM_PER_INCH
from grbl_streamer.utils.exceptions import ParseError

logger = logging.getLogger(__name__)

AXIS_WORDS = ("X", "Y", "Z")
OFFSET_WORDS = ("I", "J", "K")
UNSUPPORTED_AXIS_WORDS = ("A", "B", "C", "U", "V", "W")
PARAMETER_WORDS = AXIS_WORDS + OFFSET_WORDS + ("F", "S", "P", "R", "L", "T")


class MotionMode(Enum):
    RAPID = "G0"
    LINEAR = "G1"
    ARC_CW = "G2"
    ARC_CCW = "G3"
    PROBE_TOWARD = "G38.2"
    PROBE_TOWARD_NO_ERROR = "G38.3"
    PROBE_AWAY = "G38.4"
    PROBE_AWAY_NO_ERROR = "G38.5"
    NONE = "G80"

    @property
    def is_arc(self) -> bool:
        return self in (MotionMode.ARC_CW, MotionMode.ARC_CCW)

    @property
    def is_probe(self) -> bool:
        return self.value.startswith("G38")

    @property
    def needs_feed(self) -> bool:
        return self not in (MotionMode.RAPID, MotionMode.NONE)


class Plane(Enum):
    XY = "G17"
    XZ = "G18"
    YZ = "G19"


class Units(Enum):
    INCH = "G20"
    MM = "G21"

    @property
    def scale(self) -> float:
        """Factor converting this unit to millimetres."""
        return MM_PER_INCH if self is Units.INCH else 1.0


class DistanceMode(Enum):
    ABSOLUTE = "G90"
    RELATIVE = "G91"


class ArcDistanceMode(Enum):
    ABSOLUTE = "G90.1"
    INCREMENTAL = "G91.1"


class FeedMode(Enum):
    INVERSE_TIME = "G93"
    UNITS_PER_MINUTE = "G94"


class CoordinateSystem(Enum):
    G54 = "G54"
    G55 = "G55"
    G56 = "G56"
    G57 = "G57"
    G58 = "G58"
    G59 = "G59"

    @property
    def number(self) -> int:
        """1-based index as used by ``G10 L2 P<n>``."""
        return int(self.value[1:]) - 53

    @classmethod
    def from_number(cls, number: int) -> "CoordinateSystem":
        return list(cls)[number - 1]


class SpindleState(Enum):
    CW = "M3"
    CCW = "M4"
    OFF = "M5"


@dataclass(frozen=True)
class ModalState:
    """Parser context carried from line to line.

    ``feed_rate`` is expressed in the active program units;
    ``tool_length_offset`` is always millimetres.
    """

    motion: MotionMode = MotionMode.NONE
    plane: Plane = Plane.XY
    units: Units = Units.MM
    distance: DistanceMode = DistanceMode.ABSOLUTE
    arc_distance: ArcDistanceMode = ArcDistanceMode.INCREMENTAL
    feed_mode: FeedMode = FeedMode.UNITS_PER_MINUTE
    coordinate_system: CoordinateSystem = CoordinateSystem.G54
    feed_rate: float | None = None
    spindle_speed: float | None = None
    spindle: SpindleState = SpindleState.OFF
    mist: bool = False
    flood: bool = False
    tool: int | None = None
    tool_length_offset: float = 0.0

    @property
    def units_scale(self) -> float:
        return self.units.scale

    def replace(self, **changes) -> "ModalState":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Command:
    """One parsed line of G-code."""

    line_index: int
    raw: str
    modal: ModalState
    words: tuple[Word, ...] = ()
    line_number: int | None = None
    comments: tuple[str, ...] = ()
    motion_word: MotionMode | None = None
    non_modal: str | None = None
    stop: str | None = None
    checksum_ok: bool | None = None
    params: dict[str, float] = field(default_factory=dict, compare=False)

    @property
    def motion(self) -> MotionMode:
        return self.modal.motion

    @property
    def feed(self) -> float | None:
        return self.modal.feed_rate

    @property
    def is_blank(self) -> bool:
        return not self.words

    def get(self, letter: str, default: float | None = None) -> float | None:
        return self.params.get(letter, default)

    def has(self, *letters: str) -> bool:
        return any(letter in self.params for letter in letters)

    @property
    def has_axis_words(self) -> bool:
        return self.has(*AXIS_WORDS)

    @property
    def axis_consumer(self) -> str | None:
        """Code that takes this line's axis words instead of the motion mode."""
        if self.non_modal in ("G10", "G28", "G30", "G92"):
            return self.non_modal
        if self.has_code("G43.1"):
            return "G43.1"
        return None

    @property
    def moves(self) -> bool:
        """True when the line executes the active motion mode."""
        if self.modal.motion is MotionMode.NONE or self.axis_consumer is not None:
            return False
        return self.has_axis_words

    def has_code(self, code: str) -> bool:
        letter, number = code[0], float(code[1:])
        return any(
            w.letter == letter and math.isclose(w.value, number, abs_tol=1e-6)
            for w in self.words
        )


# Codes keyed by ``round(value * 10)`` so G38.2 -> 382 and G90.1 -> 901.
_G_CODES: dict[int, tuple[str, object]] = {
    0: ("motion", MotionMode.RAPID),
    10: ("motion", MotionMode.LINEAR),
    20: ("motion", MotionMode.ARC_CW),
    30: ("motion", MotionMode.ARC_CCW),
    382: ("motion", MotionMode.PROBE_TOWARD),
    383: ("motion", MotionMode.PROBE_TOWARD_NO_ERROR),
    384: ("motion", MotionMode.PROBE_AWAY),
    385: ("motion", MotionMode.PROBE_AWAY_NO_ERROR),
    800: ("motion", MotionMode.NONE),
    170: ("plane", Plane.XY),
    180: ("plane", Plane.XZ),
    190: ("plane", Plane.YZ),
    200: ("units", Units.INCH),
    210: ("units", Units.MM),
    900: ("distance", DistanceMode.ABSOLUTE),
    910: ("distance", DistanceMode.RELATIVE),
    901: ("arc_distance", ArcDistanceMode.ABSOLUTE),
    911: ("arc_distance", ArcDistanceMode.INCREMENTAL),
    930: ("feed_mode", FeedMode.INVERSE_TIME),
    940: ("feed_mode", FeedMode.UNITS_PER_MINUTE),
    540: ("coordinate_system", CoordinateSystem.G54),
    550: ("coordinate_system", CoordinateSystem.G55),
    560: ("coordinate_system", CoordinateSystem.G56),
    570: ("coordinate_system", CoordinateSystem.G57),
    580: ("coordinate_system", CoordinateSystem.G58),
    590: ("coordinate_system", CoordinateSystem.G59),
    400: ("cutter_compensation", "G40"),
    431: ("tool_length", "G43.1"),
    490: ("tool_length", "G49"),
    610: ("path_control", "G61"),
    40: ("non_modal", "G4"),
    100: ("non_modal", "G10"),
    280: ("non_modal", "G28"),
    281: ("non_modal", "G28.1"),
    300: ("non_modal", "G30"),
    301: ("non_modal", "G30.1"),
    530: ("non_modal", "G53"),
    920: ("non_modal", "G92"),
    921: ("non_modal", "G92.1"),
}

_M_CODES: dict[int, tuple[str, str]] = {
    0: ("stop", "M0"),
    1: ("stop", "M1"),
    2: ("stop", "M2"),
    30: ("stop", "M30"),
    3: ("spindle", "M3"),
    4: ("spindle", "M4"),
    5: ("spindle", "M5"),
    7: ("coolant", "M7"),
    8: ("coolant", "M8"),
    9: ("coolant", "M9"),
}

# Program end (M2/M30) restores these, as GRBL does.
_PROGRAM_END_RESET = {
    "motion": MotionMode.LINEAR,
    "plane": Plane.XY,
    "distance": DistanceMode.ABSOLUTE,
    "feed_mode": FeedMode.UNITS_PER_MINUTE,
    "coordinate_system": CoordinateSystem.G54,
    "spindle": SpindleState.OFF,
    "mist": False,
    "flood": False,
}

_PLANE_OFFSETS = {
    Plane.XY: ("I", "J"),
    Plane.XZ: ("K", "I"),
    Plane.YZ: ("J", "K"),
}
_PLANE_AXES = {
    Plane.XY: ("X", "Y"),
    Plane.XZ: ("Z", "X"),
    Plane.YZ: ("Y", "Z"),
}


def compute_checksum(text: str) -> int:
    """XOR of every byte before the ``*`` marker."""
    value = 0
    for ch in text.split("*", 1)[0].encode("ascii", errors="replace"):
        value ^= ch
    return value


def _code_key(value: float) -> int | None:
    scaled = value * 10.0
    key = round(scaled)
    if abs(scaled - key) > 1e-6:
        return None
    return key


def _format_code(letter: str, value: float) -> str:
    if float(value).is_integer():
        return f"{letter}{int(value)}"
    return f"{letter}{value:g}"


class _LineParser:
    """Single-use helper holding the per-line bookkeeping."""

    def __init__(self, modal: ModalState, line_index: int, raw: str):
        self.before = modal
        self.line_index = line_index
        self.raw = raw
        self.groups: dict[str, Word] = {}
        self.coolant: list[str] = []
        self.params: dict[str, float] = {}
        self.words: list[Word] = []
        self.comments: list[str] = []
        self.line_number: int | None = None
        self.checksum: int | None = None

    def fail(self, message: str, word: Word | str | None = None) -> ParseError:
        return ParseError(
            message,
            str(word) if word is not None else None,
            self.line_index,
            self.raw,
        )

    def claim(self, group: str, word: Word) -> None:
        other = self.groups.get(group)
        if other is not None:
            raise self.fail(
                f"modal group conflict: {other} and {word} on one line ({group})",
                word,
            )
        self.groups[group] = word

    def collect(self, tokens: Sequence[Token]) -> None:
        for token in tokens:
            if isinstance(token, Comment):
                self.comments.append(token.text)
            elif isinstance(token, LineNumber):
                if self.line_number is not None or self.words:
                    raise self.fail("line number must come first", f"N{token.number}")
                self.line_number = token.number
            elif isinstance(token, Checksum):
                self.checksum = token.value
            elif isinstance(token, Word):
                self._collect_word(token)

    def _collect_word(self, word: Word) -> None:
        letter = word.letter
        self.words.append(word)
        if letter == "G":
            key = _code_key(word.value)
            entry = _G_CODES.get(key) if key is not None else None
            if entry is None:
                raise self.fail(f"unsupported G-code {word}", word)
            self.claim(entry[0], word)
            return
        if letter == "M":
            key = _code_key(word.value)
            entry = _M_CODES.get(key // 10) if key is not None and key % 10 == 0 else None
            if entry is None:
                raise self.fail(f"unsupported M-code {word}", word)
            group, code = entry
            if group == "coolant":
                self._claim_coolant(code, word)
            else:
                self.claim(group, word)
            return
        if letter in UNSUPPORTED_AXIS_WORDS:
            raise self.fail(f"unsupported axis word {word}", word)
        if letter not in PARAMETER_WORDS:
            raise self.fail(f"unsupported word {word}", word)
        if letter in self.params:
            raise self.fail(f"repeated word {letter}", word)
        self.params[letter] = word.value

    def _claim_coolant(self, code: str, word: Word) -> None:
        # M7 and M8 may share a line; M9 excludes both.
        if code in self.coolant or (self.coolant and "M9" in (code, *self.coolant)):
            raise self.fail(
                f"modal group conflict: {' '.join(self.coolant)} and {word} (coolant)",
                word,
            )
        self.coolant.append(code)

    def code(self, group: str) -> object | None:
        word = self.groups.get(group)
        if word is None:
            return None
        if word.letter == "G":
            return _G_CODES[_code_key(word.value)][1]
        return _M_CODES[_code_key(word.value) // 10][1]

    def apply_modal(self) -> ModalState:
        modal = self.before
        changes: dict[str, object] = {}
        for group in ("motion", "plane", "units", "distance", "arc_distance",
                      "feed_mode", "coordinate_system"):
            value = self.code(group)
            if value is not None:
                changes[group] = value

        units = changes.get("units", modal.units)
        feed_mode = changes.get("feed_mode", modal.feed_mode)
        feed = modal.feed_rate
        if "F" in self.params:
            feed = self.params["F"]
        elif feed_mode is not modal.feed_mode:
            # Switching between G93 and G94 leaves the feed rate undefined.
            feed = None
        elif feed is not None and units is not modal.units:
            feed = feed * modal.units.scale / units.scale
        changes["feed_rate"] = feed

        if "S" in self.params:
            changes["spindle_speed"] = self.params["S"]
        if "T" in self.params:
            changes["tool"] = int(self.params["T"])

        spindle = self.code("spindle")
        if spindle is not None:
            changes["spindle"] = SpindleState(spindle)
        for code in self.coolant:
            if code == "M7":
                changes["mist"] = True
            elif code == "M8":
                changes["flood"] = True
            else:
                changes["mist"] = False
                changes["flood"] = False

        tool_length = self.code("tool_length")
        if tool_length == "G49":
            changes["tool_length_offset"] = 0.0
        elif tool_length == "G43.1" and "Z" in self.params:
            changes["tool_length_offset"] = self.params["Z"] * units.scale
        return modal.replace(**changes)

    def validate(self, after: ModalState) -> None:
        params = self.params
        non_modal = self.code("non_modal")
        motion_word = self.groups.get("motion")
        has_axis = any(a in params for a in AXIS_WORDS)

        for letter in ("F", "S", "T"):
            if letter in params and params[letter] < 0:
                raise self.fail(f"{letter} must not be negative", f"{letter}{params[letter]}")
        if "T" in params and not float(params["T"]).is_integer():
            raise self.fail("tool number must be an integer", f"T{params['T']}")

        consumer = non_modal if non_modal in ("G10", "G28", "G30", "G92") else None
        if self.code("tool_length") == "G43.1":
            if consumer is not None:
                raise self.fail(f"G43.1 and {consumer} both take axis words", "G43.1")
            consumer = "G43.1"
            if "Z" not in params:
                raise self.fail("G43.1 needs a Z word", "G43.1")
            if "X" in params or "Y" in params:
                raise self.fail("G43.1 only accepts a Z word", "G43.1")
        if consumer is not None and motion_word is not None:
            raise self.fail(
                f"{consumer} and {motion_word} both take axis words",
                motion_word,
            )
        if non_modal == "G92" and not has_axis:
            raise self.fail("G92 needs at least one axis word", "G92")

        moves = consumer is None and (has_axis or motion_word is not None)
        motion = after.motion
        if moves and motion is MotionMode.NONE:
            if has_axis:
                raise self.fail("axis words without an active motion mode",
                                next(a for a in AXIS_WORDS if a in params))
            moves = False
        if motion is MotionMode.RAPID and not has_axis:
            moves = False
        if moves and motion.is_probe and not has_axis:
            raise self.fail(f"{motion.value} needs at least one axis word", motion.value)

        if non_modal == "G53" and not (
            moves and motion in (MotionMode.RAPID, MotionMode.LINEAR)
        ):
            raise self.fail("G53 is only valid with a G0 or G1 move", "G53")

        is_arc = moves and motion.is_arc
        offsets = [o for o in OFFSET_WORDS if o in params]
        if (offsets or "R" in params) and not is_arc:
            word = offsets[0] if offsets else "R"
            raise self.fail(f"{word} word is only valid with G2/G3", f"{word}{params[word]}")
        if is_arc:
            self._validate_arc(after, offsets)

        if moves and motion.needs_feed:
            if after.feed_mode is FeedMode.INVERSE_TIME:
                if "F" not in params:
                    raise self.fail("inverse time feed mode needs F on every move", motion.value)
            if not after.feed_rate:
                raise self.fail("feed rate is undefined", motion.value)

        if "P" in params:
            if non_modal not in ("G4", "G10"):
                raise self.fail("P word is only valid with G4 or G10", f"P{params['P']}")
        if non_modal == "G4":
            if "P" not in params:
                raise self.fail("G4 needs a P word", "G4")
            if params["P"] < 0:
                raise self.fail("dwell time must not be negative", f"P{params['P']}")
        if "L" in params and non_modal != "G10":
            raise self.fail("L word is only valid with G10", f"L{params['L']}")
        if non_modal == "G10":
            if params.get("L") not in (2, 20):
                raise self.fail("G10 needs L2 or L20", "G10")
            p = params.get("P")
            if p is None or not float(p).is_integer() or not 0 <= p <= 6:
                raise self.fail("G10 needs P0 to P6", "G10")

    def _validate_arc(self, after: ModalState, offsets: list[str]) -> None:
        params = self.params
        in_plane = _PLANE_OFFSETS[after.plane]
        axes = _PLANE_AXES[after.plane]
        stray = [o for o in offsets if o not in in_plane]
        if stray:
            raise self.fail(f"{stray[0]} is not an offset in the {after.plane.value} plane",
                            f"{stray[0]}{params[stray[0]]}")
        if not any(a in params for a in axes):
            raise self.fail(f"arc needs an {axes[0]} or {axes[1]} word", after.motion.value)
        if "R" in params and offsets:
            raise self.fail("arc has both R and an I/J/K offset", f"R{params['R']}")
        if "R" not in params and not offsets:
            raise self.fail("arc needs R or an I/J/K offset", after.motion.value)


def parse_line(
    tokens: Sequence[Token],
    modal: ModalState,
    line_index: int = 0,
    raw: str = "",
) -> tuple[Command, ModalState]:
    """Parse one line of tokens against the modal state in force before it.

    Modal words on the line take effect before its parameter words are
    checked, so ``G2 X1 Y1 I1`` after a ``G0`` line is a valid arc.

    Args:
        tokens: Output of :func:`tokenize_line`
        modal: State in force before this line
        line_index: 0-based source line index
        raw: Original text, kept for diagnostics and checksum checks

    Returns:
        Tuple of (command, modal state after the line)

    Raises:
        ParseError: Modal group conflict, unknown code or misplaced word
    """
    parser = _LineParser(modal, line_index, raw)
    parser.collect(tokens)
    after = parser.apply_modal()
    parser.validate(after)

    stop = parser.code("stop")
    if stop in ("M2", "M30"):
        after = after.replace(**_PROGRAM_END_RESET)

    checksum_ok = None
    if parser.checksum is not None:
        checksum_ok = compute_checksum(raw) == parser.checksum
        if not checksum_ok:
            logger.debug(f"Checksum mismatch on line {line_index + 1}: {raw!r}")

    motion_word = parser.code("motion")
    command = Command(
        line_index=line_index,
        raw=raw,
        modal=after,
        words=tuple(parser.words),
        line_number=parser.line_number,
        comments=tuple(parser.comments),
        motion_word=motion_word if isinstance(motion_word, MotionMode) else None,
        non_modal=parser.code("non_modal"),
        stop=stop,
        checksum_ok=checksum_ok,
        params=dict(parser.params),
    )
    return command, after


def parse_text(
    text: str,
    modal: ModalState,
    line_index: int = 0,
) -> tuple[Command, ModalState]:
    """Tokenize and parse one line of text."""
    return parse_line(tokenize_line(text, line_index), modal, line_index, text.rstrip("\r\n"))


def parse_lines(
    lines: Iterable[str],
    modal: ModalState | None = None,
) -> Iterator[Command]:
    """Parse a sequence of lines, threading modal state through them.

    Stops at the first ``LexError``/``ParseError``; use
    :func:`grbl_streamer.gcode_program.load_program` to collect every
    problem in a program instead.
    """
    state = modal or ModalState()
    for idx, text in enumerate(lines):
        command, state = parse_text(text, state, idx)
        yield command


def _trim_number_str(value: str) -> str:
    text = value.strip()
    if not text:
        return "0"
    sign = ""
    if text[0] in "+-":
        if text[0] == "-":
            sign = "-"
        text = text[1:]
    if "." in text:
        int_part, frac_part = text.split(".", 1)
        int_part = int_part.lstrip("0") or "0"
        frac_part = frac_part.rstrip("0")
        text = f"{int_part}.{frac_part}" if frac_part else int_part
    else:
        text = text.lstrip("0") or "0"
    if text == "0":
        sign = ""
    return sign + text


def format_word(word: Word) -> str:
    """Compact form of a word: ``G01`` becomes ``G1``, ``X10.500`` becomes ``X10.5``."""
    if word.text:
        return f"{word.letter}{_trim_number_str(word.text)}"
    return _format_code(word.letter, word.value)
