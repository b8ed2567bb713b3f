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

"""Batch loading of G-code programs.

``load_program`` runs every line through the tokenizer, parser and
preprocessor, collecting lex, parse, geometry and line-length problems per
line instead of stopping at the first one. The resulting program can only
be streamed when it has no diagnostics.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Sequence

from grbl_streamer.gcode_parser import Command, ModalState, parse_line
from grbl_streamer.gcode_preprocessor import Point, Preprocessor, Segment
from grbl_streamer.gcode_source import FileGcodeSource
from grbl_streamer.gcode_tokenizer import tokenize_line
from grbl_streamer.utils.constants import (
    DIAGNOSTIC_LIMIT,
    LOAD_YIELD_INTERVAL,
    MAX_LINE_LENGTH,
)
from grbl_streamer.utils.exceptions import (
    GcodeException,
    GcodeProgramError,
    GeometryError,
    LexError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Diagnostic:
    """One load-time problem, attributed to a source line."""

    line_index: int
    kind: str
    message: str
    column: int | None = None
    text: str = ""

    def __str__(self) -> str:
        where = f"line {self.line_index + 1}"
        if self.column is not None:
            where += f", column {self.column}"
        return f"{where}: {self.kind} error: {self.message}"


@dataclass(frozen=True)
class OutboundLine:
    text: str
    line_index: int

    @property
    def payload(self) -> bytes:
        return (self.text + "\n").encode("ascii")


class GcodeProgram:
    """A loaded program: parsed commands, outbound lines and diagnostics.

    ``segments()`` replays the commands through a fresh preprocessor each
    time it is called, so the toolpath can be walked repeatedly without
    keeping every chord in memory.
    """

    def __init__(
        self,
        commands: Sequence[Command],
        outbound: Sequence[OutboundLine],
        diagnostics: Sequence[Diagnostic],
        make_preprocessor: Callable[[], Preprocessor] = Preprocessor,
        total_lines: int = 0,
        dropped_diagnostics: int = 0,
        name: str | None = None,
    ):
        self.commands = list(commands)
        self.diagnostics = list(diagnostics)
        self.total_lines = total_lines
        self.dropped_diagnostics = dropped_diagnostics
        self.name = name
        self._outbound = list(outbound)
        self._make_preprocessor = make_preprocessor

    def __len__(self) -> int:
        return len(self._outbound)

    @property
    def ok(self) -> bool:
        return not self.diagnostics

    def require_ok(self) -> None:
        """Raise if the program has any diagnostics.

        Raises:
            GcodeProgramError: Carrying the full diagnostics list
        """
        if self.diagnostics:
            count = len(self.diagnostics) + self.dropped_diagnostics
            raise GcodeProgramError(
                f"program has {count} error(s); first: {self.diagnostics[0]}",
                self.diagnostics,
            )

    def outbound(self) -> Iterator[OutboundLine]:
        return iter(self._outbound)

    def segments(self) -> Iterator[Segment]:
        preprocessor = self._make_preprocessor()
        for command in self.commands:
            try:
                yield from preprocessor.step(command).segments()
            except GeometryError:
                continue

    def bounds(self) -> tuple[Point, Point] | None:
        """Axis-aligned (min, max) corners of the toolpath, or None if empty."""
        lo: list[float] | None = None
        hi: list[float] | None = None
        for segment in self.segments():
            for point in (segment.start, segment.end):
                if lo is None or hi is None:
                    lo, hi = list(point), list(point)
                    continue
                for i in range(3):
                    lo[i] = min(lo[i], point[i])
                    hi[i] = max(hi[i], point[i])
        if lo is None or hi is None:
            return None
        return (lo[0], lo[1], lo[2]), (hi[0], hi[1], hi[2])


def _diagnostic_from(exc: GcodeException, idx: int, text: str) -> Diagnostic:
    column = exc.column if isinstance(exc, LexError) else None
    return Diagnostic(idx, exc.kind, exc.message, column, text)


def load_program(
    source: Iterable[str] | str | os.PathLike,
    make_preprocessor: Callable[[], Preprocessor] = Preprocessor,
    modal: ModalState | None = None,
    max_line_length: int = MAX_LINE_LENGTH,
    keep_running: Optional[Callable[[], bool]] = None,
) -> Optional[GcodeProgram]:
    """Load and check a whole program.

    Args:
        source: Lines of text, or a path to a G-code file
        make_preprocessor: Factory for the preprocessor (and its settings)
        modal: Modal state at program start
        max_line_length: Controller line limit in bytes, newline included
        keep_running: Polled periodically; returning False cancels the load

    Returns:
        The loaded program, or None if the load was cancelled

    Raises:
        GcodeFileError: If ``source`` is a path that cannot be read
    """
    name = None
    if isinstance(source, (str, os.PathLike)):
        name = os.fspath(source)
        source = FileGcodeSource.open(name, keep_running)
        if source is None:
            return None

    state = modal or ModalState()
    preprocessor = make_preprocessor()
    commands: list[Command] = []
    outbound: list[OutboundLine] = []
    diagnostics: list[Diagnostic] = []
    dropped = 0
    total = 0

    def report(diag: Diagnostic) -> None:
        nonlocal dropped
        if len(diagnostics) < DIAGNOSTIC_LIMIT:
            diagnostics.append(diag)
        else:
            dropped += 1

    try:
        for idx, raw in enumerate(source):
            total = idx + 1
            if keep_running and idx % LOAD_YIELD_INTERVAL == 0 and not keep_running():
                logger.info(f"Program load cancelled at line {idx + 1}")
                return None
            text = raw.rstrip("\r\n")
            try:
                command, state = parse_line(tokenize_line(text, idx), state, idx, text)
            except GcodeException as exc:
                report(_diagnostic_from(exc, idx, text))
                continue
            commands.append(command)
            try:
                step = preprocessor.step(command)
            except GeometryError as exc:
                report(_diagnostic_from(exc, idx, text))
                continue
            for line in step.outbound:
                size = len(line) + 1
                if size > max_line_length:
                    report(Diagnostic(
                        idx,
                        "length",
                        f"{size} bytes exceeds the {max_line_length} byte line limit",
                        None,
                        text,
                    ))
                    continue
                outbound.append(OutboundLine(line, idx))
    finally:
        if isinstance(source, FileGcodeSource):
            source.close()

    if diagnostics:
        logger.warning(
            f"Loaded {total} lines with {len(diagnostics) + dropped} diagnostic(s)"
        )
    else:
        logger.info(f"Loaded {total} lines, {len(outbound)} to send")
    return GcodeProgram(
        commands,
        outbound,
        diagnostics,
        make_preprocessor,
        total_lines=total,
        dropped_diagnostics=dropped,
        name=name,
    )
