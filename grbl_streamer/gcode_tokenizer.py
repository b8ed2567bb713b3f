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

"""Line tokenizer for GRBL flavoured G-code.

Each call handles exactly one line and keeps no state between calls, so a
program can be tokenized from any line onward.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from grbl_streamer.utils.exceptions import LexError

_NUMBER_PAT = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)")
_WHITESPACE = " \t\r\n\f\v"
BOM = "\ufeff"


@dataclass(frozen=True)
class Word:
    """Letter plus numeric value (``G1``, ``X-1.5``)."""

    letter: str
    value: float
    column: int = 0
    text: str = ""

    def __str__(self) -> str:
        return f"{self.letter}{self.text or self.value}"


@dataclass(frozen=True)
class Comment:
    text: str
    column: int = 0


@dataclass(frozen=True)
class LineNumber:
    number: int
    column: int = 0


@dataclass(frozen=True)
class Checksum:
    value: int
    column: int = 0


@dataclass(frozen=True)
class EndOfLine:
    pass


Token = Union[Word, Comment, LineNumber, Checksum, EndOfLine]


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in _WHITESPACE:
        pos += 1
    return pos


def _read_number(text: str, pos: int, letter: str, column: int,
                 line_index: int | None) -> tuple[str, int]:
    pos = _skip_ws(text, pos)
    match = _NUMBER_PAT.match(text, pos)
    if not match:
        found = text[pos] if pos < len(text) else "end of line"
        raise LexError(
            f"expected a number after '{letter}', found {found!r}",
            column,
            line_index,
            text,
        )
    return match.group(0), match.end()


def tokenize_line(text: str, line_index: int | None = None) -> list[Token]:
    """Split one line of G-code into tokens.

    Args:
        text: Raw line (a trailing newline is ignored)
        line_index: 0-based index used in error reports

    Returns:
        Tokens in line order, always terminated by ``EndOfLine``

    Raises:
        LexError: On an invalid character, a letter without a number, a
            non-integer line number or an unterminated comment
    """
    if text.startswith(BOM):
        text = text[len(BOM):]
    tokens: list[Token] = []
    pos = _skip_ws(text, 0)
    if text.startswith("%", pos):
        # Program delimiter line; GRBL ignores it.
        return [EndOfLine()]

    while pos < len(text):
        ch = text[pos]
        column = pos + 1
        if ch in _WHITESPACE:
            pos += 1
            continue
        if ch == "(":
            end = text.find(")", pos + 1)
            if end < 0:
                raise LexError("unterminated comment", column, line_index, text)
            tokens.append(Comment(text[pos + 1:end].strip(), column))
            pos = end + 1
            continue
        if ch == ";":
            tokens.append(Comment(text[pos + 1:].strip(), column))
            break
        if ch == "*":
            raw, pos = _read_number(text, pos + 1, "*", column, line_index)
            if not raw.isdigit():
                raise LexError("checksum must be a non-negative integer", column, line_index, text)
            tokens.append(Checksum(int(raw), column))
            continue
        if ch.isascii() and ch.isalpha():
            letter = ch.upper()
            raw, pos = _read_number(text, pos + 1, letter, column, line_index)
            if letter == "N":
                if not raw.lstrip("+").isdigit():
                    raise LexError("line number must be a non-negative integer",
                                   column, line_index, text)
                tokens.append(LineNumber(int(raw), column))
            else:
                tokens.append(Word(letter, float(raw), column, raw.lstrip("+")))
            continue
        if ch == "$":
            raise LexError("'$' system commands are not G-code", column, line_index, text)
        raise LexError(f"invalid character {ch!r}", column, line_index, text)

    tokens.append(EndOfLine())
    return tokens
