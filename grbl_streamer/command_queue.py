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

"""Ordered buffer of outbound command lines with byte accounting.

Entries move from *pending* (enqueued, not yet written) to *in flight*
(written, waiting for ``ok``/``error``) and leave on acknowledgment or
``clear()``. The queue does no locking of its own; ``ProtocolEngine``
serialises every call under its lock.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from grbl_streamer.utils.constants import QUEUE_CAPACITY_DEFAULT
from grbl_streamer.utils.exceptions import (
    InvalidCommandError,
    ProtocolDesync,
    QueueClosed,
    QueueFull,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class QueuedCommand:
    text: str
    payload: bytes
    sequence: int
    generation: int
    line_index: int | None = None
    sent_at: float | None = None

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def sent(self) -> bool:
        return self.sent_at is not None


def encode_command(text: str) -> bytes:
    """Newline-terminated ASCII payload for one command line.

    Raises:
        InvalidCommandError: Empty, multi-line or non-ASCII text
    """
    line = text.strip()
    if not line:
        raise InvalidCommandError("empty command")
    if "\n" in line or "\r" in line:
        raise InvalidCommandError(f"command spans several lines: {text!r}")
    try:
        return (line + "\n").encode("ascii")
    except UnicodeEncodeError:
        raise InvalidCommandError(f"command is not ASCII: {text!r}")


class CommandQueue:
    """FIFO of command lines tracking the bytes written but not acknowledged."""

    def __init__(self, capacity: int = QUEUE_CAPACITY_DEFAULT):
        if capacity < 1:
            raise ValueError("queue capacity must be at least 1")
        self.capacity = capacity
        self.generation = 0
        self.paused = False
        self.closed = False
        self._pending: deque[QueuedCommand] = deque()
        self._in_flight: deque[QueuedCommand] = deque()
        self._next_sequence = 0
        self._outstanding = 0

    def __len__(self) -> int:
        return len(self._pending) + len(self._in_flight)

    @property
    def outstanding_bytes(self) -> int:
        """Bytes written to the controller and not yet acknowledged."""
        return self._outstanding

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def is_full(self) -> bool:
        return len(self) >= self.capacity

    def enqueue(self, text: str, line_index: int | None = None) -> QueuedCommand:
        """Append a command line to the tail.

        Raises:
            QueueClosed: After a soft reset, until the controller reboots
            QueueFull: When ``capacity`` entries are waiting
            InvalidCommandError: Text that can never be transmitted
        """
        if self.closed:
            raise QueueClosed("command queue is closed")
        if self.is_full:
            raise QueueFull(f"command queue is full ({self.capacity} entries)")
        payload = encode_command(text)
        entry = QueuedCommand(
            text=payload[:-1].decode("ascii"),
            payload=payload,
            sequence=self._next_sequence,
            generation=self.generation,
            line_index=line_index,
        )
        self._next_sequence += 1
        self._pending.append(entry)
        return entry

    def next_sendable(self, available_bytes: int) -> QueuedCommand | None:
        """Head of the unsent entries, only if it fits in ``available_bytes``."""
        if self.paused or not self._pending:
            return None
        head = self._pending[0]
        if head.size > available_bytes:
            return None
        return head

    def mark_sent(self, entry: QueuedCommand, now: float) -> bool:
        """Move the head entry in flight.

        Returns False, changing nothing, for an entry a ``clear()`` discarded.
        """
        if entry.generation != self.generation:
            return False
        if not self._pending or self._pending[0] is not entry:
            return False
        self._pending.popleft()
        entry.sent_at = now
        self._in_flight.append(entry)
        self._outstanding += entry.size
        return True

    def acknowledge(self) -> QueuedCommand:
        """Retire the oldest in-flight entry.

        Raises:
            ProtocolDesync: Nothing is in flight
        """
        if not self._in_flight:
            raise ProtocolDesync("acknowledgment received with no command in flight")
        entry = self._in_flight.popleft()
        self._outstanding -= entry.size
        return entry

    def head_in_flight(self) -> QueuedCommand | None:
        return self._in_flight[0] if self._in_flight else None

    def clear(self) -> int:
        """Drop every entry; returns how many were dropped.

        Clearing an empty queue changes nothing, the generation included.
        """
        count = len(self)
        if count == 0:
            return 0
        self._pending.clear()
        self._in_flight.clear()
        self._outstanding = 0
        self.generation += 1
        logger.debug(f"Command queue cleared ({count} entries, generation {self.generation})")
        return count

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def close(self) -> None:
        self.closed = True

    def reopen(self) -> None:
        self.closed = False
