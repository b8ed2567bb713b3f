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

"""Transport contract and the shared byte-stream plumbing."""

from __future__ import annotations

import logging
import threading
from typing import Iterator, Protocol

from grbl_streamer.utils.exceptions import (
    TransportNotConnectedError,
    TransportWriteError,
)
from grbl_streamer.utils.logging_config import SERIAL_LOGGER_NAME

logger = logging.getLogger(__name__)
traffic_logger = logging.getLogger(SERIAL_LOGGER_NAME)

READ_CHUNK_SIZE = 256


class Transport(Protocol):
    """What the worker needs from a link to the controller."""

    def connect(self) -> None: ...
    def disconnect(self) -> None: ...
    def write(self, data: bytes) -> None: ...
    def lines(self) -> Iterator[str]: ...

    @property
    def is_connected(self) -> bool: ...

    @property
    def description(self) -> str: ...


class LineSplitter:
    """Reassembles received bytes into text lines.

    GRBL ends lines with ``\\r\\n``; a lone ``\\n`` is accepted too. Partial
    lines are held until their terminator arrives.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buf = b""

    def feed(self, chunk: bytes) -> list[str]:
        self._buf += chunk
        lines = []
        while b"\n" in self._buf:
            raw, self._buf = self._buf.split(b"\n", 1)
            text = raw.decode(self.encoding, errors="replace").strip("\r ")
            if text:
                lines.append(text)
        return lines

    @property
    def partial(self) -> bytes:
        return self._buf

    def reset(self) -> None:
        self._buf = b""


class StreamTransport:
    """Base for byte-stream transports.

    Subclasses open and close the underlying channel and implement
    ``_read_chunk`` (returning ``b""`` on a read timeout) and
    ``_write_some`` (returning the byte count written).
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._splitter = LineSplitter()

    @property
    def is_connected(self) -> bool:
        raise NotImplementedError

    @property
    def description(self) -> str:
        return type(self).__name__

    def connect(self) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError

    def _read_chunk(self) -> bytes:
        raise NotImplementedError

    def _write_some(self, data: bytes) -> int:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        """Write all of ``data``.

        Raises:
            TransportNotConnectedError: If the link is down
            TransportWriteError: If the channel fails or stalls
        """
        if not self.is_connected:
            raise TransportNotConnectedError(f"{self.description} is not connected")
        with self._write_lock:
            total = 0
            while total < len(data):
                written = self._write_some(data[total:])
                if not written:
                    raise TransportWriteError(f"{self.description}: write returned 0 bytes")
                total += written
        traffic_logger.debug(f"TX {data!r}")

    def lines(self) -> Iterator[str]:
        """Received lines, until the transport is disconnected.

        Raises:
            TransportReadError: If the channel fails while connected
        """
        self._splitter.reset()
        while self.is_connected:
            chunk = self._read_chunk()
            if not chunk:
                continue
            for line in self._splitter.feed(chunk):
                traffic_logger.debug(f"RX {line}")
                yield line
