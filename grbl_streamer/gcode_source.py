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

from __future__ import annotations

import logging
import threading
from typing import BinaryIO, Callable, Iterator, Optional

from grbl_streamer.utils.constants import LOAD_YIELD_INTERVAL
from grbl_streamer.utils.exceptions import GcodeFileError

logger = logging.getLogger(__name__)


def scan_line_offsets(
    path: str,
    keep_running: Optional[Callable[[], bool]] = None,
) -> Optional[list[int]]:
    """Byte offset of every line start in ``path``.

    Returns None when ``keep_running`` reports a cancellation.

    Raises:
        GcodeFileError: If the file cannot be read
    """
    offsets: list[int] = []
    try:
        with open(path, "rb") as f:
            while True:
                pos = f.tell()
                raw = f.readline()
                if not raw:
                    break
                offsets.append(pos)
                if keep_running and len(offsets) % LOAD_YIELD_INTERVAL == 0 and not keep_running():
                    logger.info(f"Scan of {path} cancelled after {len(offsets)} lines")
                    return None
    except OSError as e:
        raise GcodeFileError(f"Failed to read {path}: {e}")
    return offsets


class FileGcodeSource:
    """Lazy G-code line source backed by a file and precomputed offsets.

    Lines come back without their line ending; everything else (comments,
    line numbers) is left for the tokenizer.
    """

    def __init__(self, path: str, offsets: list[int], encoding: str = "utf-8"):
        self.path = path
        self._offsets = list(offsets)
        self._encoding = encoding
        self._lock = threading.Lock()
        self._file: BinaryIO | None = None

    @classmethod
    def open(
        cls,
        path: str,
        keep_running: Optional[Callable[[], bool]] = None,
    ) -> Optional["FileGcodeSource"]:
        offsets = scan_line_offsets(path, keep_running)
        if offsets is None:
            return None
        logger.info(f"Indexed {len(offsets)} lines from {path}")
        return cls(path, offsets)

    def __len__(self) -> int:
        return len(self._offsets)

    def __iter__(self) -> Iterator[str]:
        for idx in range(len(self._offsets)):
            yield self._read_line_at(idx)

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return [self._read_line_at(i) for i in range(*idx.indices(len(self._offsets)))]
        if idx < 0:
            idx += len(self._offsets)
        if idx < 0 or idx >= len(self._offsets):
            raise IndexError("G-code index out of range")
        return self._read_line_at(idx)

    def __enter__(self) -> "FileGcodeSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._file and not self._file.closed:
                try:
                    self._file.close()
                except OSError:
                    pass
            self._file = None

    def _open(self) -> BinaryIO:
        if self._file is None or self._file.closed:
            try:
                self._file = open(self.path, "rb")
            except OSError as e:
                raise GcodeFileError(f"Failed to open {self.path}: {e}")
        return self._file

    def _read_line_at(self, idx: int) -> str:
        with self._lock:
            f = self._open()
            f.seek(self._offsets[idx])
            raw = f.readline()
        return raw.decode(self._encoding, errors="replace").rstrip("\r\n")
