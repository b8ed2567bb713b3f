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

"""TCP transport for network-attached controllers (ESP32 and telnet bridges)."""

from __future__ import annotations

import logging
import socket

from grbl_streamer.transports.base import READ_CHUNK_SIZE, StreamTransport
from grbl_streamer.utils.constants import (
    SERIAL_TIMEOUT,
    TCP_CONNECT_TIMEOUT,
    TCP_PORT_DEFAULT,
)
from grbl_streamer.utils.exceptions import (
    TransportConnectError,
    TransportReadError,
    TransportWriteError,
)
from grbl_streamer.utils.validation import validate_tcp_port

logger = logging.getLogger(__name__)


class TcpTransport(StreamTransport):
    def __init__(
        self,
        host: str,
        port: int = TCP_PORT_DEFAULT,
        connect_timeout: float = TCP_CONNECT_TIMEOUT,
    ):
        super().__init__()
        if not host or not host.strip():
            raise TransportConnectError("host name is required")
        self.host = host.strip()
        self.port = validate_tcp_port(port)
        self.connect_timeout = connect_timeout
        self.sock: socket.socket | None = None

    @property
    def is_connected(self) -> bool:
        return self.sock is not None

    @property
    def description(self) -> str:
        return f"{self.host}:{self.port}"

    def connect(self) -> None:
        """Open the connection.

        Raises:
            TransportConnectError: If the host cannot be reached
        """
        if self.is_connected:
            self.disconnect()
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            raise TransportConnectError(f"Failed to connect to {self.description}: {e}")
        sock.settimeout(SERIAL_TIMEOUT)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.sock = sock
        logger.info(f"Connected to {self.description}")

    def disconnect(self) -> None:
        sock, self.sock = self.sock, None
        if sock is None:
            return
        try:
            sock.close()
            logger.info(f"Closed connection to {self.description}")
        except OSError as e:
            logger.error(f"Error closing socket: {e}")

    def _read_chunk(self) -> bytes:
        sock = self.sock
        if sock is None:
            return b""
        try:
            data = sock.recv(READ_CHUNK_SIZE)
        except socket.timeout:
            return b""
        except OSError as e:
            if self.sock is None:
                return b""
            raise TransportReadError(f"Socket read error: {e}")
        if not data:
            # Peer closed the connection
            self.disconnect()
        return data

    def _write_some(self, data: bytes) -> int:
        sock = self.sock
        if sock is None:
            raise TransportWriteError(f"{self.description} closed during write")
        try:
            return sock.send(data)
        except OSError as e:
            raise TransportWriteError(f"Socket write error: {e}")
