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

"""Serial-port transport built on pyserial."""

from __future__ import annotations

import logging
import time

import serial
from serial.tools import list_ports

from grbl_streamer.transports.base import READ_CHUNK_SIZE, StreamTransport
from grbl_streamer.utils.constants import (
    BAUD_DEFAULT,
    SERIAL_CONNECT_DELAY,
    SERIAL_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
)
from grbl_streamer.utils.exceptions import (
    TransportConnectError,
    TransportReadError,
    TransportWriteError,
)
from grbl_streamer.utils.validation import validate_baud_rate, validate_port_name

logger = logging.getLogger(__name__)


def available_ports() -> list[str]:
    """Device names of the serial ports present on this machine."""
    return [p.device for p in list_ports.comports()]


class SerialTransport(StreamTransport):
    def __init__(
        self,
        port: str,
        baud: int = BAUD_DEFAULT,
        connect_delay: float = SERIAL_CONNECT_DELAY,
    ):
        super().__init__()
        self.port = validate_port_name(port)
        self.baud = validate_baud_rate(baud)
        self.connect_delay = connect_delay
        self.ser: serial.Serial | None = None

    @property
    def is_connected(self) -> bool:
        ser = self.ser
        return ser is not None and ser.is_open

    @property
    def description(self) -> str:
        return f"{self.port} at {self.baud} baud"

    def connect(self) -> None:
        """Open the port and flush anything left over.

        Raises:
            TransportConnectError: If the port cannot be opened
        """
        if self.is_connected:
            self.disconnect()
        try:
            self.ser = serial.Serial(
                self.port,
                baudrate=self.baud,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_WRITE_TIMEOUT,
            )
        except serial.SerialException as e:
            self.ser = None
            raise TransportConnectError(f"Failed to connect to {self.port}: {e}")

        # Most boards reset when the port opens
        time.sleep(self.connect_delay)
        try:
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
        except serial.SerialException as e:
            logger.warning(f"Failed to reset buffers: {e}")
        logger.info(f"Connected to {self.description}")

    def disconnect(self) -> None:
        ser, self.ser = self.ser, None
        if ser is None:
            return
        try:
            ser.close()
            logger.info("Serial port closed")
        except serial.SerialException as e:
            logger.error(f"Error closing serial port: {e}")

    def _read_chunk(self) -> bytes:
        ser = self.ser
        if ser is None:
            return b""
        try:
            return ser.read(READ_CHUNK_SIZE)
        except serial.SerialException as e:
            if self.ser is None:
                return b""
            raise TransportReadError(f"Serial read error: {e}")

    def _write_some(self, data: bytes) -> int:
        ser = self.ser
        if ser is None:
            raise TransportWriteError(f"{self.port} closed during write")
        try:
            return ser.write(data) or 0
        except serial.SerialTimeoutException as e:
            raise TransportWriteError(f"Write timeout: {e}")
        except serial.SerialException as e:
            raise TransportWriteError(f"Serial write error: {e}")
