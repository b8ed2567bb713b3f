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

"""Connection management for the GRBL worker."""

from __future__ import annotations

import logging
import threading
import traceback
from typing import TYPE_CHECKING

from grbl_streamer.transports import SerialTransport, TcpTransport, Transport, available_ports
from grbl_streamer.types import GrblWorkerState
from grbl_streamer.utils.constants import BAUD_DEFAULT, TCP_PORT_DEFAULT, THREAD_JOIN_TIMEOUT
from grbl_streamer.utils.exceptions import TransportError

logger = logging.getLogger(__name__)


class GrblWorkerConnectionMixin(GrblWorkerState):
    """Connection lifecycle support for GRBL worker."""

    if TYPE_CHECKING:
        def _tx_loop(self, stop_evt: threading.Event) -> None: ...
        def _status_loop(self, stop_evt: threading.Event) -> None: ...

    def list_ports(self) -> list[str]:
        """Get list of available serial ports.

        Returns:
            List of port device names
        """
        return available_ports()

    def connect_serial(self, port: str, baud: int = BAUD_DEFAULT) -> None:
        """Connect over a serial port (e.g. 'COM3' or '/dev/ttyUSB0').

        Raises:
            TransportConnectError: If the port cannot be opened
            InvalidParameterError: If the port name or baud rate is invalid
        """
        self.connect(SerialTransport(port, baud))

    def connect_tcp(self, host: str, port: int = TCP_PORT_DEFAULT) -> None:
        """Connect to a network-attached controller.

        Raises:
            TransportConnectError: If the host cannot be reached
        """
        self.connect(TcpTransport(host, port))

    def connect(self, transport: Transport) -> None:
        """Open ``transport`` and start the worker threads.

        Args:
            transport: Serial, TCP or test transport

        Raises:
            TransportConnectError: If the transport cannot be opened
        """
        if self.is_connected():
            self.disconnect()

        self._stop_evt = threading.Event()
        self._status_query_failures = 0
        transport.connect()
        self.transport = transport
        self.engine.connection_opened()

        stop_evt = self._stop_evt
        self._rx_thread = threading.Thread(
            target=self._rx_loop,
            args=(stop_evt,),
            daemon=True,
            name="GRBL-RX"
        )
        self._tx_thread = threading.Thread(
            target=self._tx_loop,
            args=(stop_evt,),
            daemon=True,
            name="GRBL-TX"
        )
        self._status_thread = threading.Thread(
            target=self._status_loop,
            args=(stop_evt,),
            daemon=True,
            name="GRBL-Status"
        )
        self._rx_thread.start()
        self._tx_thread.start()
        self._status_thread.start()

        self.ui_q.put(("conn", True, transport.description))
        logger.info(f"Connected to {transport.description}")

    def disconnect(self) -> None:
        """Disconnect from GRBL controller.

        Stops any running job and all worker threads, then closes the
        transport. Thread-safe and idempotent.
        """
        self._stop_evt.set()
        self._abort_job()

        transport, self.transport = self.transport, None
        if transport is not None:
            transport.disconnect()

        current = threading.current_thread()
        for thread in (self._rx_thread, self._tx_thread, self._status_thread, self._producer_thread):
            if thread and thread.is_alive() and thread is not current:
                thread.join(timeout=THREAD_JOIN_TIMEOUT)
                if thread.is_alive():
                    logger.warning(f"Thread {thread.name} did not terminate")
        self._rx_thread = None
        self._tx_thread = None
        self._status_thread = None

        self.engine.reset_connection()
        if transport is not None:
            self.ui_q.put(("conn", False, None))

    def is_connected(self) -> bool:
        """Check if connected to GRBL.

        Returns:
            True if a transport is open
        """
        transport = self.transport
        return transport is not None and transport.is_connected

    def _write(self, data: bytes) -> None:
        transport = self.transport
        if transport is None:
            raise TransportError("not connected")
        transport.write(data)

    def _rx_loop(self, stop_evt: threading.Event) -> None:
        """Receive thread - feeds controller lines to the protocol engine.

        Args:
            stop_evt: Event to signal thread shutdown
        """
        logger.debug("RX thread started")
        transport = self.transport
        try:
            if transport is None:
                return
            for line in transport.lines():
                if stop_evt.is_set():
                    break
                self._handle_rx_line(line)
            if not stop_evt.is_set():
                self._signal_disconnect("Connection closed by controller")
        except TransportError as e:
            logger.error(f"Read error: {e}")
            self._signal_disconnect(f"Read error: {e}")
        except Exception as e:
            logger.error(f"RX thread error: {e}", exc_info=True)
            self._emit_exception("RX thread error", e)
            self._signal_disconnect(f"RX thread error: {e}")
        finally:
            logger.debug("RX thread stopped")

    def _emit_exception(self, context: str, exc: BaseException) -> None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self.ui_q.put(("log", f"[worker] {context}: {exc}"))
        for ln in tb.splitlines():
            self.ui_q.put(("log", ln))

    def _signal_disconnect(self, reason: str | None = None) -> None:
        """Signal an unexpected disconnect and reset internal state."""
        with self._disconnect_lock:
            if self._stop_evt.is_set():
                return
            self._stop_evt.set()
        was_streaming = self.is_streaming()
        self._abort_job(reason)
        transport, self.transport = self.transport, None
        if transport is not None:
            transport.disconnect()
        self.engine.reset_connection()
        logger.warning(f"Disconnected: {reason}")
        if was_streaming:
            self.ui_q.put(("stream_interrupted", True, reason))
        self.ui_q.put(("conn", False, None))
        if reason:
            self.ui_q.put(("log", f"[disconnect] {reason}"))
