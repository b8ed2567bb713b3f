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

import logging
import threading

from grbl_streamer.types import GrblWorkerState
from grbl_streamer.utils.constants import STATUS_POLL_INTERVAL_MIN
from grbl_streamer.utils.exceptions import ProtocolDesync, ProtocolTimeout, TransportError
from grbl_streamer.utils.validation import validate_interval

logger = logging.getLogger(__name__)


class GrblWorkerStatusMixin(GrblWorkerState):
    def set_status_poll_interval(self, interval: float) -> None:
        """Set status polling interval.

        Args:
            interval: Polling interval in seconds

        Raises:
            InvalidRangeError: If interval is below the minimum
        """
        interval = validate_interval(interval, min_val=STATUS_POLL_INTERVAL_MIN)
        with self._status_interval_lock:
            self._status_poll_interval = interval
        logger.debug(f"Status poll interval set to {interval}s")

    def set_status_query_failure_limit(self, limit: int) -> None:
        """Set the number of consecutive status query failures before disconnect."""
        self._status_query_failure_limit = min(10, max(1, int(limit)))
        logger.debug(f"Status query failure limit set to {self._status_query_failure_limit}")

    def _handle_rx_line(self, line: str) -> None:
        """Handle received line from GRBL.

        Status reports and bare ``ok`` lines are not echoed to the log
        event stream; everything else is.
        """
        if line != "ok" and not line.startswith("<"):
            self.ui_q.put(("log_rx", line))
        try:
            self.engine.handle_line(line)
        except ProtocolDesync as e:
            logger.error(f"Protocol desync: {e}")
            self._signal_disconnect(f"Protocol desync: {e}")

    def _status_loop(self, stop_evt: threading.Event) -> None:
        """Status polling thread - requests status and watches for lost acknowledgments.

        Args:
            stop_evt: Event to signal thread shutdown
        """
        logger.debug("Status thread started")
        try:
            while not stop_evt.is_set():
                if self.is_connected() and self.engine.status_polling:
                    try:
                        self.engine.status_query()
                        self._status_query_failures = 0
                    except TransportError as e:
                        self._status_query_failures += 1
                        logger.error(
                            f"Status query error ({self._status_query_failures}/"
                            f"{self._status_query_failure_limit}): {e}"
                        )
                        if self._status_query_failures >= self._status_query_failure_limit:
                            self._signal_disconnect(f"Status query error: {e}")
                            break

                try:
                    self.engine.check_timeout()
                except ProtocolTimeout as e:
                    logger.error(f"Acknowledgment timeout: {e}")
                    self._signal_disconnect(f"Acknowledgment timeout: {e}")
                    break

                with self._status_interval_lock:
                    interval = self._status_poll_interval
                if stop_evt.wait(interval):
                    break
        except Exception as e:
            logger.error(f"Status thread error: {e}", exc_info=True)
            self._emit_exception("Status thread error", e)
            self._signal_disconnect(f"Status thread error: {e}")
        finally:
            logger.debug("Status thread stopped")
