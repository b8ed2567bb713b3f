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

import threading
from typing import Any, Literal, TypeAlias

from grbl_streamer.gcode_program import GcodeProgram
from grbl_streamer.grbl_responses import MachineStatus
from grbl_streamer.protocol_engine import ControllerError, ProtocolEngine
from grbl_streamer.transports.base import Transport


class GrblWorkerState:
    ui_q: Any
    engine: ProtocolEngine
    transport: Transport | None

    _stop_evt: threading.Event
    _rx_thread: threading.Thread | None
    _tx_thread: threading.Thread | None
    _status_thread: threading.Thread | None
    _disconnect_lock: threading.Lock

    _status_interval_lock: threading.Lock
    _status_poll_interval: float
    _status_query_failures: int
    _status_query_failure_limit: int

    _job_lock: threading.Lock
    _program: GcodeProgram | None
    _producer_thread: threading.Thread | None
    _abort_evt: threading.Event
    _streaming: bool
    _job_total: int
    _job_acked: int
    _job_errors: list[ControllerError]
    _pause_on_error: bool
    _last_manual_source: str | None

    def is_connected(self) -> bool:
        raise NotImplementedError

    def is_streaming(self) -> bool:
        raise NotImplementedError

    def _emit_exception(self, context: str, exc: BaseException) -> None:
        raise NotImplementedError

    def _signal_disconnect(self, reason: str | None = None) -> None:
        raise NotImplementedError

    def _handle_rx_line(self, line: str) -> None:
        raise NotImplementedError

    def _abort_job(self, reason: str | None = None) -> None:
        raise NotImplementedError


UiEvent: TypeAlias = (
    tuple[Literal["conn"], bool, str | None]
    | tuple[Literal["log"], str]
    | tuple[Literal["log_tx"], str]
    | tuple[Literal["log_rx"], str]
    | tuple[Literal["ready"], str | None]
    | tuple[Literal["status"], MachineStatus]
    | tuple[Literal["alarm"], int, str]
    | tuple[Literal["manual_error"], ControllerError, str | None]
    | tuple[Literal["manual_blocked"], str, str]
    | tuple[Literal["setting"], int, str]
    | tuple[Literal["probe"], tuple[float, float, float], bool]
    | tuple[Literal["feedback"], str, str]
    | tuple[Literal["message"], str]
    | tuple[Literal["stream_state"], str, Any | None]
    | tuple[Literal["stream_interrupted"], bool, str | None]
    | tuple[Literal["stream_error"], ControllerError, str | None]
    | tuple[Literal["gcode_acked"], int]
    | tuple[Literal["progress"], int, int]
)
StreamState: TypeAlias = Literal["loaded", "running", "paused", "stopped", "done", "alarm", "error"]
