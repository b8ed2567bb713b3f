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

from grbl_streamer import grbl_commands
from grbl_streamer.grbl_realtime import RealtimeCommand, rapid_command
from grbl_streamer.types import GrblWorkerState
from grbl_streamer.utils.exceptions import (
    MachineInAlarm,
    QueueClosed,
    QueueFull,
    TransportError,
)

logger = logging.getLogger(__name__)


class GrblWorkerCommandMixin(GrblWorkerState):
    def send_immediate(self, command: str, *, source: str | None = None) -> bool:
        """Queue a manual command (console input, UI buttons).

        Blocked while a job is streaming. In alarm, only unlock, homing and
        report commands get through.

        Args:
            command: G-code or GRBL ``$`` command
            source: Label used when reporting an ``error:<n>`` reply

        Returns:
            True if the command was queued

        Raises:
            InvalidCommandError: Text that can never be transmitted
        """
        if not self.is_connected():
            logger.warning("Cannot send command - not connected")
            return False
        command = command.strip()
        if not command:
            return False
        if self._streaming:
            logger.warning("Cannot send immediate command during streaming")
            self.ui_q.put(("manual_blocked", command, "streaming active"))
            return False

        self._last_manual_source = source or "manual"
        try:
            self.engine.enqueue(command)
        except MachineInAlarm:
            logger.warning(f"Command '{command}' blocked during alarm")
            self.ui_q.put(("manual_blocked", command, "alarm"))
            return False
        except QueueClosed:
            logger.warning(f"Command '{command}' blocked until the controller restarts")
            self.ui_q.put(("manual_blocked", command, "waiting for controller reset"))
            return False
        except QueueFull:
            logger.warning(f"Command '{command}' blocked - queue full")
            self.ui_q.put(("manual_blocked", command, "queue full"))
            return False
        self.ui_q.put(("log_tx", command))
        return True

    def _send_realtime(self, command: RealtimeCommand) -> bool:
        try:
            self.engine.realtime(command)
        except TransportError as exc:
            logger.error(f"{command.name} failed: {exc}")
            self.ui_q.put(("log", f"[{command.name.lower()} failed] {exc}"))
            return False
        return True

    def unlock(self) -> bool:
        """Send unlock command ($X) to clear alarm state."""
        return self.send_immediate(grbl_commands.KILL_ALARM_LOCK)

    def home(self) -> bool:
        """Send home command ($H) to run homing cycle."""
        return self.send_immediate(grbl_commands.RUN_HOMING)

    def reset(self) -> None:
        """Send soft reset (Ctrl-X).

        Immediately halts all motion, ends any job and drops everything
        queued. New commands are refused until the controller's banner.
        """
        was_streaming = self._streaming
        self._abort_job("reset")
        if self._send_realtime(RealtimeCommand.SOFT_RESET) and was_streaming:
            self.ui_q.put(("stream_state", "stopped", None))

    def hold(self) -> None:
        """Send feed hold command (!) to pause motion."""
        self._send_realtime(RealtimeCommand.FEED_HOLD)

    def resume(self) -> None:
        """Send cycle start command (~) to resume motion."""
        self._send_realtime(RealtimeCommand.CYCLE_START)

    def jog(
        self,
        dx: float | None = None,
        dy: float | None = None,
        dz: float | None = None,
        feed: float = 0.0,
        unit_mode: str = "mm",
    ) -> bool:
        """Send an incremental ``$J=`` jog.

        Raises:
            InvalidParameterError: Bad feed rate or unit mode, or no axis given
        """
        return self.send_immediate(grbl_commands.jog(dx, dy, dz, feed, unit_mode), source="jog")

    def jog_cancel(self) -> None:
        """Cancel the active jog (0x85)."""
        self._send_realtime(RealtimeCommand.JOG_CANCEL)

    def feed_override(self, delta: int) -> None:
        """Adjust the feed override by ``delta`` percent."""
        try:
            self.engine.adjust_override("feed", delta)
        except TransportError as exc:
            logger.error(f"Feed override failed: {exc}")

    def spindle_override(self, delta: int) -> None:
        """Adjust the spindle override by ``delta`` percent."""
        try:
            self.engine.adjust_override("spindle", delta)
        except TransportError as exc:
            logger.error(f"Spindle override failed: {exc}")

    def rapid_override(self, percent: int) -> None:
        """Set the rapid override to 100, 50 or 25 percent."""
        self._send_realtime(rapid_command(percent))

    def reset_overrides(self) -> None:
        for command in (
            RealtimeCommand.FEED_RESET,
            RealtimeCommand.RAPID_100,
            RealtimeCommand.SPINDLE_RESET,
        ):
            self._send_realtime(command)

    def request_settings(self) -> bool:
        return self.send_immediate(grbl_commands.VIEW_SETTINGS, source="settings")

    def request_parser_state(self) -> bool:
        return self.send_immediate(grbl_commands.VIEW_PARSER_STATE, source="parser state")

    def request_parameters(self) -> bool:
        return self.send_immediate(grbl_commands.VIEW_PARAMETERS, source="parameters")

    def set_setting(self, setting_id: int, value) -> bool:
        """Write a ``$n=value`` setting after range-checking it.

        Raises:
            InvalidParameterError: Unknown setting or non-numeric value
            InvalidRangeError: Value outside the setting's range
        """
        return self.send_immediate(grbl_commands.set_setting(setting_id, value), source="settings")

    def toggle_check_mode(self) -> bool:
        return self.send_immediate(grbl_commands.TOGGLE_CHECK_MODE)

    def sleep(self) -> bool:
        return self.send_immediate(grbl_commands.SLEEP)
