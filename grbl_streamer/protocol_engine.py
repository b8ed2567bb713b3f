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

"""GRBL character-counting protocol engine.

The engine owns the command queue, the RX-buffer byte budget and the
machine status snapshot. It never touches a port itself: bytes go out
through the ``write`` callable it is given, and received lines are fed in
through ``handle_line``. Every queue operation, budget decision, status
update and transport write happens under one re-entrant lock, so a send
decision can never interleave with an acknowledgment or a real-time byte.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from grbl_streamer.command_queue import CommandQueue, QueuedCommand, encode_command
from grbl_streamer.grbl_commands import allowed_in_alarm, is_unlock
from grbl_streamer.grbl_realtime import (
    RealtimeCommand,
    expected_overrides,
    override_commands,
    rapid_command,
)
from grbl_streamer.grbl_responses import (
    MachineState,
    MachineStatus,
    Response,
    ResponseKind,
    StatusReport,
    machine_position_from,
    parse_parser_state,
    parse_probe,
    parse_response,
    split_feedback,
    work_position_from,
)
from grbl_streamer.utils.constants import (
    ACK_TIMEOUT_DEFAULT,
    MAX_LINE_LENGTH,
    QUEUE_CAPACITY_DEFAULT,
    RX_BUFFER_RESERVE,
    RX_BUFFER_SIZE,
)
from grbl_streamer.utils.exceptions import (
    InvalidCommandError,
    MachineInAlarm,
    ProtocolDesync,
    ProtocolTimeout,
    QueueFull,
)
from grbl_streamer.utils.grbl_errors import describe_alarm, describe_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControllerError:
    """An ``error:<n>`` reply, attributed to the command that caused it."""

    code: int
    description: str
    command: str
    line_index: int | None = None

    def __str__(self) -> str:
        where = f" (line {self.line_index + 1})" if self.line_index is not None else ""
        return f"error:{self.code} {self.description}: {self.command}{where}"


class ProtocolEngine:
    """Streams queued command lines to GRBL without overflowing its RX buffer.

    Events are published to ``event_q`` (any object with ``put``) as tuples:

    - ``("status", MachineStatus)``
    - ``("ack", QueuedCommand)``
    - ``("controller_error", ControllerError)``
    - ``("alarm", code, description)``
    - ``("ready", version)`` on a boot banner
    - ``("setting", number, value)``, ``("probe", point, success)``,
      ``("feedback", tag, value)``, ``("message", text)``
    """

    def __init__(
        self,
        write: Callable[[bytes], Any],
        rx_buffer_size: int = RX_BUFFER_SIZE,
        rx_buffer_reserve: int = RX_BUFFER_RESERVE,
        ack_timeout: float | None = ACK_TIMEOUT_DEFAULT,
        queue_capacity: int = QUEUE_CAPACITY_DEFAULT,
        event_q: Any = None,
        clock: Callable[[], float] = time.monotonic,
        max_line_length: int = MAX_LINE_LENGTH,
        status_polling: bool = True,
    ):
        if rx_buffer_size - rx_buffer_reserve < 1:
            raise ValueError("RX buffer reserve leaves no room to send")
        self.rx_buffer_size = rx_buffer_size
        self.rx_buffer_reserve = rx_buffer_reserve
        self.ack_timeout = ack_timeout
        self.max_line_length = max_line_length
        self.status_polling = status_polling
        self.event_q = event_q
        self._write = write
        self._clock = clock
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._queue = CommandQueue(queue_capacity)
        self._rx_window = rx_buffer_size
        self._status = MachineStatus()
        self._work_offset = None
        self._settings: dict[int, str] = {}
        self._awaiting_banner = False
        self._alarm_latched = False
        self._last_ack = 0.0
        self._paused_seen_at = 0.0
        self._progress_at = 0.0
        self._stale_acks = 0

    # ========================================================================
    # READ-SIDE API
    # ========================================================================

    @property
    def status(self) -> MachineStatus:
        """Current status snapshot; never partially updated."""
        with self._lock:
            return self._status

    @property
    def budget(self) -> int:
        """Bytes the controller can hold, less the reserve."""
        with self._lock:
            return self._rx_window - self.rx_buffer_reserve

    @property
    def outstanding_bytes(self) -> int:
        with self._lock:
            return self._queue.outstanding_bytes

    @property
    def available_bytes(self) -> int:
        with self._lock:
            return self.budget - self._queue.outstanding_bytes

    @property
    def pending_count(self) -> int:
        with self._lock:
            return self._queue.pending_count

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return self._queue.in_flight_count

    @property
    def stale_acks(self) -> int:
        """Replies still owed for lines dropped by ``clear()`` or an alarm."""
        with self._lock:
            return self._stale_acks

    @property
    def awaiting_banner(self) -> bool:
        with self._lock:
            return self._awaiting_banner

    @property
    def in_alarm(self) -> bool:
        with self._lock:
            return self._status.state is MachineState.ALARM

    @property
    def controller_settings(self) -> dict[int, str]:
        """``$n=value`` settings seen since connecting."""
        with self._lock:
            return dict(self._settings)

    def is_idle(self) -> bool:
        """True when nothing is queued or waiting for acknowledgment."""
        with self._lock:
            return len(self._queue) == 0

    # ========================================================================
    # SENDING
    # ========================================================================

    def enqueue(
        self,
        text: str,
        line_index: int | None = None,
        block: bool = False,
        timeout: float | None = None,
    ) -> QueuedCommand:
        """Queue one command line for transmission.

        Args:
            text: G-code or ``$`` command, without newline
            line_index: Source line the command came from, if any
            block: Wait for room instead of failing on a full queue
            timeout: Longest wait when blocking, in seconds (None waits forever)

        Returns:
            The queued entry

        Raises:
            MachineInAlarm: In alarm, for anything but unlock/homing/report commands
            QueueClosed: After a soft reset, until the boot banner arrives
            QueueFull: Queue at capacity (after ``timeout`` when blocking)
            InvalidCommandError: Empty, non-ASCII, or longer than the controller accepts
        """
        payload = encode_command(text)
        limit = min(self.max_line_length, self.rx_buffer_size - self.rx_buffer_reserve)
        if len(payload) > limit:
            raise InvalidCommandError(
                f"command is {len(payload)} bytes, controller accepts at most {limit}: {text.strip()!r}"
            )
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._check_alarm(text)
            if block:
                while self._queue.is_full and not self._queue.closed:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        raise QueueFull(f"command queue stayed full for {timeout}s")
                    self._cond.wait(remaining)
                    self._check_alarm(text)
            entry = self._queue.enqueue(text, line_index)
            self._cond.notify_all()
            return entry

    def _check_alarm(self, text: str) -> None:
        if self._status.state is MachineState.ALARM and not allowed_in_alarm(text):
            code = self._status.alarm_code
            raise MachineInAlarm(
                f"controller is in alarm; {text.strip()!r} refused until unlock or reset",
                code,
            )

    def pump(self) -> int:
        """Write every queued line that fits in the remaining budget.

        Returns:
            Number of lines written

        Raises:
            TransportError: From the write callable; the line stays queued
        """
        sent = 0
        with self._cond:
            while True:
                entry = self._queue.next_sendable(self.available_bytes)
                if entry is None:
                    break
                self._write(entry.payload)
                self._queue.mark_sent(entry, self._clock())
                sent += 1
                logger.debug(f"Sent {entry.text!r} ({self._queue.outstanding_bytes}/{self.budget} bytes)")
            if sent:
                if not self.status_polling and self._status.state is MachineState.IDLE:
                    self._publish_status(self._status.replace(state=MachineState.RUN, substate=None))
                self._cond.notify_all()
        return sent

    def wait_sendable(self, timeout: float | None = None) -> bool:
        """Block until a queued line fits the budget, or ``timeout`` passes."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._queue.next_sendable(self.available_bytes) is not None,
                timeout,
            )

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued line has been acknowledged or dropped."""
        with self._cond:
            return self._cond.wait_for(lambda: len(self._queue) == 0, timeout)

    def pause(self) -> None:
        """Stop feeding queued lines without holding the machine."""
        with self._cond:
            self._queue.pause()

    def resume(self) -> None:
        with self._cond:
            self._queue.resume()
            self._cond.notify_all()

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._queue.paused

    def clear(self) -> int:
        """Drop every queued and in-flight line; returns how many were dropped.

        The controller still answers the lines already written to it. Those
        replies are counted and discarded as they arrive.
        """
        with self._cond:
            dropped = self._drop_all()
            self._cond.notify_all()
            return dropped

    def _drop_all(self) -> int:
        self._stale_acks += self._queue.in_flight_count
        return self._queue.clear()

    # ========================================================================
    # REAL-TIME COMMANDS
    # ========================================================================

    def realtime(self, command: RealtimeCommand) -> None:
        """Write one real-time byte ahead of anything queued.

        The byte is never queued and never counted against the budget.

        Raises:
            TransportError: From the write callable
        """
        with self._cond:
            self._write(command.byte)
            state = self._status.state
            if command is RealtimeCommand.FEED_HOLD and state in (MachineState.RUN, MachineState.JOG):
                self._publish_status(self._status.replace(state=MachineState.HOLD, substate=None))
            elif command is RealtimeCommand.CYCLE_START and state is MachineState.HOLD:
                self._publish_status(self._status.replace(state=MachineState.RUN, substate=None))
            elif command is RealtimeCommand.SOFT_RESET:
                self._after_soft_reset()
            elif command.is_override:
                overrides = expected_overrides(self._status.overrides, command)
                if overrides != self._status.overrides:
                    self._publish_status(self._status.replace(overrides=overrides))

    def _after_soft_reset(self) -> None:
        dropped = self._queue.clear()
        self._queue.close()
        self._queue.resume()
        self._awaiting_banner = True
        self._alarm_latched = False
        self._stale_acks = 0
        self._rx_window = self.rx_buffer_size
        logger.info(f"Soft reset sent; {dropped} queued line(s) dropped, waiting for banner")
        self._publish_status(
            self._status.replace(state=MachineState.IDLE, substate=None, alarm_code=None)
        )
        self._cond.notify_all()

    def feed_hold(self) -> None:
        self.realtime(RealtimeCommand.FEED_HOLD)

    def cycle_start(self) -> None:
        self.realtime(RealtimeCommand.CYCLE_START)

    def soft_reset(self) -> None:
        self.realtime(RealtimeCommand.SOFT_RESET)

    def status_query(self) -> None:
        self.realtime(RealtimeCommand.STATUS)

    def jog_cancel(self) -> None:
        self.realtime(RealtimeCommand.JOG_CANCEL)

    def safety_door(self) -> None:
        self.realtime(RealtimeCommand.SAFETY_DOOR)

    def override(self, command: RealtimeCommand) -> None:
        """Send one feed, rapid or spindle override byte."""
        if not command.is_override:
            raise ValueError(f"{command.name} is not an override command")
        self.realtime(command)

    def adjust_override(self, kind: str, delta: int) -> None:
        """Change the feed or spindle override by ``delta`` percent."""
        with self._lock:
            for command in override_commands(kind, delta):
                self.realtime(command)

    def set_rapid_override(self, percent: int) -> None:
        self.realtime(rapid_command(percent))

    def abort(self) -> None:
        """Soft reset the controller and drop everything queued."""
        with self._cond:
            self.realtime(RealtimeCommand.SOFT_RESET)
            self._queue.clear()

    # ========================================================================
    # RECEIVING
    # ========================================================================

    def handle_line(self, line: str) -> Response | None:
        """Process one line received from the controller.

        Returns:
            The classified response, or None for a blank line

        Raises:
            ProtocolDesync: Acknowledgment with nothing in flight or owed, or a
                second alarm while the first is still latched
        """
        if not line.strip():
            return None
        response = parse_response(line)
        with self._cond:
            kind = response.kind
            if kind in (ResponseKind.OK, ResponseKind.ERROR):
                self._on_ack(response)
            elif kind is ResponseKind.ALARM:
                self._on_alarm(response.code)
            elif kind is ResponseKind.STATUS:
                self._on_status(response.status)
            elif kind is ResponseKind.WELCOME:
                self._on_banner(response.version)
            elif kind is ResponseKind.SETTING:
                number, value = response.setting
                self._settings[number] = value
                self._publish("setting", number, value)
            elif kind is ResponseKind.FEEDBACK:
                self._on_feedback(response.text)
            else:
                logger.info(f"GRBL: {response.text}")
                self._publish("message", response.text)
        return response

    def _on_ack(self, response: Response) -> None:
        if self._awaiting_banner and self._queue.in_flight_count == 0:
            logger.debug(f"Ignoring {response.raw!r} received before the boot banner")
            return
        if self._stale_acks:
            self._stale_acks -= 1
            logger.debug(f"Discarding {response.raw!r} for a dropped line ({self._stale_acks} still owed)")
            return
        try:
            entry = self._queue.acknowledge()
        except ProtocolDesync as exc:
            raise ProtocolDesync(str(exc), response.raw) from exc
        self._last_ack = self._clock()
        if response.kind is ResponseKind.OK:
            if is_unlock(entry.text) and self._status.state is MachineState.ALARM:
                self._alarm_latched = False
                logger.info(f"Alarm cleared by {entry.text}")
                self._publish_status(
                    self._status.replace(state=MachineState.IDLE, substate=None, alarm_code=None)
                )
            self._publish("ack", entry)
        else:
            error = ControllerError(
                response.code, describe_error(response.code), entry.text, entry.line_index
            )
            logger.error(f"GRBL {error}")
            self._publish("ack", entry)
            self._publish("controller_error", error)
        self._cond.notify_all()

    def _on_alarm(self, code: int) -> None:
        description = describe_alarm(code)
        latched = self._alarm_latched
        dropped = self._drop_all()
        self._alarm_latched = True
        logger.warning(f"GRBL ALARM:{code} {description}; {dropped} queued line(s) dropped")
        self._publish_status(
            self._status.replace(state=MachineState.ALARM, substate=None, alarm_code=code)
        )
        self._publish("alarm", code, description)
        self._cond.notify_all()
        if latched:
            raise ProtocolDesync(
                f"ALARM:{code} received while a previous alarm was still latched",
                f"ALARM:{code}",
            )

    def _on_banner(self, version: str | None) -> None:
        dropped = self._queue.clear()
        if dropped and not self._awaiting_banner:
            logger.warning(f"Controller restarted unexpectedly; {dropped} queued line(s) dropped")
        self._queue.reopen()
        self._awaiting_banner = False
        self._alarm_latched = False
        self._stale_acks = 0
        self._rx_window = self.rx_buffer_size
        self._settings.clear()
        logger.info(f"GRBL {version} ready")
        self._publish_status(
            self._status.replace(
                state=MachineState.IDLE,
                substate=None,
                alarm_code=None,
                firmware_version=version,
            )
        )
        self._publish("ready", version)
        self._cond.notify_all()

    def _on_status(self, report: StatusReport) -> None:
        if report.work_offset is not None:
            self._work_offset = report.work_offset
        changes: dict[str, Any] = {}
        if report.state is not None:
            changes["state"] = report.state
            changes["substate"] = report.substate
            if report.state is not MachineState.ALARM:
                self._alarm_latched = False
                changes["alarm_code"] = None
        mpos = machine_position_from(report, self._work_offset)
        wpos = work_position_from(report, self._work_offset)
        if mpos is not None:
            changes["machine_position"] = mpos
        if wpos is not None:
            changes["work_position"] = wpos
        if self._work_offset is not None:
            changes["work_offset"] = self._work_offset
        for field in (
            "overrides",
            "feed_rate",
            "spindle_speed",
            "planner_blocks_free",
            "rx_bytes_free",
            "line_number",
        ):
            value = getattr(report, field)
            if value is not None:
                changes[field] = value
        changes["pins"] = report.pins or ""
        if report.accessories is not None:
            changes["accessories"] = report.accessories
        if report.rx_bytes_free is not None and self._queue.in_flight_count == 0:
            window = max(self.rx_buffer_size, report.rx_bytes_free)
            if window != self._rx_window:
                logger.info(f"RX buffer window recalibrated to {window} bytes")
                self._rx_window = window
                self._cond.notify_all()
        if self._shows_progress(report, changes):
            self._progress_at = self._clock()
        if self._stale_acks and self._drained(report):
            logger.info(f"Controller drained; {self._stale_acks} reply(ies) for dropped lines never came")
            self._stale_acks = 0
        self._publish_status(self._status.replace(**changes))

    def _shows_progress(self, report: StatusReport, changes: dict[str, Any]) -> bool:
        if report.state in (MachineState.RUN, MachineState.JOG, MachineState.HOME):
            return True
        position = changes.get("machine_position")
        if position is not None and position != self._status.machine_position:
            return True
        return (
            report.planner_blocks_free is not None
            and report.planner_blocks_free != self._status.planner_blocks_free
        )

    def _drained(self, report: StatusReport) -> bool:
        # An alarm resets GRBL and flushes its RX buffer without replying.
        # Replies are written before later reports, so none can still come.
        if self._queue.in_flight_count or report.state not in (MachineState.IDLE, MachineState.ALARM):
            return False
        return report.rx_bytes_free is None or report.rx_bytes_free >= self._rx_window - 1

    def _on_feedback(self, text: str) -> None:
        tag, value = split_feedback(text)
        if tag == "GC":
            words = parse_parser_state(value)
            system = words.get("coordinate_system")
            if system and system != self._status.coordinate_system:
                self._publish_status(self._status.replace(coordinate_system=system))
        elif tag == "PRB":
            probe = parse_probe(value)
            if probe is not None:
                self._publish("probe", *probe)
                return
        elif tag == "MSG" and "reset to continue" in value.lower():
            if self._status.state is not MachineState.ALARM:
                self._publish_status(self._status.replace(state=MachineState.ALARM, substate=None))
        self._publish("feedback", tag, value)

    # ========================================================================
    # TIMEOUTS AND CONNECTION
    # ========================================================================

    def check_timeout(self, now: float | None = None) -> None:
        """Raise if the oldest in-flight line has waited too long for its reply.

        The wait is measured from the latest of its send time, the last
        acknowledgment and the last status report showing the machine at
        work (running, jogging, homing, moving or draining the planner).
        Hold, door and sleep states stop the clock; it restarts when the
        machine leaves them. Nothing is retried.

        Raises:
            ProtocolTimeout: With the unacknowledged command and the wait
        """
        with self._lock:
            now = self._clock() if now is None else now
            if self._status.state.pauses_timeouts:
                self._paused_seen_at = now
                return
            head = self._queue.head_in_flight()
            if head is None or not self.ack_timeout or head.sent_at is None:
                return
            waited = now - max(head.sent_at, self._last_ack, self._paused_seen_at, self._progress_at)
            if waited > self.ack_timeout:
                raise ProtocolTimeout(
                    f"no reply to {head.text!r} after {waited:.1f}s",
                    head,
                    waited,
                )

    def connection_opened(self) -> None:
        """Mark the link up; queue and budget start empty."""
        with self._cond:
            self._reset_state()
            self._publish_status(MachineStatus(connected=True))

    def reset_connection(self) -> None:
        """Forget everything about the controller and publish the disconnected status."""
        with self._cond:
            self._reset_state()
            self._publish_status(MachineStatus())

    def _reset_state(self) -> None:
        self._queue.clear()
        self._queue.reopen()
        self._queue.resume()
        self._awaiting_banner = False
        self._alarm_latched = False
        self._rx_window = self.rx_buffer_size
        self._work_offset = None
        self._settings.clear()
        self._last_ack = 0.0
        self._paused_seen_at = 0.0
        self._progress_at = 0.0
        self._stale_acks = 0
        self._cond.notify_all()

    # ========================================================================
    # INTERNAL HELPERS
    # ========================================================================

    def _publish_status(self, status: MachineStatus) -> None:
        self._status = status
        self._publish("status", status)

    def _publish(self, *event: Any) -> None:
        if self.event_q is None:
            return
        self.event_q.put(event)
