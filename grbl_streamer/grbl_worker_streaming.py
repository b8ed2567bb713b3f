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

"""Program streaming for the GRBL worker.

A per-job ``GRBL-Producer`` thread walks the program's outbound lines into
the engine's queue, blocking while it is full; the ``GRBL-TX`` thread moves
queued lines onto the wire as the byte budget allows.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from grbl_streamer.gcode_program import GcodeProgram
from grbl_streamer.types import GrblWorkerState, StreamState
from grbl_streamer.utils.constants import EVENT_QUEUE_TIMEOUT, PRODUCER_ENQUEUE_TIMEOUT
from grbl_streamer.utils.exceptions import (
    MachineInAlarm,
    QueueClosed,
    QueueFull,
    TransportError,
)

logger = logging.getLogger(__name__)


class GrblWorkerStreamingMixin(GrblWorkerState):
    def is_streaming(self) -> bool:
        """Check if a program is being streamed.

        Returns:
            True while a job's lines are being queued or acknowledged
        """
        return self._streaming

    def set_pause_on_error(self, enabled: bool) -> None:
        """Stop feeding the job when the controller answers ``error:<n>``."""
        self._pause_on_error = bool(enabled)

    @property
    def program(self) -> GcodeProgram | None:
        return self._program

    def load_program(self, program: GcodeProgram) -> None:
        """Load a checked program for streaming.

        Raises:
            GcodeProgramError: If the program has load diagnostics
        """
        program.require_ok()
        with self._job_lock:
            self._program = program
            self._job_total = len(program)
            self._job_acked = 0
        self.ui_q.put(("stream_state", "loaded", len(program)))
        logger.info(f"Loaded {len(program)} lines of G-code")

    def start_stream(self, program: GcodeProgram | None = None) -> bool:
        """Start streaming ``program`` (or the loaded one) from the beginning.

        Returns:
            True if the job started

        Raises:
            GcodeProgramError: If the program has load diagnostics; nothing is sent
        """
        if program is not None:
            self.load_program(program)
        if not self.is_connected():
            logger.warning("Cannot start stream - not connected")
            return False
        if self._program is None:
            logger.warning("Cannot start stream - no G-code loaded")
            return False
        if self.engine.in_alarm:
            logger.warning("Cannot start stream - controller is in alarm")
            self.ui_q.put(("stream_state", "alarm", "unlock or reset first"))
            return False

        with self._job_lock:
            if self._streaming:
                logger.warning("Cannot start stream - already streaming")
                return False
            job = self._program
            self._abort_evt = threading.Event()
            self._streaming = True
            self._job_total = len(job)
            self._job_acked = 0
            self._job_errors = []
            self.engine.resume()
            self._producer_thread = threading.Thread(
                target=self._producer_loop,
                args=(job, self._abort_evt),
                daemon=True,
                name="GRBL-Producer",
            )
        self.ui_q.put(("progress", 0, self._job_total))
        self.ui_q.put(("stream_state", "running", None))
        self._producer_thread.start()
        logger.info(f"Started streaming {job.name or 'program'} ({len(job)} lines)")
        return True

    def pause_stream(self) -> None:
        """Pause active stream (feed hold)."""
        if not self._streaming:
            return
        try:
            self.engine.feed_hold()
        except TransportError as exc:
            logger.error(f"Pause failed: {exc}")
            self.ui_q.put(("log", f"[pause failed] {exc}"))
            return
        self.ui_q.put(("stream_state", "paused", None))
        logger.info("Stream paused")

    def resume_stream(self) -> None:
        """Resume a held or error-paused stream (cycle start)."""
        if not self._streaming:
            return
        self.engine.resume()
        try:
            self.engine.cycle_start()
        except TransportError as exc:
            logger.error(f"Resume failed: {exc}")
            self.ui_q.put(("log", f"[resume failed] {exc}"))
            return
        self.ui_q.put(("stream_state", "running", None))
        logger.info("Stream resumed")

    def stop_stream(self) -> None:
        """Stop active stream: soft reset and drop everything queued."""
        was_streaming = self._streaming
        self._abort_job("stopped")
        try:
            self.engine.abort()
        except TransportError as exc:
            logger.error(f"Stop failed: {exc}")
            self.ui_q.put(("log", f"[stop failed] {exc}"))
        if was_streaming:
            self.ui_q.put(("stream_state", "stopped", None))
        logger.info("Stream stopped")

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        """Block until the current job's producer finishes.

        Returns:
            True if no job is running when the call returns
        """
        thread = self._producer_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return not self._streaming

    @property
    def job_errors(self) -> list:
        """Controller errors reported against the current or last job."""
        return list(self._job_errors)

    def _abort_job(self, reason: str | None = None) -> None:
        with self._job_lock:
            if self._streaming and not self._abort_evt.is_set():
                logger.info(f"Aborting job ({reason or 'requested'})")
            self._abort_evt.set()

    def _finish_job(self, state: StreamState, detail: Any = None) -> None:
        with self._job_lock:
            self._streaming = False
        self.ui_q.put(("stream_state", state, detail))
        logger.info(f"Job finished: {state} ({self._job_acked}/{self._job_total} lines acknowledged)")

    def _producer_loop(self, program: GcodeProgram, abort_evt: threading.Event) -> None:
        """Producer thread - queues the job's outbound lines in order."""
        logger.debug("Producer thread started")
        try:
            for line in program.outbound():
                while True:
                    if abort_evt.is_set():
                        return
                    try:
                        self.engine.enqueue(
                            line.text,
                            line.line_index,
                            block=True,
                            timeout=PRODUCER_ENQUEUE_TIMEOUT,
                        )
                        break
                    except QueueFull:
                        continue
            while not abort_evt.is_set():
                if self.engine.wait_until_idle(PRODUCER_ENQUEUE_TIMEOUT):
                    break
            if abort_evt.is_set():
                return
            if self.engine.in_alarm:
                self._finish_job("alarm", self.engine.status.alarm_code)
            elif self._job_acked < self._job_total:
                self._finish_job("stopped", "controller dropped queued lines")
            else:
                self._finish_job("done", len(self._job_errors))
        except MachineInAlarm as e:
            if not abort_evt.is_set():
                self._finish_job("alarm", e.alarm_code)
        except QueueClosed:
            # whoever set abort_evt has already reported the end of the job
            if not abort_evt.is_set():
                self._finish_job("stopped", "controller reset")
        except Exception as e:
            logger.error(f"Producer thread error: {e}", exc_info=True)
            self._emit_exception("Producer thread error", e)
            self._finish_job("error", str(e))
        finally:
            with self._job_lock:
                self._streaming = False
            logger.debug("Producer thread stopped")

    def _tx_loop(self, stop_evt: threading.Event) -> None:
        """Transmit thread - writes queued lines whenever the budget allows.

        Args:
            stop_evt: Event to signal thread shutdown
        """
        logger.debug("TX thread started")
        try:
            while not stop_evt.is_set():
                if self.engine.wait_sendable(EVENT_QUEUE_TIMEOUT * 10):
                    self.engine.pump()
        except TransportError as e:
            logger.error(f"Write error: {e}")
            self._signal_disconnect(f"Write error: {e}")
        except Exception as e:
            logger.error(f"TX thread error: {e}", exc_info=True)
            self._emit_exception("TX thread error", e)
            self._signal_disconnect(f"TX thread error: {e}")
        finally:
            logger.debug("TX thread stopped")

    def _on_engine_event(self, event: tuple) -> None:
        """Translate engine events into job progress, then forward them."""
        kind = event[0]
        if kind == "ack":
            entry = event[1]
            if self._streaming and entry.line_index is not None:
                self._job_acked += 1
                self.ui_q.put(("gcode_acked", entry.line_index))
                self.ui_q.put(("progress", self._job_acked, self._job_total))
            return
        if kind == "controller_error":
            error = event[1]
            if self._streaming and error.line_index is not None:
                self._job_errors.append(error)
                name = self._program.name if self._program else None
                self.ui_q.put(("stream_error", error, name))
                if self._pause_on_error:
                    self.engine.pause()
                    self.ui_q.put(("stream_state", "paused", "error"))
            else:
                self.ui_q.put(("manual_error", error, self._last_manual_source))
            return
        self.ui_q.put(event)
