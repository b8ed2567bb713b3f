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

"""Command-line entry point: check a G-code file, or stream it to GRBL."""

from __future__ import annotations

import argparse
import logging
import queue
import sys
import time

from grbl_streamer import __version__
from grbl_streamer.gcode_preprocessor import Preprocessor
from grbl_streamer.gcode_program import GcodeProgram, load_program
from grbl_streamer.grbl_worker import GrblWorker
from grbl_streamer.transports import SerialTransport, TcpTransport, available_ports
from grbl_streamer.types import UiEvent
from grbl_streamer.utils.config import Settings
from grbl_streamer.utils.constants import BAUD_DEFAULT, TCP_PORT_DEFAULT
from grbl_streamer.utils.exceptions import GrblStreamerException, SettingsSaveError
from grbl_streamer.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

BOOT_WAIT_DEFAULT = 3.0
_FINAL_STATES = ("done", "stopped", "alarm", "error")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grbl-streamer",
        description="Check G-code programs and stream them to a GRBL 1.1 controller.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--settings", help="Settings file (default: per-user settings.json)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase verbosity; -v=INFO, -vv=DEBUG")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only show errors")
    parser.add_argument("--no-log-files", action="store_true",
                        help="Log to the console only")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Load a program and report every problem found")
    _add_program_args(check)
    check.add_argument("--print", dest="print_lines", action="store_true",
                       help="Print the lines that would be sent")

    stream = sub.add_parser("stream", help="Stream a program to the controller")
    _add_program_args(stream)
    target = stream.add_mutually_exclusive_group(required=True)
    target.add_argument("--port", help="Serial port (e.g., /dev/ttyUSB0 or COM3)")
    target.add_argument("--host", help="Host of a network-attached controller")
    stream.add_argument("--baud", type=int, default=None,
                        help=f"Serial baud rate (default {BAUD_DEFAULT})")
    stream.add_argument("--tcp-port", type=int, default=None,
                        help=f"TCP port (default {TCP_PORT_DEFAULT})")
    stream.add_argument("--rx-buffer", type=int, default=None,
                        help="Controller RX buffer size in bytes")
    stream.add_argument("--boot-wait", type=float, default=BOOT_WAIT_DEFAULT,
                        help="Seconds to wait for the controller banner")
    stream.add_argument("--continue-on-error", action="store_true",
                        help="Keep streaming after an error:<n> reply")

    sub.add_parser("ports", help="List serial ports")
    return parser


def _add_program_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", help="G-code file")
    parser.add_argument("--arc-tolerance", type=float, default=None,
                        help="Maximum chord deviation from true arcs, mm")
    parser.add_argument("--arcs-as-lines", action="store_true", default=None,
                        help="Send arcs as G1 chord lines")


def _log_level(args: argparse.Namespace) -> int:
    if args.verbose >= 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    if args.quiet:
        return logging.ERROR
    return logging.WARNING


def _load(args: argparse.Namespace, settings: Settings) -> GcodeProgram | None:
    overrides = {}
    if args.arc_tolerance is not None:
        overrides["arc_tolerance"] = args.arc_tolerance
    if args.arcs_as_lines:
        overrides["arcs_as_lines"] = True

    def make_preprocessor() -> Preprocessor:
        return Preprocessor.from_settings(settings, **overrides)

    program = load_program(args.file, make_preprocessor)
    if program is None:
        return None
    for diagnostic in program.diagnostics:
        print(f"{args.file}: {diagnostic}", file=sys.stderr)
    if program.dropped_diagnostics:
        print(f"{args.file}: {program.dropped_diagnostics} more problem(s) not shown", file=sys.stderr)
    return program


def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    program = _load(args, settings)
    if program is None:
        return 1
    if args.print_lines:
        for line in program.outbound():
            print(line.text)
    bounds = program.bounds()
    print(f"{program.total_lines} lines read, {len(program)} to send, "
          f"{len(program.diagnostics) + program.dropped_diagnostics} problem(s)")
    if bounds is not None:
        lo, hi = bounds
        print("Extents (mm): " + "  ".join(
            f"{axis} {a:.3f}..{b:.3f}" for axis, a, b in zip("XYZ", lo, hi)
        ))
    return 0 if program.ok else 1


def _wait_for(events: queue.Queue, kind: str, timeout: float) -> UiEvent | None:
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            event = events.get(timeout=remaining)
        except queue.Empty:
            return None
        if event[0] == kind:
            return event


def cmd_stream(args: argparse.Namespace, settings: Settings) -> int:
    program = _load(args, settings)
    if program is None:
        return 1
    if not program.ok:
        print("Not streaming: fix the problems above first.", file=sys.stderr)
        return 1
    settings.add_recent_file(args.file)
    try:
        settings.save()
    except SettingsSaveError as e:
        logger.warning(f"Could not save recent files: {e}")

    if args.rx_buffer is not None:
        settings.set("controller.rx_buffer_size", args.rx_buffer)
    if args.port:
        transport = SerialTransport(args.port, args.baud or settings.get("connection.baud_rate", BAUD_DEFAULT))
    else:
        transport = TcpTransport(args.host, args.tcp_port or settings.get("connection.tcp_port", TCP_PORT_DEFAULT))

    events: queue.Queue = queue.Queue()
    with GrblWorker(events, settings) as worker:
        worker.set_pause_on_error(not args.continue_on_error)
        worker.connect(transport)
        if _wait_for(events, "ready", args.boot_wait) is None:
            logger.info("No banner yet; sending soft reset")
            worker.reset()
            if _wait_for(events, "ready", args.boot_wait) is None:
                print("Controller did not answer with a GRBL banner.", file=sys.stderr)
                return 1
        if not worker.start_stream(program):
            return 1
        try:
            result = _follow_job(events, program)
            if worker.is_streaming():
                worker.stop_stream()
            return result
        except KeyboardInterrupt:
            print("\nStopping (soft reset)...", file=sys.stderr)
            worker.stop_stream()
            return 130


def _follow_job(events: queue.Queue, program: GcodeProgram) -> int:
    total = len(program)
    last_percent = -1
    while True:
        event: UiEvent = events.get()
        kind = event[0]
        if kind == "progress":
            done = event[1]
            percent = (100 * done // total) if total else 100
            if percent != last_percent:
                last_percent = percent
                print(f"\r{done}/{total} lines ({percent}%)", end="", flush=True)
        elif kind == "stream_error":
            error = event[1]
            print(f"\n{error}", file=sys.stderr)
        elif kind == "alarm":
            print(f"\nALARM:{event[1]} {event[2]}", file=sys.stderr)
        elif kind == "stream_state" and event[1] == "paused" and event[2] == "error":
            print("Job paused after a controller error; stopping.", file=sys.stderr)
            return 1
        elif kind == "stream_state" and event[1] in _FINAL_STATES:
            print()
            print(f"Job {event[1]}")
            return 0 if event[1] == "done" else 1
        elif kind == "conn" and not event[1]:
            print("\nConnection lost", file=sys.stderr)
            return 1


def cmd_ports(args: argparse.Namespace, settings: Settings) -> int:
    ports = available_ports()
    for port in ports:
        print(port)
    if not ports:
        print("No serial ports found", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(console_level=_log_level(args), file_logging=not args.no_log_files)

    settings = Settings(args.settings)
    settings.load()
    handlers = {"check": cmd_check, "stream": cmd_stream, "ports": cmd_ports}
    try:
        return handlers[args.command](args, settings)
    except GrblStreamerException as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
