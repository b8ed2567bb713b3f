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

"""Logging setup for GRBL Streamer."""

from __future__ import annotations

import logging
import logging.handlers
import tempfile
from pathlib import Path

from .config import get_settings_path

APP_LOGGER_NAME = "grbl_streamer"
SERIAL_LOGGER_NAME = f"{APP_LOGGER_NAME}.serial"
LOG_DIRNAME = "logs"


def _handler_exists(logger: logging.Logger, name: str) -> bool:
    return any(handler.get_name() == name for handler in logger.handlers)


def get_log_dir() -> Path:
    """Resolve the directory for log files (creates it if needed)."""
    log_dir = Path(get_settings_path()).parent / LOG_DIRNAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
    except OSError:
        fallback = Path(tempfile.gettempdir()) / "grbl_streamer_logs"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def _rotating(path: Path, level: int, fmt: logging.Formatter, name: str,
              max_bytes: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.set_name(name)
    return handler


def setup_logging(
    console_level: int = logging.INFO,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> logging.Logger:
    """Initialize logging: console output plus rotating application, error
    and serial-traffic logs.

    Calling it more than once is harmless; handlers are matched by name.

    Args:
        console_level: Level for the console handler
        log_dir: Directory for log files (defaults next to the settings file)
        file_logging: Disable to only log to the console

    Returns:
        The package root logger
    """
    root = logging.getLogger(APP_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    root.propagate = False

    if not _handler_exists(root, "grbl_streamer_console"):
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        )
        console.set_name("grbl_streamer_console")
        root.addHandler(console)

    if not file_logging:
        return root

    log_dir = Path(log_dir) if log_dir is not None else get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    if not _handler_exists(root, "grbl_streamer_app_file"):
        root.addHandler(_rotating(
            log_dir / "grbl_streamer.log",
            logging.DEBUG,
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"),
            "grbl_streamer_app_file",
            10_000_000,
            5,
        ))

    if not _handler_exists(root, "grbl_streamer_error_file"):
        root.addHandler(_rotating(
            log_dir / "errors.log",
            logging.WARNING,
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s:%(lineno)d\n%(message)s\n"),
            "grbl_streamer_error_file",
            2_000_000,
            5,
        ))

    # Raw controller traffic; very chatty at DEBUG while streaming.
    serial_logger = logging.getLogger(SERIAL_LOGGER_NAME)
    serial_logger.setLevel(logging.DEBUG)
    if not _handler_exists(serial_logger, "grbl_streamer_serial_file"):
        serial_logger.addHandler(_rotating(
            log_dir / "serial.log",
            logging.DEBUG,
            logging.Formatter(
                "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ),
            "grbl_streamer_serial_file",
            5_000_000,
            3,
        ))

    return root
