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

"""Custom exceptions for GRBL Streamer.

This module defines specific exception types for different error conditions,
enabling better error handling and debugging throughout the application.
"""

from typing import Any, Optional, Sequence


class GrblStreamerException(Exception):
    """Base exception for all GRBL Streamer errors."""
    pass


# ============================================================================
# TRANSPORT EXCEPTIONS
# ============================================================================

class TransportError(GrblStreamerException):
    """Base exception for transport (serial/TCP) errors."""
    pass


class TransportConnectError(TransportError):
    """Failed to open the transport."""
    pass


class TransportWriteError(TransportError):
    """Failed to write data to the transport."""
    pass


class TransportReadError(TransportError):
    """Failed to read data from the transport."""
    pass


class TransportNotConnectedError(TransportError):
    """Attempted I/O on a transport that is not connected."""
    pass


# ============================================================================
# G-CODE EXCEPTIONS
# ============================================================================

class GcodeException(GrblStreamerException):
    """Base exception for G-code related errors.

    Every G-code error is local to one source line.
    """

    kind = "gcode"

    def __init__(
        self,
        message: str,
        line_index: Optional[int] = None,
        line_content: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.line_index = line_index
        self.line_content = line_content

    def __str__(self) -> str:
        if self.line_index is None:
            return self.message
        return f"line {self.line_index + 1}: {self.message}"


class LexError(GcodeException):
    """Malformed token (invalid character, bad number, unterminated comment)."""

    kind = "lex"

    def __init__(
        self,
        message: str,
        column: int,
        line_index: Optional[int] = None,
        line_content: Optional[str] = None,
    ):
        super().__init__(message, line_index, line_content)
        self.column = column

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (column {self.column})"


class ParseError(GcodeException):
    """Modal group conflict, unknown code, or misplaced parameter word."""

    kind = "parse"

    def __init__(
        self,
        message: str,
        word: Optional[str] = None,
        line_index: Optional[int] = None,
        line_content: Optional[str] = None,
    ):
        super().__init__(message, line_index, line_content)
        self.word = word


class GeometryError(GcodeException):
    """Arc definition that cannot be realised (radius mismatch, bad R)."""

    kind = "geometry"


class GcodeProgramError(GcodeException):
    """A program with load diagnostics was submitted for streaming."""

    def __init__(self, message: str, diagnostics: Sequence[Any] = ()):
        super().__init__(message)
        self.diagnostics = list(diagnostics)


class GcodeFileError(GcodeException):
    """Error reading a G-code file."""
    pass


# ============================================================================
# QUEUE / PROTOCOL EXCEPTIONS
# ============================================================================

class GrblException(GrblStreamerException):
    """Base exception for GRBL-related errors."""
    pass


class QueueClosed(GrblException):
    """The command queue is closed (after a soft reset, before the banner)."""
    pass


class QueueFull(GrblException):
    """The command queue reached its capacity."""
    pass


class InvalidCommandError(GrblException):
    """A command can never be transmitted (non-ASCII, too long, empty)."""
    pass


class MachineInAlarm(GrblException):
    """GRBL is in alarm state; only unlock/home/reset are accepted."""

    def __init__(self, message: str, alarm_code: Optional[int] = None):
        super().__init__(message)
        self.alarm_code = alarm_code


class ProtocolTimeout(GrblException):
    """No ok/error arrived for the oldest in-flight command in time."""

    def __init__(self, message: str, command: Any = None, waited: float = 0.0):
        super().__init__(message)
        self.command = command
        self.waited = waited


class ProtocolDesync(GrblException):
    """Local and controller state diverged; only a soft reset recovers."""

    def __init__(self, message: str, response: Optional[str] = None):
        super().__init__(message)
        self.response = response


# ============================================================================
# SETTINGS EXCEPTIONS
# ============================================================================

class SettingsException(GrblStreamerException):
    """Base exception for settings errors."""
    pass


class SettingsLoadError(SettingsException):
    """Failed to load settings file."""
    pass


class SettingsSaveError(SettingsException):
    """Failed to save settings file."""
    pass


class SettingsValidationError(SettingsException):
    """Settings validation failed."""
    pass


# ============================================================================
# VALIDATION EXCEPTIONS
# ============================================================================

class ValidationException(GrblStreamerException):
    """Base exception for validation errors."""
    pass


class InvalidParameterError(ValidationException):
    """Invalid parameter value."""

    def __init__(self, parameter_name: str, value: Any, reason: Optional[str] = None):
        self.parameter_name = parameter_name
        self.value = value
        self.reason = reason

        message = f"Invalid value for '{parameter_name}': {value}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class InvalidRangeError(ValidationException):
    """Value out of valid range."""

    def __init__(self, value, min_val, max_val):
        self.value = value
        self.min_val = min_val
        self.max_val = max_val

        message = f"Value {value} out of range [{min_val}, {max_val}]"
        super().__init__(message)
