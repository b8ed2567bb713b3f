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

"""Constants and configuration values for GRBL Streamer.

Transport, buffer, geometry and timing defaults, plus the GRBL realtime bytes
and the ``$n`` setting tables.
"""

from typing import Dict, Tuple

# ============================================================================
# SERIAL COMMUNICATION CONSTANTS
# ============================================================================

BAUD_DEFAULT = 115200
"""Baud rate of a stock GRBL 1.1 build."""

VALID_BAUD_RATES = (9600, 19200, 38400, 57600, 115200, 230400)
"""Baud rates accepted by GRBL builds."""

TCP_PORT_DEFAULT = 23
"""Default TCP port for network-attached controllers (telnet bridges)."""

STATUS_POLL_DEFAULT = 0.2
"""Seconds between ``?`` status polls."""

STATUS_POLL_INTERVAL_MIN = 0.05
"""Fastest status poll accepted, seconds."""

# ============================================================================
# GRBL BUFFER MANAGEMENT
# ============================================================================

RX_BUFFER_SIZE = 128
"""GRBL RX buffer size in bytes (serial ring buffer as compiled in GRBL 1.1)."""

RX_BUFFER_RESERVE = 1
"""Bytes held back from the RX buffer; the ring buffer keeps one slot empty."""

MAX_LINE_LENGTH = 80
"""Longest line GRBL 1.1 accepts, newline included."""

QUEUE_CAPACITY_DEFAULT = 1024
"""Maximum number of commands waiting in the command queue."""

ACK_TIMEOUT_DEFAULT = 30.0
"""Seconds to wait for ok/error on the oldest in-flight command."""

# ============================================================================
# GRBL REAL-TIME COMMAND BYTES
# ============================================================================

RT_RESET = b"\x18"
"""Soft reset (Ctrl-X)."""

RT_STATUS = b"?"
"""Request one status report."""

RT_HOLD = b"!"
"""Feed hold."""

RT_RESUME = b"~"
"""Cycle start, resumes a hold."""

RT_SAFETY_DOOR = b"\x84"
"""Safety door."""

RT_JOG_CANCEL = b"\x85"
"""Cancel the active jog."""

# Feed override commands
RT_FO_RESET = b"\x90"
RT_FO_PLUS_10 = b"\x91"
RT_FO_MINUS_10 = b"\x92"
RT_FO_PLUS_1 = b"\x93"
RT_FO_MINUS_1 = b"\x94"

# Rapid override commands
RT_RO_RESET = b"\x95"
RT_RO_50 = b"\x96"
RT_RO_25 = b"\x97"

# Spindle override commands
RT_SO_RESET = b"\x99"
RT_SO_PLUS_10 = b"\x9A"
RT_SO_MINUS_10 = b"\x9B"
RT_SO_PLUS_1 = b"\x9C"
RT_SO_MINUS_1 = b"\x9D"
RT_SO_STOP = b"\x9E"

# Coolant toggles
RT_COOLANT_FLOOD = b"\xA0"
RT_COOLANT_MIST = b"\xA1"

# ============================================================================
# G-CODE GEOMETRY CONSTANTS
# ============================================================================

MM_PER_INCH = 25.4
"""Unit scale applied to words parsed under G20."""

ARC_TOLERANCE_DEFAULT = 0.002
"""Maximum chord deviation from the true arc, mm (GRBL $12 default)."""

ARC_RADIUS_EPSILON_DEFAULT = 0.005
"""Absolute start/end radius mismatch allowed for offset-form arcs, mm."""

ARC_RADIUS_RATIO_DEFAULT = 0.001
"""Radius mismatch allowed as a fraction of the arc radius."""

OUTPUT_DECIMALS_DEFAULT = 4
"""Decimal places used when formatting outbound coordinates."""

POSITION_EPSILON = 1e-6
"""Distance below which two points are treated as coincident, mm."""

# ============================================================================
# G-CODE LOADING
# ============================================================================

DIAGNOSTIC_LIMIT = 500
"""Maximum diagnostics kept for one program load."""

LOAD_YIELD_INTERVAL = 1000
"""Lines processed between cancellation checks while loading."""

# ============================================================================
# SETTINGS CONSTANTS
# ============================================================================

SETTINGS_FILENAME = "settings.json"
"""Settings file name inside the settings directory."""

SETTINGS_BACKUP_SUFFIX = ".backup"
"""Appended to the settings file name for the previous copy."""

SETTINGS_TEMP_SUFFIX = ".tmp"
"""Appended to the settings file name while a save is in progress."""

# ============================================================================
# TIMING CONSTANTS
# ============================================================================

THREAD_JOIN_TIMEOUT = 0.5
"""Seconds to wait for each worker thread on shutdown."""

SERIAL_CONNECT_DELAY = 0.25
"""Pause after opening a serial port, seconds; boards reset on open."""

SERIAL_TIMEOUT = 0.1
"""Read timeout for serial and TCP reads, seconds."""

SERIAL_WRITE_TIMEOUT = 0.5
"""Write timeout for the serial port, seconds."""

TCP_CONNECT_TIMEOUT = 5.0
"""TCP connect timeout (seconds)."""

EVENT_QUEUE_TIMEOUT = 0.01
"""Poll timeout for the worker command queue, seconds."""

PRODUCER_ENQUEUE_TIMEOUT = 0.25
"""How long the program producer blocks on a full queue before rechecking abort."""

# ============================================================================
# GRBL $n SETTINGS
# ============================================================================

GRBL_SETTING_DESC: Dict[int, str] = {
    0: "Step pulse, microseconds",
    1: "Step idle delay, milliseconds",
    2: "Step port invert mask",
    3: "Direction port invert mask",
    4: "Step enable invert",
    5: "Limit pins invert",
    6: "Probe pin invert",
    10: "Status report mask",
    11: "Junction deviation, mm",
    12: "Arc tolerance, mm",
    13: "Report inches",
    20: "Soft limits enable",
    21: "Hard limits enable",
    22: "Homing cycle enable",
    23: "Homing direction invert mask",
    24: "Homing locate feed rate, mm/min",
    25: "Homing search seek rate, mm/min",
    26: "Homing switch debounce, ms",
    27: "Homing switch pull-off, mm",
    30: "Max spindle speed, RPM",
    31: "Min spindle speed, RPM",
    32: "Laser mode enable",
    100: "X steps/mm",
    101: "Y steps/mm",
    102: "Z steps/mm",
    110: "X max rate, mm/min",
    111: "Y max rate, mm/min",
    112: "Z max rate, mm/min",
    120: "X accel, mm/sec^2",
    121: "Y accel, mm/sec^2",
    122: "Z accel, mm/sec^2",
    130: "X max travel, mm",
    131: "Y max travel, mm",
    132: "Z max travel, mm",
}

# Inclusive (low, high) accepted by validate_grbl_setting
GRBL_SETTING_LIMITS: Dict[int, Tuple[float, float]] = {
    0: (1, 1000),
    1: (0, 255),
    2: (0, 255),
    3: (0, 255),
    4: (0, 1),
    5: (0, 1),
    6: (0, 1),
    10: (0, 511),
    11: (0, 5),
    12: (0, 5),
    13: (0, 1),
    20: (0, 1),
    21: (0, 1),
    22: (0, 1),
    23: (0, 255),
    24: (0, 5000),
    25: (0, 5000),
    26: (0, 255),
    27: (0, 50),
    30: (0, 100000),
    31: (0, 100000),
    32: (0, 1),
    100: (0, 2000),
    101: (0, 2000),
    102: (0, 2000),
    110: (0, 200000),
    111: (0, 200000),
    112: (0, 200000),
    120: (0, 20000),
    121: (0, 20000),
    122: (0, 20000),
    130: (0, 2000),
    131: (0, 2000),
    132: (0, 2000),
}
