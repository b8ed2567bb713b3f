import pytest

from grbl_streamer import grbl_commands
from grbl_streamer.grbl_realtime import (
    REALTIME_BYTES,
    RealtimeCommand,
    expected_overrides,
    is_realtime_byte,
    override_commands,
    rapid_command,
)
from grbl_streamer.grbl_responses import Overrides
from grbl_streamer.utils.exceptions import InvalidParameterError, InvalidRangeError

pytestmark = pytest.mark.unit


def test_realtime_bytes_are_single_bytes():
    assert all(len(cmd.byte) == 1 for cmd in RealtimeCommand)
    assert RealtimeCommand.SOFT_RESET.byte == b"\x18"
    assert RealtimeCommand.FEED_HOLD.byte == b"!"
    assert RealtimeCommand.CYCLE_START.byte == b"~"
    assert RealtimeCommand.STATUS.byte == b"?"
    assert is_realtime_byte(b"\x85")
    assert not is_realtime_byte(b"G")
    assert len(REALTIME_BYTES) == len(RealtimeCommand)


def test_override_classification():
    assert RealtimeCommand.FEED_PLUS_10.is_override
    assert RealtimeCommand.RAPID_25.is_override
    assert not RealtimeCommand.SOFT_RESET.is_override
    assert not RealtimeCommand.FEED_HOLD.is_override
    assert not RealtimeCommand.COOLANT_MIST.is_override


def test_override_steps():
    plus = RealtimeCommand.FEED_PLUS_10
    assert override_commands("feed", 23) == [plus, plus] + [RealtimeCommand.FEED_PLUS_1] * 3
    assert override_commands("spindle", -10) == [RealtimeCommand.SPINDLE_MINUS_10]
    assert override_commands("feed", 0) == []
    with pytest.raises(ValueError):
        override_commands("rapid", 10)


def test_expected_overrides_clamp():
    current = Overrides(feed=195)
    assert expected_overrides(current, RealtimeCommand.FEED_PLUS_10).feed == 200
    assert expected_overrides(Overrides(spindle=15), RealtimeCommand.SPINDLE_MINUS_10).spindle == 10
    assert expected_overrides(current, RealtimeCommand.FEED_RESET).feed == 100
    assert expected_overrides(current, RealtimeCommand.RAPID_50) == Overrides(195, 50, 100)
    assert expected_overrides(current, RealtimeCommand.COOLANT_FLOOD) == current


def test_rapid_command():
    assert rapid_command(50) is RealtimeCommand.RAPID_50
    with pytest.raises(ValueError):
        rapid_command(75)


def test_alarm_rules():
    assert grbl_commands.allowed_in_alarm("$x")
    assert grbl_commands.allowed_in_alarm(" $H ")
    assert grbl_commands.allowed_in_alarm("$HY")
    assert grbl_commands.allowed_in_alarm("$G")
    assert not grbl_commands.allowed_in_alarm("G0 X1")
    assert not grbl_commands.allowed_in_alarm("$J=G91X1F100")
    assert grbl_commands.allowed_in_alarm("$21=0")
    assert grbl_commands.allowed_in_alarm("$rst=$")
    assert not grbl_commands.allowed_in_alarm("$C")
    assert grbl_commands.is_unlock("$X")
    assert not grbl_commands.is_unlock("$$")


def test_command_classification():
    assert grbl_commands.is_system_command("$$")
    assert not grbl_commands.is_system_command("G0")
    assert grbl_commands.is_jog("$j=G91X1F100")


def test_jog_line():
    assert grbl_commands.jog(dx=1, feed=500) == "$J=G21G91X1.0000F500.0"
    assert grbl_commands.jog(dz=-0.5, feed=10, unit_mode="inch") == "$J=G20G91Z-0.5000F10.0"
    with pytest.raises(InvalidParameterError):
        grbl_commands.jog(feed=500)
    with pytest.raises(InvalidParameterError):
        grbl_commands.jog(dx=1, feed=0)
    with pytest.raises(InvalidParameterError):
        grbl_commands.jog(dx=1, feed=100, unit_mode="furlong")


def test_set_setting():
    assert grbl_commands.set_setting(110, "500") == "$110=500"
    assert grbl_commands.set_setting(11, 0.01) == "$11=0.01"
    with pytest.raises(InvalidParameterError):
        grbl_commands.set_setting(9999, 1)
    with pytest.raises(InvalidRangeError):
        grbl_commands.set_setting(110, -5)


def test_reset_command():
    assert grbl_commands.reset_command("all") == "$RST=*"
    with pytest.raises(ValueError):
        grbl_commands.reset_command("everything")
