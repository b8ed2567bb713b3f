import pytest

from grbl_streamer.gcode_parser import (
    CoordinateSystem,
    DistanceMode,
    FeedMode,
    ModalState,
    MotionMode,
    Plane,
    SpindleState,
    Units,
    compute_checksum,
    format_word,
    parse_lines,
    parse_text,
)
from grbl_streamer.gcode_tokenizer import Word
from grbl_streamer.utils.exceptions import ParseError

pytestmark = pytest.mark.unit


def parse_all(*lines, modal=None):
    return list(parse_lines(lines, modal))


def test_modal_carry_over():
    first, second = parse_all("G1 X10 Y10 F500", "G1 X20")
    assert first.motion is MotionMode.LINEAR
    assert second.motion is MotionMode.LINEAR
    assert second.feed == 500
    assert second.get("X") == 20
    assert second.get("Y") is None


def test_motion_mode_persists_without_g_word():
    commands = parse_all("G0 X1", "Y2", "G1 X3 F100", "X4")
    assert [c.motion for c in commands] == [
        MotionMode.RAPID, MotionMode.RAPID, MotionMode.LINEAR, MotionMode.LINEAR,
    ]
    assert commands[1].motion_word is None
    assert all(c.moves for c in commands)


def test_modal_state_is_threaded_not_shared():
    start = ModalState()
    command, after = parse_text("G20 G91 G55", start)
    assert start.units is Units.MM
    assert after.units is Units.INCH
    assert after.distance is DistanceMode.RELATIVE
    assert after.coordinate_system is CoordinateSystem.G55
    assert command.modal == after


def test_default_modal_state():
    modal = ModalState()
    assert modal.motion is MotionMode.NONE
    assert modal.plane is Plane.XY
    assert modal.units is Units.MM
    assert modal.distance is DistanceMode.ABSOLUTE
    assert modal.feed_mode is FeedMode.UNITS_PER_MINUTE
    assert modal.feed_rate is None


def test_modal_group_conflict():
    with pytest.raises(ParseError) as info:
        parse_text("G0 G1 X1 F100", ModalState(), line_index=3)
    assert info.value.word == "G1"
    assert info.value.line_index == 3
    assert "modal group conflict" in info.value.message


def test_plane_conflict():
    with pytest.raises(ParseError):
        parse_text("G17 G18", ModalState())


def test_mist_and_flood_share_a_line():
    _, after = parse_text("M7 M8", ModalState())
    assert after.mist and after.flood
    _, after = parse_text("M9", after)
    assert not after.mist and not after.flood


def test_coolant_off_conflicts_with_on():
    with pytest.raises(ParseError):
        parse_text("M8 M9", ModalState())


def test_repeated_word():
    with pytest.raises(ParseError) as info:
        parse_text("G1 X1 X2 F100", ModalState())
    assert "repeated word X" in info.value.message


def test_feed_rate_required_for_feed_moves():
    with pytest.raises(ParseError) as info:
        parse_text("G1 X1", ModalState())
    assert "feed rate" in info.value.message


def test_rapid_needs_no_feed():
    command, _ = parse_text("G0 X1", ModalState())
    assert command.moves
    assert command.feed is None


def test_axis_words_need_a_motion_mode():
    with pytest.raises(ParseError):
        parse_text("X1", ModalState())


def test_g80_cancels_motion():
    _, after = parse_text("G80", ModalState(motion=MotionMode.LINEAR, feed_rate=100.0))
    assert after.motion is MotionMode.NONE


def test_inverse_time_needs_f_on_every_move():
    _, after = parse_text("G93 G1 X1 F2", ModalState())
    assert after.feed_mode is FeedMode.INVERSE_TIME
    with pytest.raises(ParseError):
        parse_text("X2", after)


def test_feed_mode_switch_clears_feed():
    _, after = parse_text("G93 G1 X1 F2", ModalState())
    _, after = parse_text("G94", after)
    assert after.feed_rate is None


def test_units_switch_converts_feed():
    _, after = parse_text("G20 G1 X1 F10", ModalState())
    _, after = parse_text("G21", after)
    assert after.feed_rate == pytest.approx(254.0)


def test_program_end_restores_defaults():
    _, modal = parse_text("G0 G91 G55 M3 S1000", ModalState())
    command, after = parse_text("M30", modal)
    assert command.stop == "M30"
    assert after.motion is MotionMode.LINEAR
    assert after.distance is DistanceMode.ABSOLUTE
    assert after.coordinate_system is CoordinateSystem.G54
    assert after.spindle is SpindleState.OFF


def test_spindle_and_tool():
    _, after = parse_text("M3 S12000 T2", ModalState())
    assert after.spindle is SpindleState.CW
    assert after.spindle_speed == 12000
    assert after.tool == 2


def test_unsupported_words():
    for line in ("G0 A1", "G41 X1", "M62", "G1 X1 Q2 F100"):
        with pytest.raises(ParseError):
            parse_text(line, ModalState())


def test_arc_needs_offset_or_radius():
    modal = ModalState(feed_rate=100.0)
    with pytest.raises(ParseError):
        parse_text("G2 X1 Y1", modal)


def test_arc_rejects_radius_and_offset_together():
    modal = ModalState(feed_rate=100.0)
    with pytest.raises(ParseError):
        parse_text("G2 X1 Y1 R1 I1", modal)


def test_arc_needs_an_in_plane_axis_word():
    modal = ModalState(feed_rate=100.0)
    with pytest.raises(ParseError):
        parse_text("G2 Z1 I5", modal)


def test_arc_offset_must_be_in_plane():
    modal = ModalState(feed_rate=100.0)
    with pytest.raises(ParseError):
        parse_text("G17 G2 X1 Y1 K1", modal)
    command, _ = parse_text("G18 G2 X1 Z1 K1", modal)
    assert command.motion is MotionMode.ARC_CW


def test_offset_words_only_on_arcs():
    with pytest.raises(ParseError):
        parse_text("G1 X1 I1 F100", ModalState())


def test_arc_after_rapid_line():
    _, modal = parse_text("G0 X0 Y0", ModalState())
    command, _ = parse_text("G2 X10 Y0 I5 J0 F300", modal)
    assert command.moves
    assert command.motion is MotionMode.ARC_CW


def test_dwell_and_work_offset_rules():
    command, _ = parse_text("G4 P0.5", ModalState())
    assert command.non_modal == "G4"
    with pytest.raises(ParseError):
        parse_text("G4", ModalState())
    with pytest.raises(ParseError):
        parse_text("G0 X1 P2", ModalState())

    command, _ = parse_text("G10 L2 P1 X5", ModalState())
    assert command.axis_consumer == "G10"
    assert not command.moves
    for line in ("G10 L3 P1 X5", "G10 L2 P7 X5", "G10 L2 X5"):
        with pytest.raises(ParseError):
            parse_text(line, ModalState())


def test_g92_takes_axis_words():
    command, _ = parse_text("G92 X0 Y0", ModalState(motion=MotionMode.LINEAR, feed_rate=100.0))
    assert command.axis_consumer == "G92"
    assert not command.moves
    with pytest.raises(ParseError):
        parse_text("G92", ModalState())


def test_g92_and_motion_word_conflict():
    with pytest.raises(ParseError):
        parse_text("G92 G0 X0", ModalState())


def test_g53_only_with_g0_or_g1():
    command, _ = parse_text("G53 G0 X0 Y0", ModalState())
    assert command.non_modal == "G53"
    assert command.moves
    with pytest.raises(ParseError):
        parse_text("G53", ModalState())


def test_probe_needs_axis_word_and_feed():
    command, _ = parse_text("G38.2 Z-10 F50", ModalState())
    assert command.motion is MotionMode.PROBE_TOWARD
    with pytest.raises(ParseError):
        parse_text("G38.2 Z-10", ModalState())


def test_tool_length_offset():
    _, after = parse_text("G43.1 Z1.5", ModalState())
    assert after.tool_length_offset == 1.5
    _, after = parse_text("G49", after)
    assert after.tool_length_offset == 0.0


def test_negative_feed_is_rejected():
    with pytest.raises(ParseError):
        parse_text("G1 X1 F-5", ModalState())


def test_checksum_verdict():
    text = "N1 G0 X1"
    checksum = compute_checksum(text)
    command, _ = parse_text(f"{text}*{checksum}", ModalState())
    assert command.checksum_ok is True
    assert command.line_number == 1
    command, _ = parse_text(f"{text}*{checksum ^ 1}", ModalState())
    assert command.checksum_ok is False
    command, _ = parse_text(text, ModalState())
    assert command.checksum_ok is None


def test_line_number_must_come_first():
    with pytest.raises(ParseError):
        parse_text("G0 N5 X1", ModalState())


def test_comments_are_kept_on_the_command():
    command, _ = parse_text("G0 X1 (to start) ; done", ModalState())
    assert command.comments == ("to start", "done")


def test_blank_line_keeps_modal_state():
    modal = ModalState(motion=MotionMode.LINEAR, feed_rate=250.0)
    command, after = parse_text("(nothing)", modal)
    assert command.is_blank
    assert after == modal


def test_parse_lines_stops_at_first_error():
    lines = iter(["G0 X1", "G1 X2", "G0 X3"])
    commands = parse_lines(lines)
    assert next(commands).get("X") == 1
    with pytest.raises(ParseError):
        next(commands)


def test_format_word_is_compact():
    assert format_word(Word("G", 1.0, text="01")) == "G1"
    assert format_word(Word("X", 10.5, text="010.500")) == "X10.5"
    assert format_word(Word("Y", -0.0, text="-0.000")) == "Y0"
    assert format_word(Word("G", 38.2)) == "G38.2"
