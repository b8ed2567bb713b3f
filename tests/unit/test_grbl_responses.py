import pytest

from grbl_streamer.grbl_responses import (
    MachineState,
    Overrides,
    ResponseKind,
    parse_parser_state,
    parse_probe,
    parse_response,
    parse_status_report,
    split_feedback,
)
from grbl_streamer.utils.grbl_errors import (
    annotate_grbl_message,
    describe_alarm,
    describe_error,
    extract_grbl_code,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "line, kind",
    [
        ("ok", ResponseKind.OK),
        ("OK\r", ResponseKind.OK),
        ("error:20", ResponseKind.ERROR),
        ("ALARM:1", ResponseKind.ALARM),
        ("<Idle|MPos:0.000,0.000,0.000>", ResponseKind.STATUS),
        ("Grbl 1.1h ['$' for help]", ResponseKind.WELCOME),
        ("$100=250.000", ResponseKind.SETTING),
        ("[MSG:Pgm End]", ResponseKind.FEEDBACK),
        ("error:abc", ResponseKind.MESSAGE),
        ("okay", ResponseKind.MESSAGE),
    ],
)
def test_response_kinds(line, kind):
    assert parse_response(line).kind is kind


def test_codes_and_payloads():
    assert parse_response("error:22").code == 22
    assert parse_response("ALARM:9").code == 9
    assert parse_response("Grbl 1.1f ['$' for help]").version == "1.1f"
    assert parse_response("$132=-200.5").setting == (132, "-200.5")
    assert parse_response("[GC:G0 G54]").text == "GC:G0 G54"


def test_status_fields_in_any_order():
    report = parse_status_report(
        "Hold:1|Ov:110,50,90|Bf:14,100|WCO:1.0,2.0,3.0|MPos:1.5,2.5,-3.5|FS:300,1000|Pn:PZ|A:SF|Ln:42"
    )
    assert report.state is MachineState.HOLD
    assert report.substate == 1
    assert report.overrides == Overrides(110, 50, 90)
    assert (report.planner_blocks_free, report.rx_bytes_free) == (14, 100)
    assert report.work_offset == (1.0, 2.0, 3.0)
    assert report.machine_position == (1.5, 2.5, -3.5)
    assert report.feed_rate == 300.0
    assert report.spindle_speed == 1000.0
    assert report.pins == "PZ"
    assert report.accessories == "SF"
    assert report.line_number == 42


def test_malformed_status_fields_are_skipped():
    report = parse_status_report("Bogus|MPos:1,2|FS:x,y|Bf:1|Unknown:3|junk")
    assert report.state is None
    assert report.machine_position is None
    assert report.feed_rate is None
    assert report.rx_bytes_free is None


def test_grbl_0_9_feed_field():
    assert parse_status_report("Run|MPos:0,0,0|F:500").feed_rate == 500.0


def test_machine_state_parse():
    assert MachineState.parse("Door:2") == (MachineState.DOOR, 2)
    assert MachineState.parse("idle") == (MachineState.IDLE, None)
    assert MachineState.parse("Nope") is None
    assert MachineState.HOLD.pauses_timeouts
    assert not MachineState.RUN.pauses_timeouts


def test_feedback_helpers():
    assert split_feedback("MSG:Caution: Unlocked") == ("MSG", "Caution: Unlocked")
    assert split_feedback("untagged") == ("", "untagged")
    words = parse_parser_state("G0 G56 G17 G20 G91 G94 M5 M9 T0 F0 S0")
    assert words["coordinate_system"] == "G56"
    assert words["units"] == "G20"
    assert words["distance"] == "G91"
    assert parse_probe("0.000,1.500,-2.000:0") == ((0.0, 1.5, -2.0), False)
    assert parse_probe("garbage") is None


def test_error_descriptions():
    assert describe_error(22) == "Undefined feed rate."
    assert describe_error(999) == "Unknown error code 999."
    assert describe_error(None) == "Unknown error."
    assert describe_alarm(999) == "Unknown alarm code 999."
    assert describe_alarm(1).strip()


def test_annotate_messages():
    assert extract_grbl_code("error:9") == ("error", 9, describe_error(9))
    assert extract_grbl_code("ok") is None
    assert annotate_grbl_message("error:22") == f"error:22 ({describe_error(22)})"
    assert annotate_grbl_message("error:22 (already)") == "error:22 (already)"
    assert annotate_grbl_message("ok") == "ok"
