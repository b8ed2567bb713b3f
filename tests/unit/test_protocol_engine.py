import random
import threading

import pytest

from conftest import BANNER
from grbl_streamer.grbl_realtime import RealtimeCommand
from grbl_streamer.grbl_responses import MachineState, MachineStatus
from grbl_streamer.protocol_engine import ControllerError, ProtocolEngine
from grbl_streamer.utils.exceptions import (
    InvalidCommandError,
    MachineInAlarm,
    ProtocolDesync,
    ProtocolTimeout,
    QueueClosed,
    QueueFull,
)
from grbl_streamer.utils.grbl_errors import describe_alarm, describe_error

pytestmark = pytest.mark.unit


# ============================================================================
# BYTE BUDGET
# ============================================================================

def test_second_line_waits_for_acknowledgment(make_engine, written):
    engine = make_engine(rx_buffer_size=16, rx_buffer_reserve=1)
    assert engine.budget == 15
    for text in ("G0X123456", "G0X1234", "G0X12"):
        engine.enqueue(text)

    assert engine.pump() == 1
    assert written == [b"G0X123456\n"]
    assert engine.outstanding_bytes == 10
    assert engine.pump() == 0

    engine.handle_line("ok")
    assert engine.outstanding_bytes == 0
    assert engine.pump() == 2
    assert written[1:] == [b"G0X1234\n", b"G0X12\n"]
    assert engine.outstanding_bytes == 14


def test_outstanding_bytes_never_exceed_budget(make_engine):
    rng = random.Random(1234)
    engine = make_engine(rx_buffer_size=32)
    for _ in range(2000):
        action = rng.random()
        if action < 0.4:
            engine.enqueue("G1X" + "1" * rng.randint(1, 20))
        elif action < 0.7:
            engine.pump()
        elif engine.in_flight_count:
            engine.handle_line(rng.choice(["ok", "ok", "ok", "error:20"]))
        assert 0 <= engine.outstanding_bytes <= engine.budget
        assert engine.available_bytes == engine.budget - engine.outstanding_bytes


def test_lines_go_out_in_enqueue_order(engine, written):
    texts = [f"G1X{i}F100" for i in range(20)]
    for text in texts:
        engine.enqueue(text, line_index=texts.index(text))
    while engine.pending_count:
        engine.pump()
        engine.handle_line("ok")
    assert written == [(t + "\n").encode() for t in texts]


def test_line_longer_than_controller_accepts(make_engine):
    engine = make_engine(rx_buffer_size=16)
    engine.enqueue("G0X12345678901")
    with pytest.raises(InvalidCommandError):
        engine.enqueue("G0X123456789012")
    with pytest.raises(InvalidCommandError):
        make_engine().enqueue("G1X" + "1" * 80)


def test_reserve_must_leave_room():
    with pytest.raises(ValueError):
        ProtocolEngine(lambda data: None, rx_buffer_size=4, rx_buffer_reserve=4)


def test_rx_window_recalibrates_from_idle_status(engine):
    assert engine.budget == 127
    engine.handle_line("<Idle|MPos:0.000,0.000,0.000|Bf:15,255>")
    assert engine.budget == 254
    engine.handle_line("<Idle|MPos:0.000,0.000,0.000|Bf:15,100>")
    assert engine.budget == 127


def test_rx_window_ignores_reports_while_lines_are_in_flight(engine):
    engine.enqueue("G0X1")
    engine.pump()
    engine.handle_line("<Run|MPos:0.000,0.000,0.000|Bf:15,255>")
    assert engine.budget == 127


def test_paused_engine_holds_queued_lines(engine, written):
    engine.enqueue("G0X1")
    engine.pause()
    assert engine.paused
    assert engine.pump() == 0
    engine.resume()
    assert engine.pump() == 1
    assert written == [b"G0X1\n"]


def test_blocking_enqueue_times_out(make_engine):
    engine = make_engine(queue_capacity=1)
    engine.enqueue("G0X1")
    with pytest.raises(QueueFull):
        engine.enqueue("G0X2", block=True, timeout=0.01)
    with pytest.raises(QueueFull):
        engine.enqueue("G0X2")


def test_blocking_enqueue_resumes_after_acknowledgment(make_engine):
    engine = make_engine(queue_capacity=1)
    engine.enqueue("G0X1")
    engine.pump()
    result = []
    worker = threading.Thread(
        target=lambda: result.append(engine.enqueue("G0X2", block=True, timeout=5.0))
    )
    worker.start()
    engine.handle_line("ok")
    worker.join(5.0)
    assert result and result[0].text == "G0X2"


def test_wait_helpers(engine):
    assert engine.wait_until_idle(0.0)
    assert engine.wait_sendable(0.0) is False
    engine.enqueue("G0X1")
    assert engine.wait_sendable(0.0)
    assert engine.wait_until_idle(0.01) is False
    assert not engine.is_idle()


# ============================================================================
# RESPONSES
# ============================================================================

def test_ok_publishes_ack(engine, events):
    entry = engine.enqueue("G0X1", line_index=4)
    engine.pump()
    engine.handle_line("ok")
    assert events.of("ack") == [("ack", entry)]


def test_error_is_reported_against_its_command(engine, events, written):
    engine.enqueue("G1X1", line_index=7)
    engine.enqueue("G0X2", line_index=8)
    engine.pump()
    engine.handle_line("error:22")

    (event,) = events.of("controller_error")
    error = event[1]
    assert error == ControllerError(22, describe_error(22), "G1X1", 7)
    assert str(error) == f"error:22 {describe_error(22)}: G1X1 (line 8)"
    assert engine.in_flight_count == 1
    assert engine.pump() == 0
    assert written == [b"G1X1\n", b"G0X2\n"]


def test_unexpected_ok_is_a_desync(engine):
    with pytest.raises(ProtocolDesync) as info:
        engine.handle_line("ok")
    assert info.value.response == "ok"


def test_replies_for_cleared_lines_are_discarded(engine, events):
    engine.enqueue("G1X10F100")
    engine.enqueue("G1X20")
    assert engine.pump() == 2
    assert engine.clear() == 2
    assert engine.stale_acks == 2

    engine.handle_line("<Run|MPos:1.000,0.000,0.000>")
    assert engine.stale_acks == 2
    engine.handle_line("ok")
    engine.handle_line("error:22")
    assert engine.stale_acks == 0
    assert events.of("ack") == []
    assert events.of("controller_error") == []

    engine.enqueue("G0X1")
    engine.pump()
    engine.handle_line("ok")
    assert events.of("ack")[-1][1].text == "G0X1"
    with pytest.raises(ProtocolDesync):
        engine.handle_line("ok")


def test_clearing_unsent_lines_owes_no_replies(engine):
    engine.pause()
    engine.enqueue("G0X1")
    engine.clear()
    assert engine.stale_acks == 0


def test_replies_for_lines_dropped_by_an_alarm_are_discarded(engine):
    engine.enqueue("G0X1")
    engine.enqueue("G0X2")
    engine.pump()
    engine.handle_line("ALARM:3")
    assert engine.stale_acks == 2

    engine.handle_line("ok")
    assert engine.stale_acks == 1
    engine.handle_line("<Alarm|MPos:0.000,0.000,0.000>")
    assert engine.stale_acks == 0

    engine.enqueue("$X")
    engine.pump()
    engine.handle_line("ok")
    assert engine.status.state is MachineState.IDLE


def test_banner_forgets_owed_replies(engine):
    engine.enqueue("G0X1")
    engine.pump()
    engine.clear()
    engine.handle_line(BANNER)
    assert engine.stale_acks == 0
    with pytest.raises(ProtocolDesync):
        engine.handle_line("ok")


def test_blank_lines_are_ignored(engine):
    assert engine.handle_line("   ") is None


def test_status_report_updates_snapshot(engine, events):
    engine.handle_line(
        "<Idle|MPos:10.000,5.000,0.000|FS:0,0|WCO:1.000,1.000,0.000|Ov:100,100,100>"
    )
    status = engine.status
    assert status.state is MachineState.IDLE
    assert status.machine_position == (10.0, 5.0, 0.0)
    assert status.work_position == (9.0, 4.0, 0.0)
    assert status.work_offset == (1.0, 1.0, 0.0)

    engine.handle_line("<Run|MPos:11.000,5.000,0.000|FS:500,0|Pn:XZ>")
    status = engine.status
    assert status.state is MachineState.RUN
    assert status.work_position == (10.0, 4.0, 0.0)
    assert status.feed_rate == 500.0
    assert status.pins == "XZ"
    assert events.of("status")[-1] == ("status", status)


def test_status_report_with_work_position(engine):
    engine.handle_line("<Jog|WPos:1.000,2.000,3.000|WCO:1.000,1.000,1.000>")
    assert engine.status.state is MachineState.JOG
    assert engine.status.machine_position == (2.0, 3.0, 4.0)


def test_status_report_does_not_touch_queue(engine):
    engine.enqueue("G0X1")
    engine.pump()
    engine.handle_line("<Run|MPos:0.000,0.000,0.000>")
    assert engine.in_flight_count == 1
    assert engine.outstanding_bytes == 5


def test_status_snapshot_is_replaced_not_mutated(engine):
    before = engine.status
    engine.handle_line("<Run|MPos:1.000,0.000,0.000>")
    assert before.state is MachineState.IDLE
    assert engine.status is not before


def test_feedback_lines(engine, events):
    engine.handle_line("[GC:G0 G55 G17 G21 G90 G94 M5 M9 T0 F0 S0]")
    assert engine.status.coordinate_system == "G55"
    engine.handle_line("[PRB:1.000,2.000,-3.000:1]")
    assert events.of("probe") == [("probe", (1.0, 2.0, -3.0), True)]
    engine.handle_line("[MSG:Pgm End]")
    assert ("feedback", "MSG", "Pgm End") in events.events
    engine.handle_line("$110=500.000")
    assert engine.controller_settings == {110: "500.000"}
    engine.handle_line("something else")
    assert events.of("message")[-1] == ("message", "something else")


def test_reset_to_continue_message_means_alarm(engine):
    engine.handle_line("[MSG:Reset to continue]")
    assert engine.status.state is MachineState.ALARM


# ============================================================================
# ALARMS
# ============================================================================

def test_alarm_clears_queue_and_refuses_enqueue(engine, events):
    engine.enqueue("G0X1")
    engine.enqueue("G0X2")
    engine.enqueue("G0X3")
    engine.pump()
    engine.handle_line("ALARM:1")

    assert engine.status.state is MachineState.ALARM
    assert engine.status.alarm_code == 1
    assert engine.in_alarm
    assert engine.pending_count == 0
    assert engine.in_flight_count == 0
    assert engine.outstanding_bytes == 0
    assert events.of("alarm") == [("alarm", 1, describe_alarm(1))]
    with pytest.raises(MachineInAlarm) as info:
        engine.enqueue("G0X1")
    assert info.value.alarm_code == 1


def test_unlock_clears_alarm(engine):
    engine.handle_line("ALARM:3")
    engine.enqueue("$X")
    engine.pump()
    engine.handle_line("ok")
    assert engine.status.state is MachineState.IDLE
    assert engine.status.alarm_code is None
    engine.enqueue("G0X1")


def test_safe_commands_allowed_in_alarm(engine):
    engine.handle_line("ALARM:2")
    for text in ("$$", "$#", "$G", "$H", "$HZ", "$I", "$21=0", "$RST=#"):
        engine.enqueue(text)


def test_second_alarm_while_latched_is_a_desync(engine):
    engine.handle_line("ALARM:1")
    with pytest.raises(ProtocolDesync) as info:
        engine.handle_line("ALARM:2")
    assert info.value.response == "ALARM:2"


def test_alarm_status_report_does_not_latch(engine):
    engine.handle_line("<Alarm|MPos:0.000,0.000,0.000>")
    assert engine.status.state is MachineState.ALARM
    engine.handle_line("ALARM:9")
    engine.handle_line("<Idle|MPos:0.000,0.000,0.000>")
    assert not engine.in_alarm
    engine.handle_line("ALARM:1")


# ============================================================================
# REAL-TIME COMMANDS AND RESET
# ============================================================================

def test_realtime_bytes_bypass_the_budget(make_engine, written):
    engine = make_engine(rx_buffer_size=16)
    engine.enqueue("G0X12345678901")
    engine.pump()
    assert engine.available_bytes == 0
    engine.feed_hold()
    engine.status_query()
    engine.jog_cancel()
    engine.safety_door()
    assert written[-4:] == [b"!", b"?", b"\x85", b"\x84"]
    assert engine.outstanding_bytes == 15
    assert engine.pending_count == 0


def test_hold_and_resume_transitions(engine):
    engine.handle_line("<Run|MPos:0.000,0.000,0.000>")
    engine.feed_hold()
    assert engine.status.state is MachineState.HOLD
    engine.cycle_start()
    assert engine.status.state is MachineState.RUN


def test_hold_from_idle_stays_idle(engine):
    engine.feed_hold()
    assert engine.status.state is MachineState.IDLE


def test_send_moves_to_run_without_status_polling(make_engine):
    engine = make_engine(status_polling=False)
    engine.enqueue("G0X1")
    engine.pump()
    assert engine.status.state is MachineState.RUN


def test_soft_reset_closes_queue_until_banner(engine, events, written):
    engine.enqueue("G0X1")
    engine.enqueue("G0X2")
    engine.pump()
    engine.soft_reset()

    assert written[-1] == b"\x18"
    assert engine.outstanding_bytes == 0
    assert engine.pending_count == 0
    assert engine.awaiting_banner
    assert engine.status.state is MachineState.IDLE
    with pytest.raises(QueueClosed):
        engine.enqueue("G0X3")

    engine.handle_line("ok")
    engine.handle_line(BANNER)
    assert not engine.awaiting_banner
    assert engine.status.firmware_version == "1.1h"
    assert events.of("ready")[-1] == ("ready", "1.1h")
    engine.enqueue("G0X3")


def test_soft_reset_clears_alarm(engine):
    engine.handle_line("ALARM:1")
    engine.soft_reset()
    assert engine.status.alarm_code is None
    engine.handle_line(BANNER)
    engine.enqueue("G0X1")


def test_abort(engine, written):
    engine.enqueue("G0X1")
    engine.pump()
    engine.abort()
    assert written[-1] == b"\x18"
    assert engine.is_idle()


def test_unexpected_banner_resets_accounting(engine):
    engine.enqueue("G0X1")
    engine.pump()
    engine.handle_line(BANNER)
    assert engine.outstanding_bytes == 0
    assert engine.in_flight_count == 0


def test_overrides(engine, written):
    engine.adjust_override("feed", 12)
    assert written == [b"\x91", b"\x93", b"\x93"]
    assert engine.status.overrides.feed == 112
    engine.set_rapid_override(25)
    assert written[-1] == b"\x97"
    assert engine.status.overrides.rapid == 25
    engine.override(RealtimeCommand.SPINDLE_MINUS_10)
    assert engine.status.overrides.spindle == 90
    with pytest.raises(ValueError):
        engine.override(RealtimeCommand.STATUS)
    with pytest.raises(ValueError):
        engine.override(RealtimeCommand.FEED_HOLD)


# ============================================================================
# TIMEOUTS AND CONNECTION
# ============================================================================

def test_timeout_when_head_is_not_acknowledged(make_engine, clock):
    engine = make_engine(ack_timeout=5.0)
    engine.enqueue("G0X1")
    engine.pump()
    engine.check_timeout(104.0)
    with pytest.raises(ProtocolTimeout) as info:
        engine.check_timeout(106.0)
    assert info.value.command.text == "G0X1"
    assert info.value.waited == pytest.approx(6.0)
    assert engine.in_flight_count == 1


def test_timeout_measured_from_last_acknowledgment(make_engine, clock):
    engine = make_engine(ack_timeout=5.0)
    engine.enqueue("G0X1")
    engine.enqueue("G0X2")
    engine.pump()
    clock.now = 104.0
    engine.handle_line("ok")
    engine.check_timeout(108.0)
    with pytest.raises(ProtocolTimeout):
        engine.check_timeout(110.0)


def test_hold_stops_the_timeout_clock(make_engine):
    engine = make_engine(ack_timeout=5.0)
    engine.enqueue("G0X1")
    engine.pump()
    engine.handle_line("<Hold:0|MPos:0.000,0.000,0.000>")
    engine.check_timeout(200.0)
    engine.handle_line("<Run|MPos:0.000,0.000,0.000>")
    engine.check_timeout(203.0)
    with pytest.raises(ProtocolTimeout):
        engine.check_timeout(206.0)


def test_status_reports_showing_work_restart_the_timeout_clock(make_engine, clock):
    engine = make_engine(ack_timeout=5.0)
    engine.enqueue("G1X500F100")
    engine.pump()
    for step in range(1, 31):
        clock.now = 100.0 + step
        engine.handle_line("<Run|MPos:0.000,0.000,0.000|Bf:0,100>")
        engine.check_timeout()

    clock.now = 131.0
    engine.handle_line("<Idle|MPos:0.000,0.000,0.000|Bf:0,100>")
    engine.check_timeout(135.0)
    with pytest.raises(ProtocolTimeout):
        engine.check_timeout(136.0)


def test_moving_position_restarts_the_timeout_clock(make_engine, clock):
    engine = make_engine(ack_timeout=5.0)
    engine.handle_line("<Idle|MPos:0.000,0.000,0.000>")
    engine.enqueue("G1X500F100")
    engine.pump()
    clock.now = 104.0
    engine.handle_line("<Idle|MPos:0.500,0.000,0.000>")
    engine.check_timeout(108.0)
    with pytest.raises(ProtocolTimeout):
        engine.check_timeout(110.0)


def test_no_timeout_without_lines_in_flight(engine):
    engine.check_timeout(10_000.0)


def test_connection_lifecycle(engine, events):
    engine.connection_opened()
    assert engine.status == MachineStatus(connected=True)
    engine.enqueue("G0X1")
    engine.reset_connection()
    assert engine.status == MachineStatus()
    assert engine.is_idle()
    assert events.of("status")[-1] == ("status", MachineStatus())
