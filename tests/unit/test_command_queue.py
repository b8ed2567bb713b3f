import pytest

from grbl_streamer.command_queue import CommandQueue, encode_command
from grbl_streamer.utils.exceptions import (
    InvalidCommandError,
    ProtocolDesync,
    QueueClosed,
    QueueFull,
)

pytestmark = pytest.mark.unit


def send(queue, budget, now=0.0):
    """Move every entry that fits into flight; returns the sent texts."""
    sent = []
    while True:
        entry = queue.next_sendable(budget - queue.outstanding_bytes)
        if entry is None:
            return sent
        assert queue.mark_sent(entry, now)
        sent.append(entry.text)


def test_head_must_fit_the_available_bytes():
    queue = CommandQueue()
    for text in ("G0X123456", "G0X1234", "G0X12"):
        queue.enqueue(text)
    assert [e.size for e in queue._pending] == [10, 8, 6]

    assert send(queue, 15) == ["G0X123456"]
    assert queue.outstanding_bytes == 10
    assert queue.next_sendable(15 - queue.outstanding_bytes) is None

    acked = queue.acknowledge()
    assert acked.text == "G0X123456"
    assert queue.outstanding_bytes == 0
    assert send(queue, 15) == ["G0X1234", "G0X12"]
    assert queue.outstanding_bytes == 14


def test_sequence_numbers_are_monotonic():
    queue = CommandQueue()
    entries = [queue.enqueue(f"G0X{i}") for i in range(3)]
    queue.clear()
    entries.append(queue.enqueue("G0X9"))
    assert [e.sequence for e in entries] == [0, 1, 2, 3]


def test_acknowledge_is_fifo():
    queue = CommandQueue()
    for text in ("G0X1", "G0X2", "G0X3"):
        queue.enqueue(text, line_index=int(text[-1]))
    send(queue, 100)
    assert [queue.acknowledge().line_index for _ in range(3)] == [1, 2, 3]


def test_acknowledge_with_nothing_in_flight_is_a_desync():
    queue = CommandQueue()
    with pytest.raises(ProtocolDesync):
        queue.acknowledge()
    queue.enqueue("G0X1")
    with pytest.raises(ProtocolDesync):
        queue.acknowledge()


def test_clearing_an_empty_queue_changes_nothing():
    queue = CommandQueue()
    assert queue.clear() == 0
    assert queue.generation == 0
    assert queue.clear() == 0
    assert queue.generation == 0


def test_clear_drops_everything_and_bumps_generation():
    queue = CommandQueue()
    for text in ("G0X1", "G0X2", "G0X3"):
        queue.enqueue(text)
    send(queue, 10)
    assert queue.clear() == 3
    assert queue.generation == 1
    assert len(queue) == 0
    assert queue.outstanding_bytes == 0


def test_stale_entry_is_not_marked_sent():
    queue = CommandQueue()
    entry = queue.enqueue("G0X1")
    queue.clear()
    assert queue.mark_sent(entry, 1.0) is False
    assert queue.outstanding_bytes == 0
    assert entry.sent_at is None


def test_only_the_head_can_be_marked_sent():
    queue = CommandQueue()
    queue.enqueue("G0X1")
    second = queue.enqueue("G0X2")
    assert queue.mark_sent(second, 1.0) is False


def test_pause_holds_entries_without_dropping_them():
    queue = CommandQueue()
    queue.enqueue("G0X1")
    queue.pause()
    assert queue.next_sendable(100) is None
    assert len(queue) == 1
    queue.resume()
    assert queue.next_sendable(100) is not None


def test_closed_queue_refuses_entries():
    queue = CommandQueue()
    queue.close()
    with pytest.raises(QueueClosed):
        queue.enqueue("G0X1")
    queue.reopen()
    queue.enqueue("G0X1")


def test_capacity():
    queue = CommandQueue(capacity=2)
    queue.enqueue("G0X1")
    queue.enqueue("G0X2")
    assert queue.is_full
    with pytest.raises(QueueFull):
        queue.enqueue("G0X3")
    with pytest.raises(ValueError):
        CommandQueue(capacity=0)


def test_head_in_flight_tracks_oldest():
    queue = CommandQueue()
    assert queue.head_in_flight() is None
    queue.enqueue("G0X1")
    queue.enqueue("G0X2")
    send(queue, 100, now=5.0)
    head = queue.head_in_flight()
    assert head.text == "G0X1"
    assert head.sent_at == 5.0


def test_encode_command():
    assert encode_command("  G0 X1 \r\n") == b"G0 X1\n"
    for bad in ("", "   ", "G0\nG1", "G0 X1 °"):
        with pytest.raises(InvalidCommandError):
            encode_command(bad)
