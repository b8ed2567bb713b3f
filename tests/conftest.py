"""
Pytest configuration and shared fixtures for the grbl_streamer tests.

Provides a scripted in-memory transport standing in for a serial port, a
minimal GRBL responder for it, and protocol engines wired to recording
write callables.
"""

import logging
import queue
import socket
import threading
import time
from typing import Callable, Iterator, List, Optional

import pytest

from grbl_streamer.protocol_engine import ProtocolEngine
from grbl_streamer.utils.exceptions import TransportNotConnectedError
from grbl_streamer.utils.logging_config import APP_LOGGER_NAME, SERIAL_LOGGER_NAME

BANNER = "Grbl 1.1h ['$' for help]"
STATUS_IDLE = "<Idle|MPos:0.000,0.000,0.000|Bf:15,128|FS:0,0>"


class FakeTransport:
    """In-memory transport; replies come from ``responder`` or ``feed()``."""

    description = "fake"

    def __init__(self, responder: Optional[Callable[[bytes], List[str]]] = None):
        self.responder = responder
        self.written: List[bytes] = []
        self.connect_count = 0
        self._rx: "queue.Queue[Optional[str]]" = queue.Queue()
        self._connected = False
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True
        self.connect_count += 1

    def disconnect(self) -> None:
        self._connected = False
        self._rx.put(None)

    def write(self, data: bytes) -> None:
        if not self._connected:
            raise TransportNotConnectedError("fake transport is closed")
        with self._lock:
            self.written.append(bytes(data))
        if self.responder is not None:
            for line in self.responder(bytes(data)):
                self._rx.put(line)

    def feed(self, *lines: str) -> None:
        for line in lines:
            self._rx.put(line)

    def close_from_controller(self) -> None:
        """Simulate the controller side dropping the link."""
        self._rx.put(None)

    def lines(self) -> Iterator[str]:
        while self._connected:
            try:
                line = self._rx.get(timeout=0.05)
            except queue.Empty:
                continue
            if line is None:
                return
            yield line

    @property
    def written_lines(self) -> List[str]:
        with self._lock:
            return [d.decode("ascii").rstrip("\n") for d in self.written if d.endswith(b"\n")]


class GrblResponder:
    """Answers like an idle GRBL 1.1: ``ok`` per line, a banner on reset."""

    def __init__(self, errors: Optional[dict] = None):
        self.errors = dict(errors or {})

    def __call__(self, data: bytes) -> List[str]:
        if data == b"\x18":
            return [BANNER]
        if data == b"?":
            return [STATUS_IDLE]
        if not data.endswith(b"\n"):
            return []
        text = data.decode("ascii").strip()
        if text in self.errors:
            return [f"error:{self.errors[text]}"]
        return ["ok"]


class EventList:
    """``put``-compatible sink that keeps every event."""

    def __init__(self):
        self.events: List[tuple] = []

    def put(self, event: tuple) -> None:
        self.events.append(event)

    def of(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def wait_for_event(events: "queue.Queue", predicate, timeout: float = 5.0) -> Optional[tuple]:
    """Pop events until one matches ``predicate``; None on timeout."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            event = events.get(timeout=remaining)
        except queue.Empty:
            return None
        if predicate(event):
            return event


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def written() -> List[bytes]:
    return []


@pytest.fixture
def events() -> EventList:
    return EventList()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_engine(written, events, clock):
    """Factory for engines that record writes and events and use a fake clock."""

    def factory(**options) -> ProtocolEngine:
        options.setdefault("event_q", events)
        options.setdefault("clock", clock)
        engine = ProtocolEngine(written.append, **options)
        engine.handle_line(BANNER)
        return engine

    return factory


@pytest.fixture
def engine(make_engine) -> ProtocolEngine:
    return make_engine()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport(GrblResponder())


@pytest.fixture
def clean_loggers():
    root = logging.getLogger(APP_LOGGER_NAME)
    serial = logging.getLogger(SERIAL_LOGGER_NAME)
    saved = (list(root.handlers), list(serial.handlers), root.propagate, root.level)
    yield
    for logger, keep in ((root, saved[0]), (serial, saved[1])):
        for handler in list(logger.handlers):
            if handler not in keep:
                logger.removeHandler(handler)
                handler.close()
    root.propagate = saved[2]
    root.setLevel(saved[3])


@pytest.fixture
def grbl_server():
    """Single-connection GRBL stand-in on localhost; records the lines it acknowledges."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    listener.settimeout(5.0)
    received = []

    def reply(conn, text):
        conn.sendall(text.encode("ascii") + b"\r\n")

    def serve():
        try:
            conn, _ = listener.accept()
            with conn:
                reply(conn, BANNER)
                pending = b""
                while True:
                    data = conn.recv(256)
                    if not data:
                        return
                    for value in data:
                        byte = bytes([value])
                        if byte == b"?":
                            reply(conn, STATUS_IDLE)
                        elif byte == b"\x18":
                            pending = b""
                            reply(conn, BANNER)
                        elif byte == b"\n":
                            received.append(pending.decode("ascii"))
                            pending = b""
                            reply(conn, "ok")
                        elif value < 0x80 and byte not in b"!~":
                            pending += byte
        except OSError:
            return

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1], received
    thread.join(2.0)
    listener.close()
