import socket
import threading

import pytest

from grbl_streamer.transports import TcpTransport
from grbl_streamer.utils.exceptions import TransportConnectError

pytestmark = pytest.mark.integration


@pytest.fixture
def server():
    """One-shot TCP peer: greets like GRBL, records what it receives, then closes."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    received = []

    def serve():
        conn, _ = listener.accept()
        with conn:
            conn.sendall(b"Grbl 1.1h ['$' for help]\r\n")
            data = conn.recv(64)
            received.append(data)
            conn.sendall(b"ok\r\n")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1], received
    thread.join(2.0)
    listener.close()


def test_tcp_round_trip(server):
    port, received = server
    transport = TcpTransport("127.0.0.1", port)
    transport.connect()
    assert transport.is_connected
    lines = transport.lines()
    assert next(lines) == "Grbl 1.1h ['$' for help]"
    transport.write(b"$I\n")
    assert next(lines) == "ok"
    # The peer closes after replying; the line stream ends with it.
    assert list(lines) == []
    assert not transport.is_connected
    assert received == [b"$I\n"]


def test_tcp_connect_refused():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(TransportConnectError):
        TcpTransport("127.0.0.1", port, connect_timeout=1.0).connect()
