import socket
import threading

import pytest

from rfmpd.ax25 import AX25Address, AX25Frame, create_ui_frame, decode_frame
from rfmpd.direwolf import DirewolfClient
from rfmpd.kiss import KISSProtocol

EXPECTED_SEND = "c000a48c9aa04040609c60868298986103f074657374207061796c6f6164c0"


@pytest.fixture
def listener():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind(("127.0.0.1", 0))
    srv.listen(1)
    srv.settimeout(5)
    yield srv
    srv.close()


def _port(srv):
    return srv.getsockname()[1]


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _serve(srv, handler):
    def target():
        try:
            conn, _ = srv.accept()
        except OSError:
            return
        with conn:
            handler(conn)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def test_new_client_defaults():
    dc = DirewolfClient("127.0.0.1", 8001, "N0CALL", 0, 5)
    assert dc.host == "127.0.0.1"
    assert dc.port == 8001
    assert dc.is_connected() is False


def test_full_callsign():
    assert DirewolfClient("127.0.0.1", 8001, "W1AW", 5, 5).full_callsign() == "W1AW-5"
    assert DirewolfClient("127.0.0.1", 8001, "N0CALL", 0, 5).full_callsign() == "N0CALL"


def test_connect_and_close(listener):
    release = threading.Event()
    server = _serve(listener, lambda conn: release.wait(5))
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    dc.connect()
    assert dc.is_connected() is True
    dc.close()
    assert dc.is_connected() is False
    release.set()
    server.join(5)


def test_connect_refused():
    dc = DirewolfClient("127.0.0.1", _free_port(), "N0CALL", 0, 0.1)
    with pytest.raises(OSError):
        dc.connect()
    assert dc.is_connected() is False


def test_send_frame(listener):
    received = bytearray()

    def handler(conn):
        conn.settimeout(5)
        while len(received) < len(EXPECTED_SEND) // 2:
            chunk = conn.recv(4096)
            if not chunk:
                break
            received.extend(chunk)

    server = _serve(listener, handler)
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    dc.connect()
    assert dc.is_connected() is True
    dc.send_frame(b"test payload")
    server.join(5)
    dc.close()
    assert dc.is_connected() is False
    assert received.hex() == EXPECTED_SEND

    frames = KISSProtocol(0).decode_frames(bytes(received))
    assert len(frames) == 1
    ax25 = decode_frame(frames[0].data)
    assert ax25.source.callsign == "N0CALL"
    assert ax25.destination.callsign == "RFMP"
    assert ax25.info == b"test payload"


def test_send_frame_not_connected():
    dc = DirewolfClient("127.0.0.1", 8001, "N0CALL", 0, 0.1)
    with pytest.raises(ConnectionError, match="not connected"):
        dc.send_frame(b"test")


def test_receive_frame(listener):
    release = threading.Event()
    kiss = KISSProtocol(0)

    def handler(conn):
        conn.sendall(kiss.encode_data(create_ui_frame("W1AW", "RFMP", b"hello from radio").encode()))
        release.wait(5)

    server = _serve(listener, handler)
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    payloads = []
    got = threading.Event()

    def on_frame(data):
        payloads.append(data)
        got.set()

    dc.on_frame = on_frame
    dc.connect()
    stop = threading.Event()
    loop = threading.Thread(target=dc.receive_loop, args=(stop,), daemon=True)
    loop.start()
    got.wait(3)
    stop.set()
    loop.join(3)
    release.set()
    server.join(5)
    assert payloads == [b"hello from radio"]
    assert dc.is_connected() is False


def test_receive_ignores_non_ui_frames(listener):
    release = threading.Event()
    kiss = KISSProtocol(0)
    non_ui = AX25Frame(
        destination=AX25Address.create("RFMP", 0),
        source=AX25Address.create("W1AW", 0),
        control=0x3F,
        pid=0xF0,
        info=b"ignored",
    )
    decoded_non_ui = decode_frame(non_ui.encode())
    assert decoded_non_ui.control == 0x3F
    assert decoded_non_ui.info == b"ignored"

    def handler(conn):
        conn.sendall(kiss.encode_data(non_ui.encode()))
        conn.sendall(kiss.encode_data(create_ui_frame("W1AW", "RFMP", b"ui").encode()))
        release.wait(5)

    server = _serve(listener, handler)
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    payloads = []
    got = threading.Event()

    def on_frame(data):
        payloads.append(data)
        got.set()

    dc.on_frame = on_frame
    dc.connect()
    stop = threading.Event()
    loop = threading.Thread(target=dc.receive_loop, args=(stop,), daemon=True)
    loop.start()
    got.wait(3)
    stop.set()
    loop.join(3)
    release.set()
    server.join(5)
    assert payloads == [b"ui"]
    assert dc.is_connected() is False


def test_receive_loop_returns_when_peer_closes(listener):
    server = _serve(listener, lambda conn: None)
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    dc.connect()
    server.join(5)
    stop = threading.Event()
    loop = threading.Thread(target=dc.receive_loop, args=(stop,), daemon=True)
    loop.start()
    loop.join(5)
    assert not loop.is_alive()
    assert dc.is_connected() is False


def test_run_connect_failure_stops():
    dc = DirewolfClient("127.0.0.1", _free_port(), "N0CALL", 0, 0.05)
    stop = threading.Event()
    timer = threading.Timer(0.2, stop.set)
    timer.start()
    runner = threading.Thread(target=dc.run, args=(stop,), daemon=True)
    runner.start()
    runner.join(3)
    timer.cancel()
    assert not runner.is_alive()
    assert dc.is_connected() is False


def test_run_connect_then_cancel(listener):
    release = threading.Event()
    server = _serve(listener, lambda conn: release.wait(5))
    dc = DirewolfClient("127.0.0.1", _port(listener), "N0CALL", 0, 0.1)
    stop = threading.Event()
    timer = threading.Timer(0.3, stop.set)
    timer.start()
    runner = threading.Thread(target=dc.run, args=(stop,), daemon=True)
    runner.start()
    runner.join(5)
    timer.cancel()
    release.set()
    server.join(5)
    assert not runner.is_alive()
    assert dc.is_connected() is False