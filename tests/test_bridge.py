import socket
import threading

import pytest

from portshare.bridge import Bridge
from portshare.bridge_planner import BridgePlan


def _read_line(conn):
    data = b""
    while not data.endswith(b"\n"):
        chunk = conn.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


def _echo_line(conn):
    with conn:
        line = _read_line(conn)
        if line:
            conn.sendall(line)


@pytest.fixture
def echo_server():
    server = socket.create_server(("127.0.0.1", 0))

    def serve():
        while True:
            try:
                conn, _ = server.accept()
            except OSError:
                return
            threading.Thread(target=_echo_line, args=(conn,), daemon=True).start()

    threading.Thread(target=serve, daemon=True).start()
    yield server.getsockname()
    server.close()


def _plan(target, allowed):
    host, port = target
    return BridgePlan(
        listen_address="127.0.0.1:0",
        target_address=f"{host}:{port}",
        allowed_peer_ips=allowed,
    )


def test_bridge_forwards_tcp_to_loopback_target(echo_server):
    with Bridge(_plan(echo_server, ["127.0.0.1"])) as bridge:
        with socket.create_connection(bridge.addr(), timeout=2) as conn:
            conn.sendall(b"hello\n")
            assert _read_line(conn) == b"hello\n"


def test_bridge_rejects_untrusted_remote_ip(echo_server):
    with Bridge(_plan(echo_server, ["100.109.251.97"])) as bridge:
        with socket.create_connection(bridge.addr(), timeout=2) as conn:
            try:
                conn.sendall(b"hello\n")
            except OSError:
                pass
            try:
                data = _read_line(conn)
            except ConnectionError:
                data = b""
            assert data == b""


def test_addr_is_none_before_start(echo_server):
    bridge = Bridge(_plan(echo_server, ["127.0.0.1"]))
    assert bridge.addr() is None


def test_addr_reports_bound_port(echo_server):
    with Bridge(_plan(echo_server, ["127.0.0.1"])) as bridge:
        host, port = bridge.addr()
        assert host == "127.0.0.1"
        assert port > 0


def test_start_after_close_fails(echo_server):
    bridge = Bridge(_plan(echo_server, ["127.0.0.1"]))
    bridge.close()
    with pytest.raises(OSError):
        bridge.start()


def test_closed_bridge_refuses_connections(echo_server):
    bridge = Bridge(_plan(echo_server, ["127.0.0.1"]))
    bridge.start()
    address = bridge.addr()
    bridge.close()
    with pytest.raises(ConnectionRefusedError):
        socket.create_connection(address, timeout=2)


def test_start_rejects_malformed_listen_address():
    bridge = Bridge(BridgePlan(listen_address="127.0.0.1", target_address="127.0.0.1:1"))
    with pytest.raises(ValueError):
        bridge.start()