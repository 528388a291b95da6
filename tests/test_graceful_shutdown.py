"""Tests for start/stop lifecycle and draining of tracked connections."""

from __future__ import annotations

import socket
import time

import pytest

from handler_table import AsyncBody, Handler, Reply
from server import HTTPServer


def _wait_for_connections(server: HTTPServer, count: int, timeout: float = 2.0) -> None:
    deadline = time.time() + timeout
    while server.connection_count < count and time.time() < deadline:
        time.sleep(0.01)
    if server.connection_count < count:
        raise RuntimeError(f"expected {count} tracked connections, saw {server.connection_count}")


def _recv_all(sock: socket.socket) -> bytes:
    buffer = bytearray()
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            break
        if not chunk:
            break
        buffer.extend(chunk)
    return bytes(buffer)


def test_stop_without_start_completes_immediately() -> None:
    server = HTTPServer(port=0)
    calls: list[str] = []

    server.stop(lambda: calls.append("stopped"))

    assert calls == ["stopped"]
    assert server.state == "stopped"


def test_start_invokes_callback_once_listening() -> None:
    server = HTTPServer(port=0)
    observed: list[str] = []
    try:
        server.start(lambda: observed.append(server.state))
        with socket.create_connection((server.host, server.port), timeout=2):
            pass
    finally:
        server.stop()

    assert observed == ["listening"]


def test_double_start_raises() -> None:
    server = HTTPServer(port=0).start()
    try:
        with pytest.raises(RuntimeError):
            server.start()
    finally:
        server.stop()


def test_bind_failure_is_raised_from_start() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        server = HTTPServer(port=blocker.getsockname()[1])

        with pytest.raises(OSError):
            server.start()

    assert server.state == "stopped"


def test_stop_closes_idle_keep_alive_connection() -> None:
    server = HTTPServer(port=0).will({"on": "/ka", "reply": {"body": "ok"}}).start()
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET /ka HTTP/1.1\r\nHost: localhost\r\n\r\n")
        first = bytearray()
        while not first.endswith(b"\r\n\r\nok"):
            chunk = sock.recv(4096)
            if not chunk:
                break
            first.extend(chunk)
        _wait_for_connections(server, 1)

        server.stop()
        leftover = _recv_all(sock)

    assert first.startswith(b"HTTP/1.1 200 OK")
    assert leftover == b""
    assert server.connection_count == 0


def test_stop_abandons_response_that_never_completes() -> None:
    def never(request, complete) -> None:
        return None

    server = HTTPServer(port=0).will(Handler(on="/hang", reply=Reply(body=AsyncBody(never)))).start()
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET /hang HTTP/1.1\r\nHost: localhost\r\n\r\n")
        _wait_for_connections(server, 1)
        time.sleep(0.05)

        started = time.perf_counter()
        server.stop()
        elapsed = time.perf_counter() - started
        received = _recv_all(sock)

    assert received == b""
    assert elapsed < 2.0
    assert server.connection_count == 0


def test_stop_abandons_delayed_response() -> None:
    server = HTTPServer(port=0).will({"on": "/slow", "delay": 5000}).start()
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET /slow HTTP/1.1\r\nHost: localhost\r\n\r\n")
        _wait_for_connections(server, 1)

        started = time.perf_counter()
        server.stop()
        elapsed = time.perf_counter() - started
        received = _recv_all(sock)

    assert received == b""
    assert elapsed < 2.0


def test_stop_clears_handlers_and_allows_restart() -> None:
    server = HTTPServer(port=0).will({"on": "/one", "reply": {"body": "1"}}).start()
    server.stop()

    assert len(server.handlers) == 0

    server.will({"on": "/two", "reply": {"body": "2"}}).start()
    try:
        with socket.create_connection((server.host, server.port), timeout=3) as sock:
            sock.sendall(b"GET /one HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
            old = _recv_all(sock)
        with socket.create_connection((server.host, server.port), timeout=3) as sock:
            sock.sendall(b"GET /two HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
            new = _recv_all(sock)
    finally:
        server.stop()

    assert old.startswith(b"HTTP/1.1 404 Not Found")
    assert new.startswith(b"HTTP/1.1 200 OK")
    assert new.endswith(b"\r\n\r\n2")


def test_completion_after_stop_is_dropped_quietly() -> None:
    captured = []

    def park(request, complete) -> None:
        captured.append(complete)

    server = HTTPServer(port=0).will(Handler(on="/park", reply=Reply(body=AsyncBody(park)))).start()
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET /park HTTP/1.1\r\nHost: localhost\r\n\r\n")
        deadline = time.time() + 2.0
        while not captured and time.time() < deadline:
            time.sleep(0.01)
        server.stop()

    assert len(captured) == 1
    captured[0]("too late")
    assert server.state == "stopped"
