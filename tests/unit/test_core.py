"""
Unit tests for the networking core: thread pool and client connections.
"""

import socket
import threading
import time

import pytest

from sihttp.core import Connection, ConnectionState, ThreadPool
from sihttp.http import HTTPParseError


@pytest.fixture
def socket_pair():
    """A connected (server side, client side) pair of TCP sockets."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        client_side = socket.create_connection(listener.getsockname(), timeout=5.0)
        server_side, _ = listener.accept()
    yield server_side, client_side
    for sock in (server_side, client_side):
        try:
            sock.close()
        except OSError:
            pass


class TestThreadPool:
    """Tests for ThreadPool."""

    def test_runs_tasks(self):
        pool = ThreadPool(min_workers=2, max_workers=2)
        pool.start()
        done = threading.Event()

        assert pool.submit(done.set)
        assert done.wait(timeout=2.0)
        assert pool.shutdown(timeout=2.0)

    def test_submit_before_start(self):
        with pytest.raises(RuntimeError):
            ThreadPool().submit(lambda: None)

    def test_queue_full(self):
        release = threading.Event()
        pool = ThreadPool(min_workers=1, max_workers=1, queue_size=1)
        pool.start()

        assert pool.submit(release.wait)
        # Wait until the only worker holds the first task
        deadline = time.time() + 2.0
        while pool.busy_workers == 0 and time.time() < deadline:
            time.sleep(0.01)

        assert pool.submit(release.wait)
        assert pool.submit(release.wait) is False

        release.set()
        assert pool.shutdown(timeout=2.0)

    def test_scales_up(self):
        release = threading.Event()
        pool = ThreadPool(min_workers=1, max_workers=3, queue_size=10)
        pool.start()

        # One at a time, so each new task finds every worker busy
        for expected_busy in (1, 2, 3):
            pool.submit(release.wait)
            deadline = time.time() + 2.0
            while pool.busy_workers < expected_busy and time.time() < deadline:
                time.sleep(0.01)

        assert pool.stats["workers"]["total"] == 3
        release.set()
        pool.shutdown(timeout=2.0)

    def test_failing_task_does_not_kill_worker(self):
        pool = ThreadPool(min_workers=1, max_workers=1)
        pool.start()
        done = threading.Event()

        def explode():
            raise RuntimeError("task bug")

        pool.submit(explode)
        pool.submit(done.set)

        assert done.wait(timeout=2.0)
        assert pool.stats["tasks"]["failed"] == 1
        pool.shutdown(timeout=2.0)

    def test_shutdown_timeout(self):
        release = threading.Event()
        pool = ThreadPool(min_workers=1, max_workers=1)
        pool.start()
        pool.submit(release.wait)

        assert pool.shutdown(timeout=0.2) is False
        release.set()

    def test_restart(self):
        pool = ThreadPool(min_workers=1, max_workers=1)
        pool.start()
        pool.shutdown(timeout=2.0)

        pool.start()
        done = threading.Event()
        pool.submit(done.set)

        assert done.wait(timeout=2.0)
        pool.shutdown(timeout=2.0)


class TestConnection:
    """Tests for Connection reading, writing and closing."""

    def test_read_request_with_body(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0)

        client_side.sendall(b"POST / HTTP/1.1\r\nContent-Length: 5\r\n\r\nhel")
        client_side.sendall(b"lo")

        assert conn.read_request() == b"POST / HTTP/1.1\r\nContent-Length: 5\r\n\r\nhello"
        assert conn.state is ConnectionState.PROCESSING
        assert conn.requests_handled == 1

    def test_pipelined_requests(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0)

        client_side.sendall(b"GET /a HTTP/1.1\r\n\r\nGET /b HTTP/1.1\r\n\r\n")

        assert conn.read_request() == b"GET /a HTTP/1.1\r\n\r\n"
        assert conn.read_request() == b"GET /b HTTP/1.1\r\n\r\n"

    def test_client_closed(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0)

        client_side.close()

        assert conn.read_request() is None

    def test_first_request_timeout(self, socket_pair):
        server_side, _ = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=0.1)

        with pytest.raises(TimeoutError):
            conn.read_request()

    def test_keep_alive_timeout_is_a_close(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0, keep_alive_timeout=0.1)

        client_side.sendall(b"GET / HTTP/1.1\r\n\r\n")
        conn.read_request()
        conn.set_keep_alive()

        assert conn.idle
        assert conn.read_request() is None

    def test_request_too_large(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0, max_request_size=64)

        client_side.sendall(b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 200 + b"\r\n\r\n")

        with pytest.raises(HTTPParseError) as exc_info:
            conn.read_request()
        assert exc_info.value.status_code == 413

    def test_send_and_close(self, socket_pair):
        server_side, client_side = socket_pair
        client_side.settimeout(2.0)

        with Connection(server_side, ("127.0.0.1", 1), timeout=2.0) as conn:
            assert conn.send_response(b"HTTP/1.1 200 OK\r\n\r\n")

        assert conn.state is ConnectionState.CLOSED
        assert client_side.recv(100) == b"HTTP/1.1 200 OK\r\n\r\n"
        assert client_side.recv(100) == b""

    def test_watch_peer_detects_disconnect(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0)
        done = threading.Event()

        conn.watch_peer(done, interval=0.05)
        client_side.close()

        assert done.wait(timeout=2.0)

    def test_watch_peer_stops_when_done(self, socket_pair):
        server_side, _ = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=2.0)
        done = threading.Event()

        thread = conn.watch_peer(done, interval=0.05)
        done.set()
        thread.join(timeout=2.0)

        assert not thread.is_alive()

    def test_interrupt_read(self, socket_pair):
        server_side, client_side = socket_pair
        conn = Connection(server_side, ("127.0.0.1", 1), timeout=5.0)
        result = []

        reader = threading.Thread(target=lambda: result.append(conn.read_request()))
        reader.start()
        time.sleep(0.1)
        conn.interrupt_read()
        reader.join(timeout=2.0)

        assert result == [None]
