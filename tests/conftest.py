"""
pytest configuration and fixtures.
"""

import socket
import threading
from typing import Callable, Generator

import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sihttp import Context, Server, ServerConfig
from sihttp.http import HTTPRequest, ResponseRecorder


@pytest.fixture
def sample_get_request() -> bytes:
    """Sample HTTP GET request."""
    return (
        b"GET /api/users?page=1&limit=10 HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Accept: application/json\r\n"
        b"Connection: keep-alive\r\n"
        b"\r\n"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample HTTP POST request with JSON body."""
    body = b'{"name": "John", "email": "john@example.com"}'
    return (
        b"POST /api/users HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"Connection: close\r\n"
        b"\r\n"
    ) + body


def make_request(method: str = "GET", path: str = "/", **kwargs) -> HTTPRequest:
    """Build a request; header names are lowercased like the parser does."""
    headers = {name.lower(): value for name, value in kwargs.pop("headers", {}).items()}
    return HTTPRequest(method=method, path=path, headers=headers, **kwargs)


def make_ctx(method: str = "GET", path: str = "/", **kwargs) -> Context:
    """A Context over make_request() writing to a fresh ResponseRecorder."""
    return Context(make_request(method, path, **kwargs), ResponseRecorder())


@pytest.fixture
def ctx_factory() -> Callable[..., Context]:
    return make_ctx


@pytest.fixture
def config() -> ServerConfig:
    """Default test server configuration."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        min_workers=2,
        max_workers=8,
        timeout=5.0,
        keep_alive_timeout=1.0,
        shutdown_timeout=2.0,
        log_level="WARNING",
    )


class RunningServer:
    """A Server started in a background thread, for integration tests."""

    def __init__(self, server: Server):
        self.server = server
        self._thread: threading.Thread = None

    @property
    def port(self) -> int:
        return int(self.server.address.rsplit(":", 1)[1])

    def start(self):
        self._thread = threading.Thread(target=self.server.start, daemon=True)
        self._thread.start()

        if not self.server.ready.wait(timeout=5.0):
            raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.stop()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

    def connect(self) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", self.port), timeout=5.0)
        return sock


@pytest.fixture
def run_server() -> Generator[Callable[[Server], RunningServer], None, None]:
    """Start servers built by the test; every one is stopped afterwards."""
    started = []

    def start(server: Server) -> RunningServer:
        running = RunningServer(server)
        running.start()
        started.append(running)
        return running

    yield start

    for running in started:
        running.stop()
