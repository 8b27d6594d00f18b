"""
=============================================================================
CLIENT CONNECTION
=============================================================================

Wraps one accepted TCP socket for its whole life: reading requests off it
(several of them with keep-alive), writing response bytes, watching for the
peer going away during a stream, and closing it properly.

=============================================================================
READING A REQUEST
=============================================================================

TCP delivers bytes in arbitrary pieces, so reads are buffered until one
complete request is available:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   recv() until "\\r\\n\\r\\n"      headers complete                    │
    │        │                                                             │
    │        ▼                                                             │
    │   Content-Length: N             body size                            │
    │        │                                                             │
    │        ▼                                                             │
    │   recv() until N body bytes     request complete                     │
    │        │                                                             │
    │        ▼                                                             │
    │   return headers + body, keep any extra bytes for the next request   │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The first request waits up to `timeout`; later ones on a keep-alive
connection only `keep_alive_timeout`, and running out of it there is a
normal close rather than an error.

=============================================================================
PEER WATCHING
=============================================================================

A handler streaming events never reads from the socket, so it cannot
notice the client leaving. Once a response is flushed, watch_peer()
starts a thread that waits for the socket to become readable: an EOF or a
reset means the peer is gone and the request's `done` event is set.

=============================================================================
"""

import logging
import select
import socket
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..http.request import HTTPParseError


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    NEW = "new"
    READING = "reading"
    PROCESSING = "processing"
    KEEP_ALIVE = "keep_alive"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Connection:
    """
    A client connection.

    Attributes:
        socket: The client socket.
        address: Client's (ip, port) tuple.
        id: Short identifier used in log lines.
        state: Current lifecycle state.
        requests_handled: Requests read so far on this connection.
    """

    socket: socket.socket
    address: tuple[str, int]

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.time)
    requests_handled: int = 0

    buffer_size: int = 8192
    timeout: Optional[float] = 30.0
    keep_alive_timeout: float = 5.0
    max_request_size: int = 10 * 1024 * 1024

    _buffer: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        self.socket.setblocking(True)
        if self.timeout:
            self.socket.settimeout(self.timeout)

    @property
    def age(self) -> float:
        """Seconds since the connection was accepted."""
        return time.time() - self.created_at

    # =========================================================================
    # READING
    # =========================================================================

    def read_request(self) -> Optional[bytes]:
        """
        Read one complete request (headers and Content-Length body).

        Returns:
            The request bytes, or None if the client closed the connection
            or an idle keep-alive connection timed out.

        Raises:
            TimeoutError: If the first request does not arrive in time.
            HTTPParseError: If the request grows past max_request_size (413).
        """
        self.state = ConnectionState.READING

        if self.requests_handled > 0:
            self.socket.settimeout(self.keep_alive_timeout)

        try:
            while b"\r\n\r\n" not in self._buffer:
                chunk = self._recv()
                if not chunk:
                    return None
                self._buffer += chunk
                self._check_size()

            header_end = self._buffer.find(b"\r\n\r\n")
            body_start = header_end + 4
            content_length = _content_length(self._buffer[:header_end])

            while len(self._buffer) - body_start < content_length:
                chunk = self._recv()
                if not chunk:
                    # Closed mid-body; the parser reports the short body
                    break
                self._buffer += chunk
                self._check_size()

            request_end = body_start + content_length
            request_data = self._buffer[:request_end]
            self._buffer = self._buffer[request_end:]

            self.requests_handled += 1
            self.state = ConnectionState.PROCESSING
            return request_data

        except socket.timeout:
            if self.requests_handled > 0 and not self._buffer:
                logger.debug(f"[{self.id}] Keep-alive timeout")
                return None
            raise TimeoutError("Request read timeout") from None

        finally:
            if self.state is not ConnectionState.CLOSED:
                self.socket.settimeout(self.timeout)

    def _recv(self) -> bytes:
        try:
            return self.socket.recv(self.buffer_size)
        except (ConnectionResetError, BrokenPipeError):
            return b""

    def _check_size(self) -> None:
        if len(self._buffer) > self.max_request_size:
            raise HTTPParseError(
                f"Request too large: {len(self._buffer)} bytes",
                status_code=413,
            )

    # =========================================================================
    # WRITING
    # =========================================================================

    def send(self, data: bytes) -> None:
        """
        Send all of `data`.

        Raises:
            OSError: If the peer is gone (ConnectionResetError,
                BrokenPipeError, ...).
        """
        self.socket.sendall(data)

    def send_response(self, data: bytes) -> bool:
        """Send a complete response; False (and a warning) if the peer is gone."""
        try:
            self.send(data)
            return True
        except OSError as e:
            logger.warning(f"[{self.id}] Send failed: {e}")
            return False

    def watch_peer(self, done: threading.Event, interval: float = 0.5) -> threading.Thread:
        """
        Set `done` when the peer disconnects.

        The watcher exits once `done` is set by anyone, or when the peer
        sends more data (a pipelined request is not a disconnect).
        """
        def watch():
            while not done.is_set():
                try:
                    readable, _, _ = select.select([self.socket], [], [], interval)
                except (OSError, ValueError):
                    # Socket closed under us
                    done.set()
                    return
                if not readable:
                    continue

                try:
                    data = self.socket.recv(1, socket.MSG_PEEK)
                except socket.timeout:
                    continue
                except OSError:
                    data = b""

                if not data:
                    logger.debug(f"[{self.id}] Peer disconnected")
                    done.set()
                return

        thread = threading.Thread(target=watch, name=f"peer-{self.id}", daemon=True)
        thread.start()
        return thread

    # =========================================================================
    # CLOSING
    # =========================================================================

    def set_keep_alive(self) -> None:
        self.state = ConnectionState.KEEP_ALIVE

    @property
    def idle(self) -> bool:
        """Waiting for the next request on a kept-alive connection."""
        if self.state is ConnectionState.KEEP_ALIVE:
            return True
        return (
            self.state is ConnectionState.READING
            and self.requests_handled > 0
            and not self._buffer
        )

    def interrupt_read(self) -> None:
        """Make a blocked read_request() return None (server shutdown)."""
        try:
            self.socket.shutdown(socket.SHUT_RD)
        except OSError:
            pass

    def close(self) -> None:
        """
        Close the connection: shutdown(SHUT_WR) so the client sees EOF,
        drain what it still sends, then release the socket.
        """
        if self.state is ConnectionState.CLOSED:
            return

        self.state = ConnectionState.CLOSING

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass

        try:
            self.socket.settimeout(0.5)
            while self.socket.recv(1024):
                pass
        except OSError:
            pass

        try:
            self.socket.close()
        except OSError:
            pass

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.requests_handled} requests")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _content_length(header_section: bytes) -> int:
    """Content-Length from raw headers, 0 when absent or unreadable."""
    text = header_section.decode("utf-8", errors="replace").lower()
    for line in text.split("\r\n"):
        if line.startswith("content-length:"):
            try:
                return max(int(line.split(":", 1)[1].strip()), 0)
            except ValueError:
                return 0
    return 0
