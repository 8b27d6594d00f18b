"""
=============================================================================
RESPONSE WRITERS
=============================================================================

Handlers do not build and return a response object. They write to a
ResponseWriter, the outbound half of every request Context:

    ctx.response.headers.set("Content-Type", "text/plain")
    ctx.response.write_header(200)
    ctx.response.write(b"hello")

Context.send_* helpers are thin wrappers over exactly these three calls.

=============================================================================
THE WRITER CONTRACT
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   headers         mutable until the status line goes out             │
    │                                                                      │
    │   write_header(s) 1xx (not 101) → sent at once as an interim         │
    │                                   response, headers kept             │
    │                   first other   → fixes the final status             │
    │                   later calls   → ignored, warning logged            │
    │                                                                      │
    │   write(data)     no status yet → implies write_header(200)          │
    │                                                                      │
    │   flush()         OPTIONAL capability (see Flushable): push what     │
    │                   has been written so far to the client              │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
BUFFERED VS STREAMED
=============================================================================

ConnectionResponseWriter, the socket-backed writer used by the server,
keeps the body in memory until either:

    finish()  - the handler returned: send one response with Content-Length

        HTTP/1.1 200 OK
        Content-Length: 13
        ...
        {"ok": true}

    flush()   - the handler wants bytes on the wire now (event streams):
                commit the headers and switch to chunked encoding

        HTTP/1.1 200 OK
        Transfer-Encoding: chunked
        ...
        e\\r\\n
        data: tick\\n\\n\\r\\n          ← one chunk per flush
        ...
        0\\r\\n\\r\\n                     ← finish() ends the stream

HTTP/1.0 clients do not understand chunked encoding; for them a streamed
response is delimited by closing the connection.

=============================================================================
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from .request import HTTPRequest
from .status_codes import body_allowed, reason_phrase


logger = logging.getLogger(__name__)


class Headers:
    """
    Case-insensitive, multi-valued header map.

    Response headers such as Set-Cookie and Link may appear several times,
    so values are kept as an ordered list of (name, value) pairs:

        headers = Headers()
        headers.set("Content-Type", "text/html")
        headers.add("Set-Cookie", "a=1")
        headers.add("Set-Cookie", "b=2")
        headers.get_all("set-cookie")   # ["a=1", "b=2"]
    """

    def __init__(self, initial: Optional[dict] = None):
        self._items: List[Tuple[str, str]] = []
        for name, value in (initial or {}).items():
            self.add(name, value)

    def add(self, name: str, value: str) -> None:
        """Append a value, keeping existing ones."""
        self._items.append((name, str(value)))

    def set(self, name: str, value: str) -> None:
        """Replace every value of `name` with a single one."""
        self.delete(name)
        self._items.append((name, str(value)))

    def setdefault(self, name: str, value: str) -> str:
        if name not in self:
            self.set(name, value)
        return self.get(name)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value of `name`, or `default`."""
        key = name.lower()
        for item_name, value in self._items:
            if item_name.lower() == key:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        key = name.lower()
        return [value for item_name, value in self._items if item_name.lower() == key]

    def delete(self, name: str) -> None:
        key = name.lower()
        self._items = [item for item in self._items if item[0].lower() != key]

    def items(self) -> List[Tuple[str, str]]:
        return list(self._items)

    def copy(self) -> "Headers":
        clone = Headers()
        clone._items = list(self._items)
        return clone

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return any(item_name.lower() == name.lower() for item_name, _ in self._items)

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __setitem__(self, name: str, value: str) -> None:
        self.set(name, value)

    def __delitem__(self, name: str) -> None:
        self.delete(name)

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for name, _ in self._items:
            if name.lower() not in seen:
                seen.add(name.lower())
                yield name

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


class ResponseWriter(ABC):
    """
    The response sink a handler writes to.

    Implementations must honor the contract in the module docstring.
    Flushing is a separate, optional capability: see Flushable.
    """

    headers: Headers

    @abstractmethod
    def write_header(self, status: int) -> None:
        """Send (1xx) or fix (anything else) the response status."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write body bytes; returns the number of bytes accepted."""


@runtime_checkable
class Flushable(Protocol):
    """
    Capability of writers that can push partial output to the client.

    Queried at runtime before a response is upgraded to an event stream:

        if isinstance(ctx.response, Flushable):
            ...
    """

    def flush(self) -> None:
        ...


class ConnectionResponseWriter(ResponseWriter):
    """
    ResponseWriter backed by a client Connection.

    Created by the server for each request and finished by it once the
    handler chain returns. See the module docstring for the buffered and
    streamed modes.

    Any failure to write to the socket sets the request's `done` event and
    raises ConnectionError from the write (or flush) that failed.
    """

    def __init__(
        self,
        conn,
        request: HTTPRequest,
        server_name: str = "sihttp/1.0",
        keep_alive: bool = True,
        keep_alive_timeout: float = 5.0,
    ):
        self.headers = Headers()
        self._conn = conn
        self._request = request
        self._server_name = server_name
        self._keep_alive = keep_alive and request.is_keep_alive
        self._keep_alive_timeout = keep_alive_timeout

        self._status: Optional[int] = None
        self._buffer = bytearray()
        self._discarded = 0
        self._committed = False
        self._chunked = False
        self._finished = False
        self._broken = False
        self._lock = threading.Lock()

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def status(self) -> int:
        """The final status, 200 if none was written yet."""
        return self._status or 200

    @property
    def committed(self) -> bool:
        """Whether the status line and headers are already on the wire."""
        return self._committed

    @property
    def keep_alive(self) -> bool:
        """Whether the connection can carry another request afterwards."""
        return self._keep_alive and not self._broken

    @property
    def lost(self) -> bool:
        """Whether a write failed because the client went away."""
        return self._broken

    # =========================================================================
    # ResponseWriter
    # =========================================================================

    def write_header(self, status: int) -> None:
        if 100 <= status < 200 and status != 101:
            self._send_interim(status)
            return

        if self._status is not None:
            logger.warning(
                f"Superfluous write_header({status}) on {self._request.method} "
                f"{self._request.path}: status already {self._status}"
            )
            return

        self._status = status

    def write(self, data: bytes) -> int:
        if self._status is None:
            self.write_header(200)
        if not data:
            return 0

        if not body_allowed(self._status) or self._request.method == "HEAD":
            self._discarded += len(data)
            return len(data)

        with self._lock:
            if self._committed:
                self._send(self._frame(bytes(data)))
            else:
                self._buffer.extend(data)
        return len(data)

    def flush(self) -> None:
        """Commit headers (switching to streaming) and send buffered bytes."""
        if self._status is None:
            self.write_header(200)

        with self._lock:
            if not self._committed:
                self._commit(streaming=True)
                self._conn.watch_peer(self._request.done)
            elif self._buffer:
                pending = bytes(self._buffer)
                self._buffer.clear()
                self._send(self._frame(pending))

    def finish(self) -> None:
        """
        Complete the response. Called by the server after the handler.

        Buffered responses go out in one piece with Content-Length;
        chunked ones get their terminating zero-length chunk.
        """
        if self._finished or self._broken:
            return
        self._finished = True

        if self._status is None:
            self.write_header(200)

        with self._lock:
            if not self._committed:
                self._commit(streaming=False)
            elif self._chunked:
                self._send(b"0\r\n\r\n")

    # =========================================================================
    # WIRE FORMAT
    # =========================================================================

    def _commit(self, streaming: bool) -> None:
        status = self._status
        headers = self.headers.copy()

        headers.setdefault("Date", format_http_date(datetime.now(timezone.utc)))
        headers.setdefault("Server", self._server_name)

        if headers.get("Connection", "").lower() == "close":
            self._keep_alive = False

        has_body = body_allowed(status)
        if not has_body:
            headers.delete("Content-Length")
            headers.delete("Transfer-Encoding")
        elif streaming:
            if "Content-Length" not in headers and self._request.method != "HEAD":
                if self._request.version == "HTTP/1.1":
                    headers.set("Transfer-Encoding", "chunked")
                    self._chunked = True
                else:
                    self._keep_alive = False
        elif "Content-Length" not in headers:
            length = len(self._buffer) or self._discarded
            headers.set("Content-Length", str(length))

        if self._keep_alive:
            headers.setdefault("Connection", "keep-alive")
            if headers.get("Connection", "").lower() == "keep-alive":
                headers.setdefault("Keep-Alive", f"timeout={int(self._keep_alive_timeout)}")
        else:
            headers.set("Connection", "close")

        head = _serialize_head(self._request.version, status, headers)
        body = bytes(self._buffer)
        self._buffer.clear()
        self._committed = True

        self._send(head + (self._frame(body) if streaming else body))

    def _frame(self, data: bytes) -> bytes:
        """Wrap `data` as one chunk when chunked encoding is on."""
        if not self._chunked or not data:
            return data
        return f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n"

    def _send_interim(self, status: int) -> None:
        if self._committed:
            logger.warning(f"Interim status {status} after response was committed")
            return
        if self._request.version != "HTTP/1.1":
            return
        self._send(_serialize_head("HTTP/1.1", status, self.headers))

    def _send(self, data: bytes) -> None:
        if self._broken:
            raise ConnectionError("client connection already lost")
        try:
            self._conn.send(data)
        except OSError as e:
            self._broken = True
            self._request.done.set()
            raise ConnectionError(f"client connection lost: {e}") from e


class ResponseRecorder(ResponseWriter):
    """
    In-memory, flushable ResponseWriter for tests.

        recorder = ResponseRecorder()
        handler(Context(request, recorder))
        assert recorder.status == 200
        assert recorder.json() == {"ok": True}

    Interim (1xx) responses are kept in `interim` as (status, headers)
    pairs; `status` only ever holds the final status.
    """

    def __init__(self):
        self.headers = Headers()
        self.status = 200
        self.wrote_header = False
        self.flush_count = 0
        self.interim: List[Tuple[int, List[Tuple[str, str]]]] = []
        self._body = bytearray()

    def write_header(self, status: int) -> None:
        if 100 <= status < 200 and status != 101:
            self.interim.append((status, self.headers.items()))
            return
        if self.wrote_header:
            return
        self.status = status
        self.wrote_header = True

    def write(self, data: bytes) -> int:
        if not self.wrote_header:
            self.write_header(200)
        self._body.extend(data)
        return len(data)

    def flush(self) -> None:
        if not self.wrote_header:
            self.write_header(200)
        self.flush_count += 1

    @property
    def flushed(self) -> bool:
        return self.flush_count > 0

    @property
    def body(self) -> bytes:
        return bytes(self._body)

    @property
    def text(self) -> str:
        return self._body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


def _serialize_head(version: str, status: int, headers: Headers) -> bytes:
    """Status line plus header block, terminated by the empty line."""
    lines = [f"{version} {status} {reason_phrase(status)}"]
    for name, value in headers.items():
        # A raw CR or LF would let a header value start a new header
        value = value.replace("\r", " ").replace("\n", " ")
        lines.append(f"{name}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def format_http_date(dt: datetime) -> str:
    """
    Format a datetime as an HTTP-date (RFC 7231), always in GMT:

        Wed, 01 Jan 2026 12:00:00 GMT
    """
    days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

    dt = dt.astimezone(timezone.utc)
    return (
        f"{days[dt.weekday()]}, "
        f"{dt.day:02d} {months[dt.month - 1]} {dt.year} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )
