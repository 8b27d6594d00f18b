"""
=============================================================================
HTTP REQUEST PARSER
=============================================================================

Parses raw HTTP/1.1 request bytes into HTTPRequest objects, the inbound
half of every request Context.

=============================================================================
FROM BYTES TO REQUEST
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   GET /users/42?expand=true HTTP/1.1\r\n                             │
    │   ─┬─ ──────────┬────────── ────┬───                                 │
    │    │            │               │                                    │
    │  method       target          version                                │
    │                 │                                                    │
    │        ┌────────┴─────────┐                                          │
    │      path             raw_query                                      │
    │    "/users/42"       "expand=true" ──► query_params                  │
    │                                        {"expand": ["true"]}          │
    │                                                                      │
    │   Host: api.example.com\r\n       ┐                                  │
    │   Cookie: session=abc\r\n         ├─► headers (lowercase keys)       │
    │   Content-Length: 13\r\n          ┘                                  │
    │   \r\n                                                               │
    │   {"name":"x"}                    ──► body (binary stream)           │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The body is exposed as a readable binary stream rather than bytes so that
handlers consume it the way they would consume a socket: once. Context
accessors that need to read it twice (get_raw_content) drain it and put a
fresh in-memory stream back.

=============================================================================
LIVENESS
=============================================================================

Every request owns a threading.Event named `done`. It is set when:

    - the handler chain returned (the request is over)
    - the peer disconnected while a streaming response was open
    - the server is stopping

Long-running handlers, event streams in particular, poll or wait on it:

    while not ctx.done.wait(timeout=1.0):
        sse.json("tick", {"at": time.time()})

=============================================================================
"""

import io
import re
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Optional
from urllib.parse import parse_qs, unquote, urlsplit


class HTTPParseError(Exception):
    """
    Raised when HTTP request parsing fails.

    Carries the status code that should be returned to the client:

        400 Bad Request                - Malformed request syntax
        405 Method Not Allowed         - Unknown method
        413 Payload Too Large          - Request exceeds size limit
        501 Not Implemented            - Chunked request bodies
        505 HTTP Version Not Supported - Unknown HTTP version
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class HTTPRequest:
    """
    A parsed HTTP request.

    =========================================================================
    ATTRIBUTES
    =========================================================================

        method:         GET, POST, PUT, ...
        path:           Decoded path without query string ("/users/42")
        version:        "HTTP/1.1" or "HTTP/1.0"
        target:         The raw request-target ("/users/42?expand=true")
        headers:        Header name (lowercase) → value
        query_params:   "?a=1&a=2" → {"a": ["1", "2"]}
        raw_query:      Query string as sent, without "?"
        body:           Binary stream positioned at the body start
        path_params:    Values captured by the router ("/users/:id" → {"id": "42"})
        route_path:     Part of the path still to be matched while the request
                        is dispatched through mounted routers
        client_address: (ip, port) of the peer
        done:           Liveness signal, see module docstring

    Bytes are accepted for `body` and wrapped in io.BytesIO, and a bare
    `raw_query` is parsed into `query_params`, which keeps test requests
    short:

        HTTPRequest("POST", "/echo", raw_query="n=1", body=b"hello")

    =========================================================================
    """

    method: str
    path: str
    version: str = "HTTP/1.1"
    target: str = ""

    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, list[str]] = field(default_factory=dict)
    raw_query: str = ""
    body: BinaryIO = field(default_factory=io.BytesIO, repr=False)

    # Router-injected values
    path_params: Dict[str, str] = field(default_factory=dict)
    route_path: str = ""

    client_address: tuple[str, int] = ("", 0)
    done: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )

    def __post_init__(self):
        if isinstance(self.body, (bytes, bytearray)):
            self.body = io.BytesIO(bytes(self.body))
        if self.raw_query and not self.query_params:
            self.query_params = parse_qs(self.raw_query, keep_blank_values=True)
        if not self.target:
            self.target = self.path + (f"?{self.raw_query}" if self.raw_query else "")
        if not self.route_path:
            self.route_path = self.path

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def remote_addr(self) -> str:
        """The peer address as "ip:port"."""
        ip, port = self.client_address
        if ":" in ip:
            return f"[{ip}]:{port}"
        return f"{ip}:{port}"

    @property
    def host(self) -> str:
        """The Host header (virtual host the client asked for)."""
        return self.headers.get("host", "")

    @property
    def content_length(self) -> int:
        """Content-Length as an integer; 0 if missing or invalid."""
        try:
            return int(self.headers.get("content-length", 0))
        except ValueError:
            return 0

    @property
    def is_keep_alive(self) -> bool:
        """
        Whether the client wants the connection reused.

            HTTP/1.1: keep-alive unless "Connection: close"
            HTTP/1.0: close unless "Connection: keep-alive"
        """
        connection = self.headers.get("connection", "").lower()

        if self.version == "HTTP/1.1":
            return connection != "close"
        return connection == "keep-alive"

    def get_header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


class RequestParser:
    """
    Parses raw HTTP request bytes into HTTPRequest objects.

    ==========================================================================
    PARSER STEPS
    ==========================================================================

        1. Size check                 too large?        → 413
        2. Find \\r\\n\\r\\n            missing?          → 400
        3. Request line               bad syntax        → 400
                                      unknown method    → 405
                                      unknown version   → 505
                                      ".." in path      → 400
        4. Headers                    lowercase names, repeated headers joined
        5. Body                       exactly Content-Length bytes
                                      Transfer-Encoding → 501

    ==========================================================================
    """

    VALID_METHODS = {
        "GET", "POST", "PUT", "DELETE", "PATCH",
        "HEAD", "OPTIONS", "TRACE", "CONNECT",
    }

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:]+):\s*(.*)$")

    def __init__(self, max_request_size: int = 10 * 1024 * 1024):
        self.max_request_size = max_request_size

    def parse(
        self,
        data: bytes,
        client_address: tuple[str, int] = ("", 0)
    ) -> HTTPRequest:
        """
        Parse raw HTTP request data into an HTTPRequest.

        Args:
            data: One complete request (headers and body) read from the socket.
            client_address: The peer's (ip, port).

        Raises:
            HTTPParseError: If the request is malformed.
        """
        if len(data) > self.max_request_size:
            raise HTTPParseError(
                f"Request too large: {len(data)} bytes",
                status_code=413
            )

        header_end = data.find(b"\r\n\r\n")
        if header_end == -1:
            raise HTTPParseError("Incomplete request: no header terminator")

        header_section = data[:header_end].decode("utf-8", errors="replace")
        body = data[header_end + 4:]

        lines = header_section.split("\r\n")
        method, target, version = self._parse_request_line(lines[0])
        path, raw_query = self._split_target(target)

        headers = self._parse_headers(lines[1:])

        if "transfer-encoding" in headers:
            raise HTTPParseError(
                "Transfer-Encoding request bodies are not supported",
                status_code=501
            )

        try:
            content_length = int(headers.get("content-length", 0))
        except ValueError:
            raise HTTPParseError(
                f"Invalid Content-Length: {headers['content-length']!r}"
            ) from None
        if content_length < 0:
            raise HTTPParseError(f"Invalid Content-Length: {content_length}")

        if len(body) < content_length:
            raise HTTPParseError(
                f"Incomplete body: expected {content_length} bytes, got {len(body)}"
            )

        # Anything past Content-Length belongs to the next pipelined request
        body = body[:content_length]

        return HTTPRequest(
            method=method,
            path=path,
            version=version,
            target=target,
            headers=headers,
            query_params=parse_qs(raw_query, keep_blank_values=True),
            raw_query=raw_query,
            body=io.BytesIO(body),
            client_address=client_address,
        )

    def _parse_request_line(self, line: str) -> tuple[str, str, str]:
        """Split "METHOD SP TARGET SP VERSION" and validate each part."""
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line}")

        method, target, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise HTTPParseError(
                f"Unsupported HTTP version: {version}",
                status_code=505
            )

        return method, target, version

    def _split_target(self, target: str) -> tuple[str, str]:
        """
        Split a request-target into (decoded path, raw query).

        Origin-form targets are split by hand: urlsplit() would read
        "//users" as a network location. Absolute-form targets
        ("http://host/path") go through urlsplit().
        """
        if target.startswith(("http://", "https://")):
            parts = urlsplit(target)
            raw_path, raw_query = parts.path, parts.query
        else:
            raw_path, _, raw_query = target.partition("?")
            raw_path = raw_path.partition("#")[0]
            raw_query = raw_query.partition("#")[0]

        path = unquote(raw_path) or "/"

        # Reject traversal before anything maps the path onto a filesystem
        if ".." in path.split("/"):
            raise HTTPParseError("Invalid path: contains ..", status_code=400)

        return path, raw_query

    def _parse_headers(self, lines: list[str]) -> Dict[str, str]:
        """
        Parse header lines into a dict with lowercase names.

        Continuation lines (leading whitespace) extend the previous header.
        Repeated headers are joined with ", ", except Cookie, whose pairs
        are joined with "; " so they still parse as one cookie string.
        Malformed lines are skipped.
        """
        headers: Dict[str, str] = {}
        current_name: Optional[str] = None

        for line in lines:
            if not line:
                continue

            if line[0] in (" ", "\t"):
                if current_name is not None:
                    headers[current_name] += " " + line.strip()
                continue

            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue

            name, value = match.groups()
            name = name.strip().lower()
            value = value.strip()
            current_name = name

            if name in headers:
                separator = "; " if name == "cookie" else ", "
                headers[name] += separator + value
            else:
                headers[name] = value

        return headers


def parse_request(
    data: bytes,
    client_address: tuple[str, int] = ("", 0),
    max_size: int = 10 * 1024 * 1024
) -> HTTPRequest:
    """Parse one request with a throwaway RequestParser."""
    return RequestParser(max_request_size=max_size).parse(data, client_address)
