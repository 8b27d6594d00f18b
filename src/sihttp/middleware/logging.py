"""
=============================================================================
REQUEST LOGGER MIDDLEWARE
=============================================================================

Logs one line per request on the "sihttp.access" logger: method, path, the
status actually written, bytes written and how long the handler took.

    request method=GET path=/users/42 status=200 bytes=27 duration=0.84ms

=============================================================================
CAPTURING THE STATUS
=============================================================================

Handlers write the status straight to the response, so the middleware
hands them a StatusRecorder wrapped around the real writer:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   handler ──► StatusRecorder ──► ConnectionResponseWriter ──► socket │
    │                    │                                                 │
    │                    └── remembers the FIRST write_header() status;   │
    │                        later calls are dropped, write() without a    │
    │                        status records 200                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The recorder must not hide capabilities of the writer it wraps: when the
inner writer is Flushable, wrap_status_recorder() returns a recorder that
is Flushable too, so event streams keep working behind the logger.

=============================================================================
"""

import json
import logging
import time
from typing import Optional

from .base import Handler, Middleware
from .terminal import TerminalConfig, status_color
from ..context import Context
from ..http.response import Flushable, ResponseWriter


logger = logging.getLogger("sihttp.access")


class StatusRecorder(ResponseWriter):
    """
    ResponseWriter that records the status and body size passing through.

    The first final status wins; interim (1xx) statuses are forwarded
    without being recorded.
    """

    def __init__(self, inner: ResponseWriter):
        self.inner = inner
        self.status = 200
        self.wrote_header = False
        self.bytes_written = 0

    @property
    def headers(self):
        return self.inner.headers

    def write_header(self, status: int) -> None:
        if 100 <= status < 200 and status != 101:
            self.inner.write_header(status)
            return
        if self.wrote_header:
            return
        self.status = status
        self.wrote_header = True
        self.inner.write_header(status)

    def write(self, data: bytes) -> int:
        if not self.wrote_header:
            self.write_header(200)
        written = self.inner.write(data)
        self.bytes_written += written
        return written


class FlushableStatusRecorder(StatusRecorder):
    """StatusRecorder over a Flushable writer; flush() passes through."""

    def flush(self) -> None:
        if not self.wrote_header:
            self.write_header(200)
        self.inner.flush()


def wrap_status_recorder(inner: ResponseWriter) -> StatusRecorder:
    """A recorder around `inner` exposing the same capabilities."""
    if isinstance(inner, Flushable):
        return FlushableStatusRecorder(inner)
    return StatusRecorder(inner)


class LoggerMiddleware(Middleware):
    """
    Access log middleware.

    Register it first so its timing covers every other middleware and it
    logs requests that inner middleware reject:

        server = Server(":8080", middlewares=[LoggerMiddleware()])

    Args:
        log_format: "text" (key=value) or "json".
        terminal: Color settings. Colors are only used in text format.
        log_level: Level of the access log lines.
        skip_paths: Paths that are never logged (health checks).
    """

    def __init__(
        self,
        log_format: str = "text",
        terminal: Optional[TerminalConfig] = None,
        log_level: int = logging.INFO,
        skip_paths: Optional[list[str]] = None,
    ):
        if log_format not in ("text", "json"):
            raise ValueError(f"Unknown log format: {log_format}")
        self.log_format = log_format
        self.terminal = terminal or TerminalConfig()
        self.log_level = log_level
        self.skip_paths = set(skip_paths or [])

    def __call__(self, ctx: Context, next: Handler) -> None:
        recorder = wrap_status_recorder(ctx.response)
        start = time.perf_counter()

        try:
            next(ctx.with_response(recorder))
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                f"request failed method={ctx.request.method} path={ctx.request.path} "
                f"error={type(e).__name__}: {e} duration={duration_ms:.2f}ms"
            )
            raise

        if ctx.request.path in self.skip_paths:
            return

        duration_ms = (time.perf_counter() - start) * 1000
        logger.log(self.log_level, self.format(ctx, recorder, duration_ms))

    def format(self, ctx: Context, recorder: StatusRecorder, duration_ms: float) -> str:
        """Render one access log line."""
        if self.log_format == "json":
            return json.dumps({
                "msg": "request",
                "method": ctx.request.method,
                "path": ctx.request.path,
                "status": recorder.status,
                "bytes": recorder.bytes_written,
                "duration_ms": round(duration_ms, 2),
            })

        method = self.terminal.colorize("magenta", ctx.request.method)
        status = self.terminal.colorize(status_color(recorder.status), str(recorder.status))
        return (
            f"request method={method} path={ctx.request.path} status={status} "
            f"bytes={recorder.bytes_written} duration={duration_ms:.2f}ms"
        )
