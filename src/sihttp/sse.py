"""
=============================================================================
SERVER-SENT EVENTS
=============================================================================

Typed writer for text/event-stream responses.

=============================================================================
WIRE FORMAT
=============================================================================

An event stream is UTF-8 text made of frames, each ended by a blank line:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   event: update\\n          ← event(name, data)                      │
    │   data: line1\\n            ← one "data:" line per line of data      │
    │   data: line2\\n                                                     │
    │   \\n                       ← end of frame                           │
    │                                                                      │
    │   data: hello\\n\\n          ← data(data): unnamed event              │
    │   id: 42\\n                 ← id(id): last-event-id for reconnects   │
    │   retry: 3000\\n\\n          ← retry(ms): reconnect delay             │
    │   : keep-alive\\n\\n         ← comment(text): ignored by clients      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Each frame is written with a single write() followed by a flush(), so a
frame is either delivered whole or the call raises.

=============================================================================
LIFECYCLE
=============================================================================

    INIT ──Context.sse() upgrade──► STREAMING ──callback returns──► CLOSED
                                        │
                                        └──write fails──► CLOSED

The writer is only valid inside the callback passed to Context.sse();
once CLOSED any further call raises SSEClosedError.

    def stream(ctx):
        def send(sse: SSEWriter):
            sse.retry(3000)
            while not ctx.done.wait(timeout=1.0):
                sse.json("tick", {"at": time.time()})
        ctx.sse(send)

=============================================================================
"""

import json
import logging
from enum import Enum
from typing import Any

from .errors import SSEClosedError
from .http.response import Flushable, ResponseWriter


logger = logging.getLogger(__name__)


class SSEState(Enum):
    INIT = "init"
    STREAMING = "streaming"
    CLOSED = "closed"


class SSEWriter:
    """
    Writes Server-Sent Event frames to a flushable response.

    Errors are never swallowed: a failed write raises ConnectionError (or
    whatever the sink raised) to the caller, and the writer moves to
    CLOSED. JSON encoding errors raise before anything is written.
    """

    def __init__(self, response: ResponseWriter):
        if not isinstance(response, Flushable):
            raise TypeError("SSEWriter needs a flushable response writer")
        self._response = response
        self.state = SSEState.INIT

    @property
    def closed(self) -> bool:
        return self.state is SSEState.CLOSED

    def open(self) -> None:
        self.state = SSEState.STREAMING

    def close(self) -> None:
        self.state = SSEState.CLOSED

    # =========================================================================
    # FRAMES
    # =========================================================================

    def event(self, name: str, data: str) -> None:
        """
        An event frame. The "event:" line is omitted when `name` is empty;
        multi-line data becomes one "data:" line per line.
        """
        header = f"event: {name}\n" if name else ""
        self._send(f"{header}{_data_lines(data)}\n")

    def data(self, data: str) -> None:
        """An unnamed event (clients dispatch it as "message")."""
        self.event("", data)

    def json(self, name: str, value: Any) -> None:
        """A named event whose data is `value` encoded as compact JSON."""
        encoded = json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        self.event(name, encoded)

    def id(self, event_id: str) -> None:
        """
        Set the last-event-id. The line has no blank-line terminator of its
        own; it applies to the frame that follows it.
        """
        self._send(f"id: {event_id}\n")

    def retry(self, milliseconds: int) -> None:
        """Ask the client to wait `milliseconds` before reconnecting."""
        self._send(f"retry: {int(milliseconds)}\n\n")

    def comment(self, text: str) -> None:
        """A comment line; handy as a keep-alive through idle proxies."""
        self._send(f": {text}\n\n")

    def _send(self, frame: str) -> None:
        if self.state is not SSEState.STREAMING:
            raise SSEClosedError(f"event stream is {self.state.value}, cannot write")

        try:
            self._response.write(frame.encode("utf-8"))
            self._response.flush()
        except Exception:
            logger.debug("Event stream write failed, closing writer")
            self.state = SSEState.CLOSED
            raise


def _data_lines(data: str) -> str:
    return "".join(f"data: {line}\n" for line in data.split("\n"))
