"""
Exception types raised by request accessors and the streaming layer.

Every error carries the HTTP status a handler would normally answer with,
so callers can do:

    try:
        payload = ctx.unmarshal_json_body()
    except HTTPError as e:
        ctx.send_error_json(str(e), e.status_code)
        return

Typed accessors (query_int, param_bool, ...) never raise. Only operations
that read the body or talk to the transport do.
"""


class HTTPError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class BodyError(HTTPError):
    """The request body could not be read."""

    status_code = 400


class JSONBodyError(BodyError):
    """The request body is not valid JSON."""


class FormParseError(BodyError):
    """The query string or URL-encoded body is malformed."""


class StreamingNotSupported(HTTPError):
    """The response sink cannot flush partial output."""

    status_code = 500


class SSEClosedError(HTTPError):
    """An event stream writer was used after its stream ended."""

    status_code = 500
