"""
HTTP primitives: request parsing, response writers, status codes, MIME
types and the route table the Router is built on.
"""

from .status_codes import HTTPStatus, reason_phrase
from .request import HTTPRequest, HTTPParseError, RequestParser, parse_request
from .response import (
    ConnectionResponseWriter,
    Flushable,
    Headers,
    ResponseRecorder,
    ResponseWriter,
    format_http_date,
)
from .routing import Route, RouteMatch, RouteTable, lookup_path_param
from .mime_types import get_content_type, get_mime_type

__all__ = [
    "HTTPStatus",
    "reason_phrase",
    "HTTPRequest",
    "HTTPParseError",
    "RequestParser",
    "parse_request",
    "ResponseWriter",
    "Flushable",
    "Headers",
    "ConnectionResponseWriter",
    "ResponseRecorder",
    "format_http_date",
    "Route",
    "RouteMatch",
    "RouteTable",
    "lookup_path_param",
    "get_mime_type",
    "get_content_type",
]
