"""
=============================================================================
REQUEST CONTEXT
=============================================================================

Every handler receives exactly one argument, a Context:

    def get_user(ctx: Context) -> None:
        user_id = ctx.param_int("id")
        ctx.send_json({"id": user_id})

A Context bundles three things for the lifetime of one request:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                             CONTEXT                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   request      HTTPRequest     read side:  ctx.query_int("page")     │
    │                                            ctx.bearer_token()        │
    │                                            ctx.unmarshal_json_body() │
    │                                                                      │
    │   response     ResponseWriter  write side: ctx.send_json(...)        │
    │                                            ctx.redirect("/login")    │
    │                                            ctx.sse(stream)           │
    │                                                                      │
    │   attributes   Attributes      values handed down by middleware      │
    │                                (copy on write, see attributes.py)    │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
ACCESSORS NEVER RAISE, BODY READERS DO
=============================================================================

    ctx.query_int("page")            "?page=abc"  → 0
    ctx.query_int_default("page", 1) "?page=abc"  → 1
    ctx.param_bool("flag")           missing      → False

Bad input in a query string or path parameter resolves to a zero value or
the caller's default. Reading the body is different: get_raw_content,
unmarshal_json_body and get_form_data raise the BodyError family and the
handler decides what the client sees.

=============================================================================
SENDING A RESPONSE
=============================================================================

Every send_* helper is one pass of: set headers → write status → write body.
Calling two of them for the same request is the caller's mistake; the
second status is ignored by the writer and its body is appended to the
first one. A status of 0 or None means 200 (302 for redirect, 500 for
send_error_json).

=============================================================================
"""

import base64
import binascii
import html
import json
import logging
import os
import re
from datetime import datetime, timezone
from email.parser import BytesParser
from email import policy
from http.cookies import CookieError, SimpleCookie
from io import BytesIO
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urljoin

from .attributes import AttributeKey, Attributes
from .errors import BodyError, FormParseError, JSONBodyError, StreamingNotSupported
from .http.mime_types import get_content_type
from .http.request import HTTPRequest
from .http.response import Flushable, ResponseWriter, format_http_date
from .http.routing import lookup_path_param
from .http.status_codes import reason_phrase
from .sse import SSEWriter


logger = logging.getLogger(__name__)


JSON_ENCODE_ERROR_BODY = (
    b'{"error":{"code":500,"message":"Internal Server Error. Could not encode JSON."}}'
)

# Methods whose URL-encoded body is merged into get_form_data()
FORM_BODY_METHODS = ("POST", "PUT", "PATCH")

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_TRUE_VALUES = ("1", "t", "T", "TRUE", "true", "True")
_FALSE_VALUES = ("0", "f", "F", "FALSE", "false", "False")


class Context:
    """
    Per-request handle passed to every handler and middleware.

    Contexts are cheap value objects. set_attribute() and with_response()
    return NEW contexts sharing the same request; the receiver is never
    modified, so a middleware can scope a change to everything downstream
    of it:

        def auth(ctx, next):
            user = lookup(ctx.bearer_token())
            next(ctx.set_attribute(USER, user))
    """

    __slots__ = ("request", "response", "attributes")

    def __init__(
        self,
        request: HTTPRequest,
        response: ResponseWriter,
        attributes: Optional[Attributes] = None,
    ):
        self.request = request
        self.response = response
        self.attributes = attributes if attributes is not None else Attributes()

    def __repr__(self) -> str:
        return f"Context({self.request.method} {self.request.path})"

    # =========================================================================
    # ATTRIBUTES
    # =========================================================================

    def set_attribute(self, key: AttributeKey, value: Any) -> "Context":
        """A new Context that also carries `key` → `value`."""
        return Context(self.request, self.response, self.attributes.set(key, value))

    def get_attribute(self, key: AttributeKey, default: Any = None) -> Any:
        """The value set for `key` upstream, or `default` (None)."""
        return self.attributes.get(key, default)

    def with_response(self, response: ResponseWriter) -> "Context":
        """A new Context writing to `response` (used by recording middleware)."""
        return Context(self.request, response, self.attributes)

    # =========================================================================
    # LIVENESS
    # =========================================================================

    @property
    def done(self):
        """
        The request's threading.Event. Set when the peer disconnects during
        a stream, when the server stops, or once the request is over.
        """
        return self.request.done

    def disconnected(self) -> bool:
        return self.request.done.is_set()

    # =========================================================================
    # CONTENT CLASSIFICATION
    # =========================================================================

    def content_type(self) -> str:
        """The Content-Type header without parameters ("; charset=...")."""
        value = self.request.get_header("content-type")
        return value.split(";", 1)[0].strip()

    def is_json(self) -> bool:
        return self.content_type() == "application/json"

    def is_form(self) -> bool:
        return self.content_type() == "application/x-www-form-urlencoded"

    def is_multipart_form(self) -> bool:
        return self.content_type().startswith("multipart/form-data")

    def accepts(self, *offers: str) -> bool:
        """
        Whether the Accept header allows any of `offers`.

        This is a permissive substring match, not media-range parsing, and
        is meant to be:

            Accept: text/html, application/json;q=0.9
            accepts("application/json")  → True  (substring of a token)
            accepts("json")              → True  (also a substring)

            Accept: */*  or  Accept: image/*
            accepts(anything)            → True  (any token containing "*")
        """
        accept = self.request.get_header("accept")
        tokens = [token.strip() for token in accept.split(",")]

        for token in tokens:
            if "*" in token:
                return True
            for offer in offers:
                if offer in token:
                    return True
        return False

    # =========================================================================
    # AUTHENTICATION AND CLIENT
    # =========================================================================

    def bearer_token(self) -> str:
        """
        The token of "Authorization: Bearer <token>" ("bearer" matched
        case-insensitively), "" for any other scheme or a missing header.
        """
        auth = self.request.get_header("authorization")
        if len(auth) > 7 and auth[:7].lower() == "bearer ":
            return auth[7:]
        return ""

    def basic_auth(self) -> Optional[Tuple[str, str]]:
        """
        (username, password) from "Authorization: Basic <base64>", or None
        when the header is missing or malformed.
        """
        auth = self.request.get_header("authorization")
        if len(auth) < 6 or auth[:6].lower() != "basic ":
            return None

        try:
            decoded = base64.b64decode(auth[6:], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None

        username, sep, password = decoded.partition(":")
        if not sep:
            return None
        return username, password

    def ip(self) -> str:
        """
        The client address: the first X-Forwarded-For entry, falling back
        to the connection's "ip:port".

        X-Forwarded-For is trusted unconditionally. Any client can send it,
        so only rely on this behind a reverse proxy that overwrites it.
        """
        forwarded = self.request.get_header("x-forwarded-for")
        first = forwarded.split(",", 1)[0].strip() if forwarded else ""
        return first or self.request.remote_addr

    # =========================================================================
    # REQUEST LINE, HEADERS AND COOKIES
    # =========================================================================

    def header_string(self, key: str) -> str:
        return self.request.get_header(key)

    def cookie_string(self, key: str) -> str:
        """Value of cookie `key`, "" when absent or the header is malformed."""
        raw = self.request.get_header("cookie")
        if not raw:
            return ""

        cookies = SimpleCookie()
        try:
            cookies.load(raw)
        except CookieError:
            return ""

        morsel = cookies.get(key)
        return morsel.value if morsel is not None else ""

    def method(self) -> str:
        return self.request.method

    def host(self) -> str:
        return self.request.host

    def full_url(self) -> str:
        """The request-target exactly as the client sent it."""
        return self.request.target

    def path(self) -> str:
        return self.request.path

    def path_and_query(self) -> str:
        if not self.request.raw_query:
            return self.request.path
        return f"{self.request.path}?{self.request.raw_query}"

    # =========================================================================
    # QUERY PARAMETERS
    # =========================================================================

    def query(self) -> Dict[str, List[str]]:
        """All query parameters; the dict is a copy the caller may modify."""
        return {key: list(values) for key, values in self.request.query_params.items()}

    def query_string(self, key: str) -> str:
        return self.query_string_default(key, "")

    def query_string_default(self, key: str, default: str) -> str:
        value = _first(self.request.query_params, key)
        return value if value else default

    def query_int(self, key: str) -> int:
        return self.query_int_default(key, 0)

    def query_int_default(self, key: str, default: int) -> int:
        return parse_int(_first(self.request.query_params, key), default)

    def query_bool(self, key: str) -> bool:
        return self.query_bool_default(key, False)

    def query_bool_default(self, key: str, default: bool) -> bool:
        return parse_bool(_first(self.request.query_params, key), default)

    # =========================================================================
    # PATH PARAMETERS
    # =========================================================================

    def param_string(self, key: str) -> str:
        """Value captured by the router for `key` ("/users/:id"), or ""."""
        return lookup_path_param(self.request, key)

    def param_int(self, key: str) -> int:
        return self.param_int_default(key, 0)

    def param_int_default(self, key: str, default: int) -> int:
        return parse_int(lookup_path_param(self.request, key), default)

    def param_bool(self, key: str) -> bool:
        return self.param_bool_default(key, False)

    def param_bool_default(self, key: str, default: bool) -> bool:
        return parse_bool(lookup_path_param(self.request, key), default)

    # =========================================================================
    # BODY
    # =========================================================================

    def get_raw_content(self) -> bytes:
        """
        Read the whole body.

        The body stream is drained, closed and replaced with an in-memory
        stream over the same bytes, so a second call (or a later reader of
        ctx.request.body) sees the full body again.

        Raises:
            BodyError: If the body stream fails.
        """
        stream = self.request.body
        try:
            data = stream.read()
            stream.close()
        except (OSError, ValueError) as e:
            raise BodyError(f"Could not read request body: {e}") from e

        self.request.body = BytesIO(data)
        return data

    def unmarshal_json_body(self) -> Any:
        """
        The body decoded as JSON.

        Raises:
            BodyError: If the body stream fails.
            JSONBodyError: If the body is not valid UTF-8 JSON.
        """
        data = self.get_raw_content()
        try:
            return json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise JSONBodyError(f"Invalid JSON body: {e}") from e

    def get_form_data(self) -> Dict[str, List[str]]:
        """
        Form values from the query string and the request body.

        =====================================================================
        SOURCES
        =====================================================================

            query string                      always
            application/x-www-form-urlencoded POST, PUT and PATCH bodies
            multipart/form-data               text fields; file parts are
                                              skipped

        The merged values are returned when there are any, otherwise the
        values posted in the body alone. A multipart body that does not
        parse contributes nothing and is not reported.

        =====================================================================

        Raises:
            FormParseError: If the query string or URL-encoded body is
                malformed.
            BodyError: If the body stream fails.
        """
        form: Dict[str, List[str]] = {}
        post_form: Dict[str, List[str]] = {}

        _merge(form, _parse_urlencoded(self.request.raw_query))

        if self.request.method in FORM_BODY_METHODS:
            if self.is_form():
                body = self.get_raw_content()
                try:
                    text = body.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise FormParseError(f"Invalid form body: {e}") from e
                values = _parse_urlencoded(text)
                _merge(post_form, values)
                _merge(form, values)
            elif self.is_multipart_form():
                values = self._parse_multipart()
                _merge(post_form, values)
                _merge(form, values)

        if form:
            return form
        return post_form

    def _parse_multipart(self) -> Dict[str, List[str]]:
        content_type = self.request.get_header("content-type")
        body = self.get_raw_content()

        message = BytesParser(policy=policy.HTTP).parsebytes(
            f"Content-Type: {content_type}\r\n\r\n".encode("latin-1") + body
        )
        if not message.is_multipart():
            logger.debug(f"Ignoring unparseable multipart body on {self.request.path}")
            return {}

        values: Dict[str, List[str]] = {}
        for part in message.iter_parts():
            name = part.get_param("name", header="content-disposition")
            if not name or part.get_filename():
                continue
            payload = part.get_payload(decode=True) or b""
            charset = part.get_content_charset() or "utf-8"
            values.setdefault(name, []).append(payload.decode(charset, errors="replace"))
        return values

    # =========================================================================
    # RESPONSE HEADERS AND STATUS
    # =========================================================================

    def add_header(self, key: str, value: str) -> None:
        """Append a response header (existing values are kept)."""
        self.response.headers.add(key, value)

    def add_headers(self, headers: Dict[str, str]) -> None:
        for key, value in headers.items():
            self.response.headers.add(key, value)

    def write_status(self, status: int) -> None:
        """Write the status line. Add headers first; later ones are lost."""
        self.response.write_header(status)

    def set_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: Optional[int] = None,
        expires: Optional[datetime] = None,
        path: Optional[str] = None,
        domain: Optional[str] = None,
        secure: bool = False,
        http_only: bool = False,
        same_site: Optional[str] = None,
    ) -> None:
        """
        Add a Set-Cookie header. Clear a cookie with max_age=-1 (or 0).

            ctx.set_cookie("session", token, path="/", http_only=True,
                           same_site="Lax", max_age=3600)
        """
        cookie = SimpleCookie()
        cookie[name] = value
        morsel = cookie[name]

        if max_age is not None:
            morsel["max-age"] = str(max(max_age, 0))
        if expires is not None:
            morsel["expires"] = format_http_date(expires)
        if path:
            morsel["path"] = path
        if domain:
            morsel["domain"] = domain
        if secure:
            morsel["secure"] = True
        if http_only:
            morsel["httponly"] = True
        if same_site:
            morsel["samesite"] = same_site

        self.add_header("Set-Cookie", morsel.OutputString())

    # =========================================================================
    # RESPONSE BODIES
    # =========================================================================

    def send_bytes(self, data: bytes, status: int = 0) -> None:
        self.response.write_header(status or 200)
        self.response.write(data)

    def send_string(self, data: str, status: int = 0) -> None:
        """Send text; Content-Type defaults to text/plain."""
        self.response.headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        self.response.write_header(status or 200)
        self.response.write(data.encode("utf-8"))

    def send_json(self, data: Any, status: int = 0) -> None:
        """
        Send `data` as JSON.

        None sends the status and Content-Type with an empty body. When
        `data` cannot be encoded the status has already been written, so a
        fixed 500 error object is written as the body instead and the
        failure is logged.
        """
        self.add_header("Content-Type", "application/json")
        self.response.write_header(status or 200)

        if data is None:
            return

        try:
            encoded = json.dumps(data, ensure_ascii=False, allow_nan=False) + "\n"
        except (TypeError, ValueError) as e:
            logger.error(f"Could not encode JSON response for {self.request.path}: {e}")
            self.response.write(JSON_ENCODE_ERROR_BODY)
            return

        self.response.write(encoded.encode("utf-8"))

    def send_html(self, data: str, status: int = 0) -> None:
        self.response.headers.set("Content-Type", "text/html; charset=utf-8")
        self.response.write_header(status or 200)
        self.response.write(data.encode("utf-8"))

    def no_content(self) -> None:
        self.response.write_header(204)

    def send_error_json(self, message: str, status: int = 0) -> None:
        """
        Send {"error": {"code": status, "message": message}}; status
        defaults to 500.
        """
        status = status or 500
        self.send_json({"error": {"code": status, "message": message}}, status)

    def send_stream(self, stream: BinaryIO, status: int = 0, chunk_size: int = 65536) -> None:
        """
        Copy `stream` to the response. The stream is closed whether the
        copy succeeds or raises; errors from either side propagate.
        """
        try:
            self.response.write_header(status or 200)
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                self.response.write(chunk)
        finally:
            stream.close()

    def send_file(self, path: str) -> None:
        """
        Serve a file from disk.

        =====================================================================
        BEHAVIOR
        =====================================================================

            ".." in path          → 400
            missing file          → 404
            directory             → its index.html, 404 if it has none
            If-None-Match hit     → 304 with no body
            otherwise             → 200, Content-Type from the extension,
                                    ETag and Last-Modified

        =====================================================================
        """
        if ".." in path.replace("\\", "/").split("/"):
            logger.warning(f"Rejected file path with '..': {path}")
            self.send_error_json("Invalid file path", 400)
            return

        if os.path.isdir(path):
            path = os.path.join(path, "index.html")

        try:
            stat = os.stat(path)
        except OSError:
            self.send_error_json("File not found", 404)
            return
        if not os.path.isfile(path):
            self.send_error_json("File not found", 404)
            return

        etag = f'"{int(stat.st_mtime)}-{stat.st_size}"'
        last_modified = format_http_date(datetime.fromtimestamp(stat.st_mtime, timezone.utc))

        self.response.headers.set("ETag", etag)
        self.response.headers.set("Last-Modified", last_modified)

        if self.request.get_header("if-none-match") == etag:
            self.response.write_header(304)
            return

        self.response.headers.set("Content-Type", get_content_type(path))
        self.response.headers.set("Content-Length", str(stat.st_size))
        self.send_stream(open(path, "rb"))

    def redirect(self, url: str, status: int = 0) -> None:
        """
        Redirect to `url` (302 unless `status` says otherwise). Relative
        URLs are resolved against the request path.
        """
        status = status or 302
        location = urljoin(self.request.path, url)

        self.response.headers.set("Location", location)
        if self.request.method in ("GET", "HEAD"):
            self.response.headers.set("Content-Type", "text/html; charset=utf-8")
            self.response.write_header(status)
            self.response.write(
                f'<a href="{html.escape(location)}">{reason_phrase(status)}</a>.\n'.encode("utf-8")
            )
        else:
            self.response.write_header(status)

    def write_early_hint_script(self, path: str) -> None:
        """Send 103 Early Hints preloading a script. A final response must follow."""
        self._early_hint(path, "script")

    def write_early_hint_style(self, path: str) -> None:
        """Send 103 Early Hints preloading a stylesheet. A final response must follow."""
        self._early_hint(path, "style")

    def _early_hint(self, path: str, kind: str) -> None:
        self.add_header("Link", f"</{path.lstrip('/')}>; rel=preload; as={kind}")
        self.response.write_header(103)

    def not_found(self) -> None:
        """A bare 404 carrying X-Error-Code: 404."""
        self.add_header("X-Error-Code", "404")
        self.response.write_header(404)

    # =========================================================================
    # SERVER-SENT EVENTS
    # =========================================================================

    def sse(self, fn: Callable[[SSEWriter], None]) -> None:
        """
        Upgrade the response to an event stream and run `fn` with a writer.

        The headers and a 200 go out and are flushed before `fn` is called.
        The writer is closed when `fn` returns or raises. If the response
        cannot be flushed a 500 "streaming not supported" response is sent
        and `fn` is never called.

            def clock(ctx):
                def stream(sse):
                    while not ctx.done.wait(timeout=1.0):
                        sse.data(time.strftime("%H:%M:%S"))
                ctx.sse(stream)
        """
        try:
            writer = self._open_event_stream()
        except StreamingNotSupported as e:
            logger.warning(f"{e} for {self.request.method} {self.request.path}")
            headers = self.response.headers
            headers.set("Content-Type", "text/plain; charset=utf-8")
            headers.set("X-Content-Type-Options", "nosniff")
            self.response.write_header(e.status_code)
            self.response.write(b"streaming not supported\n")
            return

        try:
            fn(writer)
        finally:
            writer.close()

    def _open_event_stream(self) -> SSEWriter:
        if not isinstance(self.response, Flushable):
            raise StreamingNotSupported("Response writer cannot flush")

        headers = self.response.headers
        headers.set("Content-Type", "text/event-stream")
        headers.set("Cache-Control", "no-cache")
        headers.set("Connection", "keep-alive")

        self.response.write_header(200)
        self.response.flush()

        writer = SSEWriter(self.response)
        writer.open()
        return writer


# =============================================================================
# VALUE PARSING
# =============================================================================

def parse_int(value: Optional[str], default: int = 0) -> int:
    """
    Parse a base-10 integer with an optional sign; anything else (spaces,
    underscores, non-ASCII digits) yields `default`.
    """
    if not value or not _INT_PATTERN.fullmatch(value):
        return default
    return int(value)


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Accepts 1 t T TRUE true True and 0 f F FALSE false False."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _first(values: Dict[str, List[str]], key: str) -> str:
    found = values.get(key)
    return found[0] if found else ""


def _merge(target: Dict[str, List[str]], values: Dict[str, List[str]]) -> None:
    for key, items in values.items():
        target.setdefault(key, []).extend(items)


_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _parse_urlencoded(text: str) -> Dict[str, List[str]]:
    """
    Parse "a=1&b=2&a=3" into {"a": ["1", "3"], "b": ["2"]}.

    Unlike urllib.parse.parse_qs, a malformed escape ("%zz") is an error.
    """
    if _BAD_ESCAPE.search(text):
        raise FormParseError(f"Invalid URL escape in {text!r}")

    values: Dict[str, List[str]] = {}
    try:
        pairs = parse_qsl(text, keep_blank_values=True, errors="strict")
    except UnicodeDecodeError as e:
        raise FormParseError(f"Invalid URL encoding: {e}") from e

    for key, value in pairs:
        values.setdefault(key, []).append(value)
    return values

