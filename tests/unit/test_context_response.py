"""
Unit tests for the response helpers on Context.
"""

import io
import json
import math
import os
from datetime import datetime, timezone

import pytest

from sihttp.context import JSON_ENCODE_ERROR_BODY
from sihttp.http import Headers, ResponseWriter

from conftest import make_ctx


class PlainWriter(ResponseWriter):
    """A writer without the flush capability."""

    def __init__(self):
        self.headers = Headers()
        self.status = None
        self.body = bytearray()

    def write_header(self, status: int) -> None:
        if self.status is None:
            self.status = status

    def write(self, data: bytes) -> int:
        if self.status is None:
            self.write_header(200)
        self.body.extend(data)
        return len(data)


class TrackedStream(io.BytesIO):
    """BytesIO that remembers whether close() was called."""

    was_closed = False

    def close(self):
        self.was_closed = True
        super().close()


class TestSendJSON:
    """Tests for send_json and send_error_json."""

    def test_send_json(self):
        ctx = make_ctx()
        ctx.send_json({"id": 1, "name": "ana"}, 201)

        assert ctx.response.status == 201
        assert ctx.response.headers["Content-Type"] == "application/json"
        assert ctx.response.body == b'{"id": 1, "name": "ana"}\n'
        assert ctx.response.json() == {"id": 1, "name": "ana"}

    def test_status_defaults_to_200(self):
        ctx = make_ctx()
        ctx.send_json([1, 2])

        assert ctx.response.status == 200

    def test_none_sends_empty_body(self):
        ctx = make_ctx()
        ctx.send_json(None, 202)

        assert ctx.response.status == 202
        assert ctx.response.headers["Content-Type"] == "application/json"
        assert ctx.response.body == b""

    def test_unencodable_value(self, caplog):
        ctx = make_ctx()
        ctx.send_json({"when": object()}, 200)

        assert ctx.response.status == 200
        assert ctx.response.body == JSON_ENCODE_ERROR_BODY
        assert ctx.response.json()["error"]["code"] == 500
        assert "Could not encode JSON" in caplog.text

    @pytest.mark.parametrize("value", [math.inf, -math.inf, math.nan])
    def test_non_finite_float_is_an_encode_failure(self, value):
        ctx = make_ctx()
        ctx.send_json({"v": value})

        assert ctx.response.status == 200
        assert ctx.response.body == JSON_ENCODE_ERROR_BODY

    def test_send_error_json(self):
        ctx = make_ctx()
        ctx.send_error_json("user not found", 404)

        assert ctx.response.status == 404
        assert ctx.response.json() == {"error": {"code": 404, "message": "user not found"}}

    def test_send_error_json_defaults_to_500(self):
        ctx = make_ctx()
        ctx.send_error_json("boom")

        assert ctx.response.status == 500
        assert ctx.response.json()["error"] == {"code": 500, "message": "boom"}


class TestSendText:
    """Tests for send_bytes, send_string, send_html and no_content."""

    def test_send_bytes(self):
        ctx = make_ctx()
        ctx.send_bytes(b"\x00\x01", 206)

        assert ctx.response.status == 206
        assert ctx.response.body == b"\x00\x01"

    def test_send_string_content_type(self):
        ctx = make_ctx()
        ctx.send_string("héllo")

        assert ctx.response.headers["Content-Type"] == "text/plain; charset=utf-8"
        assert ctx.response.body == "héllo".encode("utf-8")

    def test_send_string_keeps_explicit_content_type(self):
        ctx = make_ctx()
        ctx.add_header("Content-Type", "text/csv")
        ctx.send_string("a,b\n")

        assert ctx.response.headers.get_all("Content-Type") == ["text/csv"]

    def test_send_html(self):
        ctx = make_ctx()
        ctx.send_html("<h1>hi</h1>", 200)

        assert ctx.response.headers["Content-Type"] == "text/html; charset=utf-8"
        assert ctx.response.text == "<h1>hi</h1>"

    def test_no_content(self):
        ctx = make_ctx()
        ctx.no_content()

        assert ctx.response.status == 204
        assert ctx.response.body == b""


class TestHeadersAndStatus:
    """Tests for add_header(s), write_status and set_cookie."""

    def test_add_header_appends(self):
        ctx = make_ctx()
        ctx.add_header("Vary", "Accept")
        ctx.add_headers({"Vary": "Origin", "X-One": "1"})

        assert ctx.response.headers.get_all("vary") == ["Accept", "Origin"]
        assert ctx.response.headers["x-one"] == "1"

    def test_first_status_wins(self):
        ctx = make_ctx()
        ctx.write_status(418)
        ctx.write_status(200)

        assert ctx.response.status == 418

    def test_set_cookie(self):
        ctx = make_ctx()
        ctx.set_cookie(
            "session", "abc123",
            path="/", http_only=True, secure=True, same_site="Lax", max_age=3600,
        )

        header = ctx.response.headers["Set-Cookie"]
        parts = set(header.split("; "))
        assert header.startswith("session=abc123")
        assert {"Path=/", "HttpOnly", "Secure", "SameSite=Lax", "Max-Age=3600"} <= parts

    def test_set_cookie_expires(self):
        ctx = make_ctx()
        ctx.set_cookie("a", "1", expires=datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

        assert "expires=Wed, 02 Jan 2030 03:04:05 GMT" in ctx.response.headers["Set-Cookie"]

    def test_clear_cookie(self):
        ctx = make_ctx()
        ctx.set_cookie("session", "", max_age=-1)

        assert "Max-Age=0" in ctx.response.headers["Set-Cookie"]

    def test_multiple_cookies(self):
        ctx = make_ctx()
        ctx.set_cookie("a", "1")
        ctx.set_cookie("b", "2")

        assert ctx.response.headers.get_all("Set-Cookie") == ["a=1", "b=2"]


class TestRedirectAndHints:
    """Tests for redirect, early hints and not_found."""

    def test_redirect_relative(self):
        ctx = make_ctx("GET", "/docs/intro")
        ctx.redirect("setup")

        assert ctx.response.status == 302
        assert ctx.response.headers["Location"] == "/docs/setup"
        assert '<a href="/docs/setup">Found</a>' in ctx.response.text

    def test_redirect_absolute_with_status(self):
        ctx = make_ctx("POST", "/login")
        ctx.redirect("https://example.com/home?a=1&b=2", 303)

        assert ctx.response.status == 303
        assert ctx.response.headers["Location"] == "https://example.com/home?a=1&b=2"
        assert ctx.response.body == b""

    def test_redirect_body_escaped(self):
        ctx = make_ctx()
        ctx.redirect("/search?a=1&b=2")

        assert "/search?a=1&amp;b=2" in ctx.response.text

    @pytest.mark.parametrize("status,text", [
        (301, "Moved Permanently"),
        (307, "Temporary Redirect"),
        (308, "Permanent Redirect"),
    ])
    def test_redirect_body_uses_status_text(self, status, text):
        ctx = make_ctx("GET", "/a")
        ctx.redirect("/b", status)

        assert ctx.response.status == status
        assert ctx.response.text == f'<a href="/b">{text}</a>.\n'

    def test_early_hints(self):
        ctx = make_ctx()
        ctx.write_early_hint_script("/static/app.js")
        ctx.write_early_hint_style("static/site.css")
        ctx.send_string("ok")

        assert [status for status, _ in ctx.response.interim] == [103, 103]
        first_headers = dict(ctx.response.interim[0][1])
        assert first_headers["Link"] == "</static/app.js>; rel=preload; as=script"
        assert ctx.response.headers.get_all("Link") == [
            "</static/app.js>; rel=preload; as=script",
            "</static/site.css>; rel=preload; as=style",
        ]
        assert ctx.response.status == 200

    def test_not_found(self):
        ctx = make_ctx()
        ctx.not_found()

        assert ctx.response.status == 404
        assert ctx.response.headers["X-Error-Code"] == "404"
        assert ctx.response.body == b""


class TestSendStreamAndFile:
    """Tests for send_stream and send_file."""

    def test_send_stream_closes(self):
        stream = TrackedStream(b"x" * 10)
        ctx = make_ctx()
        ctx.send_stream(stream, 200, chunk_size=3)

        assert ctx.response.body == b"x" * 10
        assert stream.was_closed

    def test_send_stream_closes_on_error(self):
        class Exploding(TrackedStream):
            def read(self, size=-1):
                raise OSError("disk gone")

        stream = Exploding()
        with pytest.raises(OSError):
            make_ctx().send_stream(stream)

        assert stream.was_closed

    def test_send_file(self, tmp_path):
        page = tmp_path / "page.html"
        page.write_bytes(b"<p>hi</p>")

        ctx = make_ctx()
        ctx.send_file(str(page))

        stat = os.stat(page)
        assert ctx.response.status == 200
        assert ctx.response.body == b"<p>hi</p>"
        assert ctx.response.headers["Content-Type"] == "text/html; charset=utf-8"
        assert ctx.response.headers["Content-Length"] == "9"
        assert ctx.response.headers["ETag"] == f'"{int(stat.st_mtime)}-{stat.st_size}"'
        assert ctx.response.headers["Last-Modified"].endswith("GMT")

    def test_send_file_not_modified(self, tmp_path):
        page = tmp_path / "page.html"
        page.write_bytes(b"<p>hi</p>")
        stat = os.stat(page)

        ctx = make_ctx(headers={"If-None-Match": f'"{int(stat.st_mtime)}-{stat.st_size}"'})
        ctx.send_file(str(page))

        assert ctx.response.status == 304
        assert ctx.response.body == b""

    def test_send_file_directory_index(self, tmp_path):
        (tmp_path / "index.html").write_bytes(b"home")

        ctx = make_ctx()
        ctx.send_file(str(tmp_path))

        assert ctx.response.body == b"home"

    def test_send_file_missing(self, tmp_path):
        ctx = make_ctx()
        ctx.send_file(str(tmp_path / "nope.txt"))

        assert ctx.response.status == 404
        assert ctx.response.json()["error"]["message"] == "File not found"

    def test_send_file_rejects_traversal(self, tmp_path):
        ctx = make_ctx()
        ctx.send_file(str(tmp_path / ".." / "secret.txt"))

        assert ctx.response.status == 400


class TestSSEUpgrade:
    """Tests for Context.sse."""

    def test_sse_streams_events(self):
        ctx = make_ctx()

        def stream(sse):
            sse.id("1")
            sse.event("greeting", "hello")
            sse.data("line one\nline two")

        ctx.sse(stream)

        response = ctx.response
        assert response.status == 200
        assert response.headers["Content-Type"] == "text/event-stream"
        assert response.headers["Cache-Control"] == "no-cache"
        assert response.flush_count >= 4
        assert response.text == (
            "id: 1\n"
            "event: greeting\ndata: hello\n\n"
            "data: line one\ndata: line two\n\n"
        )

    def test_sse_writer_closed_after_callback(self):
        captured = []
        make_ctx().sse(captured.append)

        assert captured[0].closed

    def test_sse_writer_closed_when_callback_raises(self):
        captured = []

        def stream(sse):
            captured.append(sse)
            raise RuntimeError("handler bug")

        with pytest.raises(RuntimeError):
            make_ctx().sse(stream)

        assert captured[0].closed

    def test_sse_not_supported(self):
        from sihttp import Context
        from sihttp.http import HTTPRequest

        writer = PlainWriter()
        ctx = Context(HTTPRequest("GET", "/events"), writer)
        called = []

        ctx.sse(called.append)

        assert called == []
        assert writer.status == 500
        assert writer.headers["Content-Type"] == "text/plain; charset=utf-8"
        assert writer.headers["X-Content-Type-Options"] == "nosniff"
        assert bytes(writer.body) == b"streaming not supported\n"

    def test_sse_json_event(self):
        ctx = make_ctx()
        ctx.sse(lambda sse: sse.json("update", {"n": 1, "ok": True}))

        assert ctx.response.text == 'event: update\ndata: {"n":1,"ok":true}\n\n'
        assert json.loads(ctx.response.text.split("data: ")[1]) == {"n": 1, "ok": True}
