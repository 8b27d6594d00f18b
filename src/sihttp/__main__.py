"""
=============================================================================
SIHTTP DEMO SERVER
=============================================================================

    python -m sihttp                        # 127.0.0.1:8080
    python -m sihttp --address :3000        # every interface, port 3000
    python -m sihttp --log-format json
    HTTP_PORT=9000 python -m sihttp         # environment, see ServerConfig.from_env

Routes:

    GET  /                  JSON greeting
    GET  /hello/:name       path parameter + ?shout=true
    POST /echo              echoes a JSON or form body
    GET  /clock             Server-Sent Events, one tick per second
    GET  /routes            the route table

=============================================================================
"""

import argparse
import sys
import time
from datetime import datetime, timezone

from . import __version__
from .config import ServerConfig
from .context import Context
from .errors import HTTPError
from .middleware import (
    CleanPathMiddleware,
    LoggerMiddleware,
    RequestIDMiddleware,
    REQUEST_ID,
    detect_terminal,
)
from .router import Router
from .server import Server
from .sse import SSEWriter


def build_server(config: ServerConfig) -> Server:
    """The demo application, separate from main() so it can be tested."""
    terminal = detect_terminal(sys.stderr, config.use_color)

    server = Server(
        config=config,
        middlewares=[
            LoggerMiddleware(log_format=config.log_format, terminal=terminal),
            RequestIDMiddleware(),
            CleanPathMiddleware(),
        ],
    )

    @server.get("/")
    def index(ctx: Context) -> None:
        ctx.send_json({
            "name": "sihttp",
            "version": __version__,
            "request_id": ctx.get_attribute(REQUEST_ID),
        })

    @server.get("/hello/:name")
    def hello(ctx: Context) -> None:
        greeting = f"hello, {ctx.param_string('name')}"
        if ctx.query_bool("shout"):
            greeting = greeting.upper()
        ctx.send_string(greeting + "\n")

    @server.post("/echo")
    def echo(ctx: Context) -> None:
        try:
            if ctx.is_json():
                payload = ctx.unmarshal_json_body()
            else:
                payload = ctx.get_form_data()
        except HTTPError as e:
            ctx.send_error_json(str(e), e.status_code)
            return
        ctx.send_json({"received": payload})

    @server.get("/clock")
    def clock(ctx: Context) -> None:
        def tick(events: SSEWriter) -> None:
            events.retry(2000)
            while not ctx.done.is_set():
                now = datetime.now(timezone.utc).isoformat(timespec="seconds")
                events.event("tick", now)
                ctx.done.wait(1.0)

        ctx.sse(tick)

    api = Router()

    @api.get("/time")
    def api_time(ctx: Context) -> None:
        ctx.send_json({"unix": int(time.time())})

    server.add_route("/api", api)

    @server.get("/routes")
    def routes(ctx: Context) -> None:
        ctx.send_json([
            {"method": r.method, "pattern": r.pattern, "middlewares": r.middleware_count}
            for r in server.router.walk()
        ])

    return server


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="python -m sihttp",
        description="sihttp demo server",
    )
    parser.add_argument(
        "--address", "-a",
        default=None,
        help='Listen address as "host:port" (default: from HTTP_HOST/HTTP_PORT)',
    )
    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default=None,
        help="Access log format (default: text)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored access logs",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"sihttp {__version__}",
    )
    args = parser.parse_args()

    config = ServerConfig.from_env()
    if args.address:
        config = config.with_address(args.address)
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    if args.no_color:
        config.use_color = False

    try:
        server = build_server(config)
        server.router.print_routes()
        server.start()
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
