"""
=============================================================================
SIHTTP - Request/Response Convenience Layer for HTTP Handlers
=============================================================================

Handlers receive one object, a Context, and use it both to read the request
and to write the response:

    from sihttp import Context, Router, Server
    from sihttp.middleware import LoggerMiddleware

    server = Server(":8080", middlewares=[LoggerMiddleware()])

    @server.get("/users/:id")
    def get_user(ctx: Context) -> None:
        user_id = ctx.param_int("id")
        if user_id == 0:
            ctx.send_error_json("invalid id", 400)
            return
        ctx.send_json({"id": user_id, "verbose": ctx.query_bool("verbose")})

    server.start()

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   sihttp/                                                            │
    │   ├── context.py      Context: accessors, senders, attributes        │
    │   ├── attributes.py   copy-on-write attribute store                  │
    │   ├── sse.py          Server-Sent Events writer                      │
    │   ├── router.py       Router facade (routes, mounts, middleware)     │
    │   ├── server.py       Server: start/stop, connection loop            │
    │   ├── config.py       ServerConfig                                   │
    │   ├── errors.py       HTTPError family                               │
    │   ├── middleware/     chain machinery + logger, request id, paths    │
    │   ├── http/           parser, response writers, route table          │
    │   └── core/           sockets, connections, thread pool              │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

__version__ = "1.0.0"

from .attributes import AttributeKey, Attributes
from .config import ServerConfig
from .context import Context
from .errors import (
    BodyError,
    FormParseError,
    HTTPError,
    JSONBodyError,
    SSEClosedError,
    StreamingNotSupported,
)
from .http import HTTPRequest, ResponseRecorder, ResponseWriter
from .middleware import Handler, Middleware, mw
from .router import Router, RouteInfo
from .server import Server, create_server
from .sse import SSEWriter

__all__ = [
    "__version__",
    "Context",
    "AttributeKey",
    "Attributes",
    "Server",
    "create_server",
    "ServerConfig",
    "Router",
    "RouteInfo",
    "Handler",
    "Middleware",
    "mw",
    "SSEWriter",
    "HTTPRequest",
    "ResponseWriter",
    "ResponseRecorder",
    "HTTPError",
    "BodyError",
    "JSONBodyError",
    "FormParseError",
    "StreamingNotSupported",
    "SSEClosedError",
]
