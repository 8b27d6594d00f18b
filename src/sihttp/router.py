"""
=============================================================================
ROUTER
=============================================================================

Maps (method, path) to Context handlers, runs the router's middleware
around them, and delegates path prefixes to mounted sub-routers.

    router = Router()
    router.use(RequestIDMiddleware())

    @router.get("/users/:id")
    def get_user(ctx):
        ctx.send_json({"id": ctx.param_int("id")})

    router.post("/users", create_user)       # or without the decorator

    api = Router()
    api.get("/status", status)
    router.mount("/api", api)                # GET /api/status

The matching itself is done by http.routing.RouteTable; this module adds
middleware, mounting, 404/405 handling and route listing on top.

=============================================================================
DISPATCH
=============================================================================

Route lookup happens at the innermost point of the middleware chain, so a
middleware that rewrites the path (CleanPathMiddleware) changes which
route is found:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   router(request, response)                                          │
    │        │                                                             │
    │        ▼                                                             │
    │   router middleware (first registered = outermost)                   │
    │        │                                                             │
    │        ▼                                                             │
    │   1. route matches request.route_path    → set path_params, handler  │
    │   2. a mount prefix matches              → strip prefix, sub-router  │
    │                                            (its middleware, then 1.) │
    │   3. path known, method not              → 405 + Allow               │
    │   4. otherwise                           → not-found handler or 404  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A mounted router without its own not-found handler uses its parent's.

Routes, middleware and mounts are registered during setup, before the
server starts; the router is read-only while requests are served.

=============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple, Union

from .context import Context
from .http.request import HTTPRequest
from .http.response import ResponseWriter
from .http.routing import RouteTable
from .middleware.base import Handler, Middleware, MiddlewarePipeline, Transform


logger = logging.getLogger(__name__)


HTTP_METHODS = (
    "GET", "POST", "PUT", "PATCH", "DELETE",
    "HEAD", "OPTIONS", "CONNECT", "TRACE",
)


@dataclass
class RouteInfo:
    """One registered route as reported by Router.walk()."""

    method: str
    pattern: str
    middleware_count: int


class Router:
    """
    Routes requests to Context handlers.

    Handlers are plain functions taking a Context. Every registration
    method works directly or as a decorator:

        router.get("/health", health)

        @router.get("/health")
        def health(ctx):
            ctx.send_string("ok")
    """

    def __init__(self):
        self._table = RouteTable()
        self._pipeline = MiddlewarePipeline()
        self._mounts: List[Tuple[str, "Router"]] = []
        self._not_found: Optional[Handler] = None
        self._parent: Optional["Router"] = None
        self._chain: Optional[Handler] = None

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def use(self, *middleware: Union[Middleware, Transform]) -> None:
        """Add middleware around every route of this router and its mounts."""
        self._pipeline.use(*middleware)
        self._chain = None

    def handle(
        self,
        method: str,
        pattern: str,
        handler: Optional[Handler] = None,
    ) -> Callable:
        """
        Register `handler` for `method` requests matching `pattern`.

        Patterns: "/users", "/users/:id", "/users/{id}", "/files/*path".
        Without `handler`, returns a decorator.
        """
        method = method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unknown HTTP method: {method}")

        def register(func: Handler) -> Handler:
            self._table.add(method, pattern, func)
            logger.debug(f"Registered route: {method} {pattern}")
            return func

        if handler is None:
            return register
        return register(handler)

    def get(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("GET", pattern, handler)

    def post(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("POST", pattern, handler)

    def put(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("PUT", pattern, handler)

    def patch(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("PATCH", pattern, handler)

    def delete(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("DELETE", pattern, handler)

    def head(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("HEAD", pattern, handler)

    def options(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("OPTIONS", pattern, handler)

    def connect(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("CONNECT", pattern, handler)

    def trace(self, pattern: str, handler: Optional[Handler] = None) -> Callable:
        return self.handle("TRACE", pattern, handler)

    def not_found(self, handler: Optional[Handler] = None) -> Callable:
        """Set the handler for paths no route or mount matches."""
        def register(func: Handler) -> Handler:
            self._not_found = func
            return func

        if handler is None:
            return register
        return register(handler)

    def mount(self, prefix: str, router: "Router") -> None:
        """
        Delegate every path under `prefix` to `router`.

        The sub-router sees the path with the prefix removed
        ("/api/users" → "/users") and runs its own middleware inside this
        router's. Prefixes are literal and match whole segments only:
        "/api" serves "/api" and "/api/x", never "/apix".
        """
        if not prefix.startswith("/"):
            raise ValueError(f"Mount prefix must start with '/': {prefix!r}")
        if router is self:
            raise ValueError("A router cannot be mounted on itself")

        router._parent = self
        self._mounts.append((prefix.rstrip("/"), router))
        logger.debug(f"Mounted router at {prefix}")

    # =========================================================================
    # SERVING
    # =========================================================================

    def __call__(self, request: HTTPRequest, response: ResponseWriter) -> None:
        """Entry point: build the Context for a request and serve it."""
        self.serve(Context(request, response))

    def serve(self, ctx: Context) -> None:
        """Run this router's middleware chain with dispatch at its core."""
        if self._chain is None:
            self._chain = self._pipeline.wrap(self._dispatch)
        self._chain(ctx)

    def _dispatch(self, ctx: Context) -> None:
        request = ctx.request
        path = request.route_path or "/"

        match = self._table.match(request.method, path)
        if match:
            request.path_params.update(match.params)
            match.route.handler(ctx)
            return

        for prefix, sub_router in self._mounts:
            remainder = _strip_prefix(path, prefix)
            if remainder is not None:
                request.route_path = remainder
                sub_router.serve(ctx)
                return

        allowed = self._table.allowed_methods(path)
        if allowed:
            ctx.response.headers.set("Allow", ", ".join(allowed))
            ctx.send_error_json("Method Not Allowed", 405)
            return

        handler = self._not_found_handler()
        if handler is not None:
            handler(ctx)
        else:
            ctx.send_error_json("Not Found", 404)

    def _not_found_handler(self) -> Optional[Handler]:
        router: Optional[Router] = self
        while router is not None:
            if router._not_found is not None:
                return router._not_found
            router = router._parent
        return None

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def walk(self) -> Iterator[RouteInfo]:
        """
        Every route, mounted ones included, with the number of middleware
        that wrap it.
        """
        yield from self._walk("", 0)

    def _walk(self, prefix: str, inherited: int) -> Iterator[RouteInfo]:
        count = inherited + len(self._pipeline)
        for route in self._table.routes():
            pattern = prefix + route.pattern if prefix else route.pattern
            if prefix and route.pattern == "/":
                pattern = prefix
            yield RouteInfo(route.method, pattern, count)
        for mount_prefix, sub_router in self._mounts:
            yield from sub_router._walk(prefix + mount_prefix, count)

    def print_routes(self) -> None:
        """
        Print one line per route:

            [GET]: '/users/:id' has 2 middlewares
        """
        for info in self.walk():
            print(f"[{info.method}]: '{info.pattern}' has {info.middleware_count} middlewares")


def _strip_prefix(path: str, prefix: str) -> Optional[str]:
    """The part of `path` below `prefix`, or None when it is not below it."""
    if not prefix:
        return path
    if path == prefix:
        return "/"
    if path.startswith(prefix + "/"):
        return path[len(prefix):]
    return None
