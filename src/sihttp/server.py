"""
=============================================================================
SERVER
=============================================================================

Binds a listen address, serves connections on a worker pool and routes
every request through the Router as a Context.

    server = Server(":8080", middlewares=[LoggerMiddleware(), RequestIDMiddleware()])

    @server.get("/hello/:name")
    def hello(ctx):
        ctx.send_json({"hello": ctx.param_string("name")})

    server.add_route("/api", api_router)
    server.start()                       # blocks until stop() or SIGTERM

=============================================================================
REQUEST LIFECYCLE
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   SocketServer.accept()                                              │
    │        │                                                             │
    │        ▼                                                             │
    │   ThreadPool.submit()           queue full → 503, close              │
    │        │                                                             │
    │        ▼  (worker thread, one per connection)                        │
    │   ┌─► Connection.read_request()  timeout → 408, close                │
    │   │    │                                                             │
    │   │    ▼                                                             │
    │   │   RequestParser.parse()      malformed → 400/405/413/501/505     │
    │   │    │                                                             │
    │   │    ▼                                                             │
    │   │   Router(request, ConnectionResponseWriter)                      │
    │   │    │   middleware → route lookup → handler(ctx)                  │
    │   │    │                                                             │
    │   │    ▼                                                             │
    │   │   writer.finish()            send buffered body / final chunk    │
    │   │   request.done.set()                                             │
    │   │    │                                                             │
    │   └────┴── keep-alive? ──no──► close                                 │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A handler that raises is logged with its traceback. If nothing was sent
yet the client gets a 500 JSON error, otherwise the connection is closed.

=============================================================================
SHUTDOWN
=============================================================================

stop() stops accepting, sets `done` on every in-flight request (so event
streams can end), wakes idle keep-alive connections and waits up to
`shutdown_timeout` for the workers to finish.

=============================================================================
"""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Union

from .config import ServerConfig
from .context import Context
from .core import Connection, SocketServer, ThreadPool
from .http import (
    ConnectionResponseWriter,
    HTTPParseError,
    HTTPRequest,
    HTTPStatus,
    RequestParser,
    format_http_date,
    reason_phrase,
)
from .middleware.base import Middleware, Transform
from .router import Router


logger = logging.getLogger(__name__)


class Server:
    """
    HTTP/1.1 server wrapping a Router.

    Args:
        address: "host:port" listen address (":8080" = every interface).
            Overrides the host and port of `config`.
        middlewares: Router-level middleware, first = outermost.
        config: Server settings, ServerConfig() when omitted.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        middlewares: Iterable[Union[Middleware, Transform]] = (),
        config: Optional[ServerConfig] = None,
    ):
        self.config = config or ServerConfig()
        if address:
            self.config = self.config.with_address(address)
        self.config.validate()

        self.router = Router()
        for middleware in middlewares:
            self.router.use(middleware)

        self._parser = RequestParser(max_request_size=self.config.max_request_size)
        self._socket_server = SocketServer(self.config)
        self._thread_pool = ThreadPool(
            min_workers=self.config.min_workers,
            max_workers=self.config.max_workers,
            queue_size=self.config.queue_size,
        )

        self._running = False
        self._listening = False
        self._lock = threading.Lock()
        self._requests: Dict[int, HTTPRequest] = {}
        self._connections: Dict[str, Connection] = {}

    # =========================================================================
    # ROUTES AND MIDDLEWARE
    # =========================================================================

    def use(self, *middleware: Union[Middleware, Transform]) -> None:
        self.router.use(*middleware)

    def add_route(self, prefix: str, router: Router) -> None:
        """Mount a sub-router under `prefix`."""
        self.router.mount(prefix, router)

    def handle(self, method: str, pattern: str, handler=None) -> Callable:
        return self.router.handle(method, pattern, handler)

    def get(self, pattern: str, handler=None) -> Callable:
        return self.router.get(pattern, handler)

    def post(self, pattern: str, handler=None) -> Callable:
        return self.router.post(pattern, handler)

    def put(self, pattern: str, handler=None) -> Callable:
        return self.router.put(pattern, handler)

    def patch(self, pattern: str, handler=None) -> Callable:
        return self.router.patch(pattern, handler)

    def delete(self, pattern: str, handler=None) -> Callable:
        return self.router.delete(pattern, handler)

    def head(self, pattern: str, handler=None) -> Callable:
        return self.router.head(pattern, handler)

    def options(self, pattern: str, handler=None) -> Callable:
        return self.router.options(pattern, handler)

    def connect(self, pattern: str, handler=None) -> Callable:
        return self.router.connect(pattern, handler)

    def trace(self, pattern: str, handler=None) -> Callable:
        return self.router.trace(pattern, handler)

    def not_found(self, handler=None) -> Callable:
        return self.router.not_found(handler)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def ready(self) -> threading.Event:
        """Set once the server is listening; cleared when it stops."""
        return self._socket_server.ready

    @property
    def address(self) -> str:
        """The listen address as "host:port" (the bound port once started)."""
        host, port = self._socket_server.address
        return f"{host}:{port}"

    def start(self, address: Optional[str] = None) -> None:
        """
        Listen and serve until stop() is called or SIGTERM/SIGINT arrives.

        Raises:
            OSError: If the address cannot be bound.
            SystemExit: If the listener fails while serving. The failure is
                logged at CRITICAL first.
        """
        if address:
            self.config = self.config.with_address(address)
            self.config.validate()
            self._socket_server.config = self.config

        self._setup_logging()
        self._socket_server.listen()
        self._listening = True

        self._running = True
        self._thread_pool.start()
        self._print_startup_banner()

        try:
            self._socket_server.serve(self._handle_connection)
        except OSError as e:
            logger.critical(f"Listener failed: {e}")
            self.stop()
            raise SystemExit(1) from e

        # Stopped by a signal rather than by stop()
        if self._running:
            self.stop()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Shut down gracefully.

        Args:
            timeout: Seconds to wait for in-flight requests, defaults to
                config.shutdown_timeout.

        Returns:
            True if every request finished within the timeout.
        """
        logger.info("Gracefully shutting down server")
        self._running = False
        self._socket_server.shutdown()

        with self._lock:
            requests = list(self._requests.values())
            connections = list(self._connections.values())

        for request in requests:
            request.done.set()
        for conn in connections:
            if conn.idle:
                conn.interrupt_read()

        if timeout is None:
            timeout = self.config.shutdown_timeout

        drained = self._thread_pool.shutdown(timeout=timeout)
        if self._listening:
            self._socket_server.wait_for_shutdown(timeout=2.0)
            self._listening = False

        if drained:
            logger.info("Graceful server shut down completed")
        else:
            logger.error("Server shut down with requests still running")
        return drained

    def _setup_logging(self) -> None:
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        logging.getLogger("sihttp").setLevel(level)

    def _print_startup_banner(self) -> None:
        print("-------------------")
        print("Server listening on", self.address)
        print("-------------------")

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def _handle_connection(self, conn: Connection) -> None:
        """Hand a new connection to the pool (runs on the accept thread)."""
        if not self._running:
            conn.close()
            return

        try:
            submitted = self._thread_pool.submit(self._process_connection, args=(conn,))
        except RuntimeError:
            # Pool already stopping
            conn.close()
            return

        if not submitted:
            logger.warning(f"[{conn.id}] Thread pool full, rejecting connection")
            self._send_error(conn, HTTPStatus.SERVICE_UNAVAILABLE, "Server overloaded")
            conn.close()

    def _process_connection(self, conn: Connection) -> None:
        """Keep-alive loop for one connection (runs on a worker thread)."""
        with self._lock:
            self._connections[conn.id] = conn

        try:
            with conn:
                while self._running:
                    try:
                        raw_request = conn.read_request()
                    except TimeoutError:
                        self._send_error(conn, HTTPStatus.REQUEST_TIMEOUT, "Request timeout")
                        break
                    except HTTPParseError as e:
                        self._send_error(conn, e.status_code, str(e))
                        break

                    if raw_request is None:
                        break

                    try:
                        request = self._parser.parse(raw_request, conn.address)
                    except HTTPParseError as e:
                        logger.debug(f"[{conn.id}] Bad request: {e}")
                        self._send_error(conn, e.status_code, str(e))
                        break

                    if not self._serve_request(conn, request):
                        break

                    conn.set_keep_alive()
        finally:
            with self._lock:
                self._connections.pop(conn.id, None)

    def _serve_request(self, conn: Connection, request: HTTPRequest) -> bool:
        """Run one request through the router. True if the connection stays open."""
        writer = ConnectionResponseWriter(
            conn,
            request,
            server_name=self.config.server_name,
            keep_alive=self.config.keep_alive,
            keep_alive_timeout=self.config.keep_alive_timeout,
        )

        with self._lock:
            self._requests[id(request)] = request

        try:
            try:
                self.router(request, writer)
            except Exception as e:
                if writer.lost:
                    logger.info(
                        f"[{conn.id}] Client went away during {request.method} {request.path}"
                    )
                    return False

                logger.exception(
                    f"[{conn.id}] Handler error on {request.method} {request.path}: {e}"
                )
                if writer.committed:
                    return False

                writer = ConnectionResponseWriter(
                    conn,
                    request,
                    server_name=self.config.server_name,
                    keep_alive=self.config.keep_alive,
                    keep_alive_timeout=self.config.keep_alive_timeout,
                )
                Context(request, writer).send_error_json("Internal Server Error", 500)

            try:
                writer.finish()
            except ConnectionError:
                return False

            return writer.keep_alive and self._running
        finally:
            request.done.set()
            with self._lock:
                self._requests.pop(id(request), None)

    def _send_error(self, conn: Connection, status: int, message: str) -> None:
        """Send a JSON error outside of any request (parse errors, overload)."""
        body = json.dumps({"error": {"code": int(status), "message": message}}).encode("utf-8")
        head = (
            f"HTTP/1.1 {int(status)} {reason_phrase(int(status))}\r\n"
            f"Date: {format_http_date(datetime.now(timezone.utc))}\r\n"
            f"Server: {self.config.server_name}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        conn.send_response(head.encode("latin-1") + body)


def create_server(
    address: Optional[str] = None,
    middlewares: Iterable[Union[Middleware, Transform]] = (),
    config: Optional[ServerConfig] = None,
) -> Server:
    """Create a Server; same arguments as Server()."""
    return Server(address, middlewares, config)
