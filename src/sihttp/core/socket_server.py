"""
=============================================================================
SOCKET SERVER
=============================================================================

The TCP layer under sihttp.Server: binds the listening socket, accepts
connections and hands each one, wrapped in a Connection, to a callback.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   start(handler)                                                     │
    │      ├──► socket(), SO_REUSEADDR, TCP_NODELAY                        │
    │      ├──► bind()          OSError here is raised to the caller       │
    │      ├──► listen()        `ready` is set, `address` is the bound one │
    │      ├──► SIGTERM/SIGINT handlers (main thread only)                 │
    │      └──► accept loop     blocks until shutdown()                    │
    │              │                                                       │
    │              └──► handler(Connection(...))                           │
    │                                                                      │
    │   shutdown()                                                         │
    │      └──► loop stops within one accept timeout (1s)                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The accept timeout exists only so the loop can notice shutdown(): a
socket.timeout from accept() is the normal idle case, not an error.

=============================================================================
"""

import logging
import signal
import socket
import threading
from typing import Callable, Optional, Tuple

from ..config import ServerConfig
from .connection import Connection


logger = logging.getLogger(__name__)


class SocketServer:
    """
    Low-level TCP server.

        def handle_connection(conn: Connection):
            ...

        server = SocketServer(config)
        server.start(handle_connection)  # Blocks until shutdown()
    """

    def __init__(self, config: ServerConfig):
        self.config = config

        self._socket: Optional[socket.socket] = None
        self._running = False
        self._bound: Optional[Tuple[str, int]] = None

        self.ready = threading.Event()
        self._stopped = threading.Event()
        self._original_handlers: dict = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port); the configured one before start()."""
        if self._bound is not None:
            return self._bound
        return (self.config.host, self.config.port)

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(1.0)
        return sock

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def _setup_signals(self) -> None:
        """
        SIGTERM (docker stop, systemd) and SIGINT (Ctrl+C) trigger a
        graceful shutdown. Python only allows installing handlers from the
        main thread; servers started elsewhere (tests) skip this.
        """
        if threading.current_thread() is not threading.main_thread():
            return

        def shutdown_handler(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
            self.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[sig] = signal.signal(sig, shutdown_handler)

    def _restore_signals(self) -> None:
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, connection_handler: Callable[[Connection], None]) -> None:
        """
        Bind, listen and accept connections until shutdown().

        Raises:
            OSError: If binding fails, or if accept() fails while the
                server is supposed to be running.
        """
        self.listen()
        self.serve(connection_handler)

    def listen(self) -> None:
        """
        Bind and start listening.

        Raises:
            OSError: If the address cannot be bound.
        """
        self._socket = self._create_socket()
        self._stopped.clear()

        try:
            self._socket.bind((self.config.host, self.config.port))
        except OSError as e:
            logger.error(f"Failed to bind to {self.config.host}:{self.config.port}: {e}")
            self._socket.close()
            self._socket = None
            raise

        self._socket.listen(self.config.backlog)
        self._bound = self._socket.getsockname()[:2]
        self._running = True

        logger.info(f"Server listening on {self._bound[0]}:{self._bound[1]}")

    def serve(self, connection_handler: Callable[[Connection], None]) -> None:
        """
        Accept connections until shutdown(). Requires listen().

        Raises:
            OSError: If accept() fails while the server is running.
        """
        if self._socket is None:
            raise RuntimeError("serve() called before listen()")

        self._setup_signals()
        self.ready.set()

        try:
            self._accept_loop(connection_handler)
        finally:
            self._cleanup()

    def _accept_loop(self, connection_handler: Callable[[Connection], None]) -> None:
        while self._running:
            try:
                client_socket, client_address = self._socket.accept()
            except socket.timeout:
                continue
            except OSError:
                if not self._running:
                    break
                raise

            logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")

            conn = Connection(
                socket=client_socket,
                address=client_address[:2],
                buffer_size=self.config.buffer_size,
                timeout=self.config.timeout,
                keep_alive_timeout=self.config.keep_alive_timeout,
                max_request_size=self.config.max_request_size,
            )
            connection_handler(conn)

    def shutdown(self) -> None:
        """Stop accepting connections. Safe to call more than once."""
        if self._running:
            logger.info("Shutting down socket server...")
        self._running = False

    def _cleanup(self) -> None:
        self._running = False
        self._restore_signals()

        if self._socket:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None

        self.ready.clear()
        self._stopped.set()
        logger.info("Socket server stopped")

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Wait until the listening socket is closed. False on timeout."""
        return self._stopped.wait(timeout)
