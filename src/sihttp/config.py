"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for the sihttp server process.

Values come from three places, in increasing priority:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     CONFIGURATION SOURCES                           │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. Dataclass defaults       ServerConfig()                         │
    │                │                                                     │
    │                ▼                                                     │
    │   2. Environment variables    ServerConfig.from_env()                │
    │                │              HTTP_PORT=3000 python -m sihttp        │
    │                ▼                                                     │
    │   3. Listen address           Server(":8080") / server.start(addr)   │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
LISTEN ADDRESSES
=============================================================================

The server accepts "host:port" listen addresses:

    "127.0.0.1:8080"   → bind localhost, port 8080
    ":8080"            → bind all interfaces, port 8080
    "localhost:0"      → bind localhost, let the OS pick a free port

=============================================================================
"""

import os
from dataclasses import dataclass, replace
from typing import Optional


LOG_FORMATS = ("text", "json")


@dataclass
class ServerConfig:
    """
    Configuration for the sihttp server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog, buffer_size, timeout

    HTTP SETTINGS
    - keep_alive, keep_alive_timeout, max_request_size

    THREADING SETTINGS
    - min_workers, max_workers, queue_size, shutdown_timeout

    LOGGING
    - log_level, log_format, use_color

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = "127.0.0.1"
    """
    The IP address to bind to.
    An empty string binds every interface (same as "0.0.0.0").
    """

    port: int = 8080
    """
    The port number to listen on. 0 asks the OS for a free port.
    """

    backlog: int = 128
    """Maximum number of queued connections."""

    buffer_size: int = 8192
    """Size of each socket read in bytes."""

    timeout: Optional[float] = 30.0
    """
    Socket timeout in seconds for reading the first request.
    None = blocking (infinite wait).
    """

    # ─────────────────────────────────────────────────────────────────────
    # HTTP SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    keep_alive: bool = True
    """Allow multiple requests on the same TCP connection."""

    keep_alive_timeout: float = 5.0
    """Idle time in seconds before a keep-alive connection is closed."""

    max_request_size: int = 10 * 1024 * 1024  # 10 MB
    """
    Maximum allowed request size (headers + body) in bytes.
    Larger requests are rejected with 413 Payload Too Large.
    """

    # ─────────────────────────────────────────────────────────────────────
    # THREAD POOL SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    min_workers: int = 4
    """Worker threads created at startup."""

    max_workers: int = 32
    """
    Upper bound on worker threads.
    Every open connection (including long-lived event streams) holds one
    worker while it is being served.
    """

    queue_size: int = 100
    """
    Connections waiting for a worker.
    When full, new connections get 503 Service Unavailable.
    """

    shutdown_timeout: float = 10.0
    """Seconds stop() waits for in-flight requests to finish."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

    log_format: str = "text"
    """Access log format: 'text' (key=value) or 'json'."""

    use_color: Optional[bool] = None
    """
    Colorize the access log.
    None = decide at startup from whether stderr is a terminal.
    """

    # ─────────────────────────────────────────────────────────────────────
    # SERVER IDENTITY
    # ─────────────────────────────────────────────────────────────────────

    server_name: str = "sihttp/1.0"
    """Value of the Server response header."""

    @property
    def address(self) -> str:
        """The configured listen address as "host:port"."""
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        HTTP_HOST              Server host (default: 127.0.0.1)
        HTTP_PORT              Server port (default: 8080)
        HTTP_WORKERS           Max worker threads (default: 32)
        HTTP_TIMEOUT           Request read timeout in seconds (default: 30)
        HTTP_SHUTDOWN_TIMEOUT  Graceful stop timeout in seconds (default: 10)
        HTTP_LOG_LEVEL         Logging level (default: INFO)
        HTTP_LOG_FORMAT        Access log format: text or json (default: text)
        HTTP_NO_COLOR          Set to any value to disable colored logs

        =====================================================================
        """
        return cls(
            host=os.getenv("HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            max_workers=int(os.getenv("HTTP_WORKERS", "32")),
            timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
            shutdown_timeout=float(os.getenv("HTTP_SHUTDOWN_TIMEOUT", "10")),
            log_level=os.getenv("HTTP_LOG_LEVEL", "INFO"),
            log_format=os.getenv("HTTP_LOG_FORMAT", "text"),
            use_color=False if os.getenv("HTTP_NO_COLOR") else None,
        )

    def with_address(self, address: str) -> "ServerConfig":
        """
        Return a copy bound to a "host:port" listen address.

        Raises:
            ValueError: If the address has no port or the port is not a number.
        """
        host, port = parse_address(address)
        return replace(self, host=host, port=port)

    def validate(self) -> None:
        """
        Validate configuration values.

        Configuration is checked at startup, not at first use, so a bad
        value fails the process immediately.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.min_workers < 1:
            raise ValueError("min_workers must be >= 1")

        if self.max_workers < self.min_workers:
            raise ValueError("max_workers must be >= min_workers")

        if self.queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        if self.buffer_size < 1024:
            raise ValueError("buffer_size must be >= 1024")

        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")

        if self.shutdown_timeout < 0:
            raise ValueError("shutdown_timeout must be >= 0")

        if self.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid log_format: {self.log_format}. Must be one of {LOG_FORMATS}."
            )


def parse_address(address: str) -> tuple[str, int]:
    """
    Split a "host:port" listen address.

        >>> parse_address("127.0.0.1:8080")
        ('127.0.0.1', 8080)
        >>> parse_address(":9000")
        ('', 9000)
        >>> parse_address("[::1]:8080")
        ('::1', 8080)
    """
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"Missing port in address: {address!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address: {address!r}") from None
