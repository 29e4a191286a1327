"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for the greeting server.

The protocol itself is fixed: port 4242, backlog 1, greeting "hello\\n".
Everything else here is operational: where to bind, how loud to log, how
often to poll, and how to restart.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m helloserver --port 5000                         │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── HELLO_PORT=5000 python -m helloserver                     │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .core.restart import RestartPolicy


DEFAULT_PORT = 4242
DEFAULT_GREETING = b"hello\n"


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class ServerConfig:
    """
    Configuration for the greeting server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog

    CONNECTION SETTINGS
    - buffer_size, greeting, poll_interval, idle_timeout_polls

    EVENT LOOP
    - pump_interval

    RESTART POLICY
    - max_restarts, restart_backoff, max_restart_backoff

    LOGGING
    - log_level

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = ""
    """
    The IP address to bind to.
    - "" - All interfaces, IPv4 and IPv6 where available
    - "127.0.0.1" - Localhost only
    """

    port: int = DEFAULT_PORT
    """
    The port number to listen on. 0 lets the OS pick one (tests).
    """

    backlog: int = 1
    """
    Pending connections the listener queues. One client at a time.
    """

    # ─────────────────────────────────────────────────────────────────────
    # CONNECTION SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    buffer_size: int = 2048
    """
    Capacity of the receive buffer. A chunk keeps at most buffer_size - 1
    bytes; the last slot holds the terminator.
    """

    greeting: bytes = DEFAULT_GREETING
    """
    Sent once, unsolicited, to every client right after accept.
    """

    poll_interval: float = 10.0
    """
    Seconds between idle poll callbacks on a connected client.
    """

    idle_timeout_polls: Optional[int] = None
    """
    Consecutive idle polls before the connection is dropped.
    None = never drop idle clients.
    """

    # ─────────────────────────────────────────────────────────────────────
    # EVENT LOOP
    # ─────────────────────────────────────────────────────────────────────

    pump_interval: float = 1.0
    """
    Longest single wait for transport events. Also bounds how long a
    shutdown request can go unnoticed.
    """

    # ─────────────────────────────────────────────────────────────────────
    # RESTART POLICY
    # ─────────────────────────────────────────────────────────────────────

    max_restarts: Optional[int] = None
    """
    Lifecycles to run after the first. None = serve forever.
    """

    restart_backoff: float = 0.0
    """
    Delay after a failed lifecycle, doubled for each failure in a row.
    0 = restart immediately.
    """

    max_restart_backoff: float = 30.0

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """
    Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    DEBUG also shows sent counts and poll heartbeats.
    """

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        HELLO_HOST             Bind address (default: all interfaces)
        HELLO_PORT             Port (default: 4242)
        HELLO_LOG_LEVEL        Logging level (default: INFO)
        HELLO_MAX_RESTARTS     Restart limit (default: unbounded)
        HELLO_RESTART_BACKOFF  Initial failure backoff (default: 0)

        =====================================================================
        """
        return cls(
            host=os.getenv("HELLO_HOST", ""),
            port=int(os.getenv("HELLO_PORT", str(DEFAULT_PORT))),
            log_level=os.getenv("HELLO_LOG_LEVEL", "INFO"),
            max_restarts=_optional_int(os.getenv("HELLO_MAX_RESTARTS")),
            restart_backoff=float(os.getenv("HELLO_RESTART_BACKOFF", "0")),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Fails fast at startup rather than on the first connection.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.buffer_size < 2:
            raise ValueError("buffer_size must be >= 2")

        if not self.greeting:
            raise ValueError("greeting must not be empty")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        if self.idle_timeout_polls is not None and self.idle_timeout_polls < 1:
            raise ValueError("idle_timeout_polls must be >= 1 or None")

        if self.pump_interval <= 0:
            raise ValueError("pump_interval must be > 0")

        if self.max_restarts is not None and self.max_restarts < 0:
            raise ValueError("max_restarts must be >= 0 or None")

        if self.restart_backoff < 0 or self.max_restart_backoff < 0:
            raise ValueError("restart backoff must be >= 0")

    def restart_policy(self) -> "RestartPolicy":
        """Build the RestartPolicy these settings describe."""
        from .core.restart import RestartPolicy

        return RestartPolicy(
            max_restarts=self.max_restarts,
            backoff=self.restart_backoff,
            max_backoff=self.max_restart_backoff,
        )
