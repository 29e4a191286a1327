"""
=============================================================================
GREETING SERVER
=============================================================================

The top-level server: wires configuration, the socket transport and the
connection state machine together, and keeps serving one lifecycle after
another.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                       GreetingServer.run()                           │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   _setup_logging()       basicConfig + package level                 │
    │   _setup_signals()       SIGINT / SIGTERM → shutdown()               │
    │                                                                      │
    │   while running:                                                     │
    │       code = ConnectionServer.run_once()     one client, start→end   │
    │       policy.should_restart()?               bounded or forever      │
    │       wait policy.next_delay(code)           0s by default           │
    │                                                                      │
    │   _restore_signals()                                                 │
    │   transport.shutdown()                                               │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
SIGNAL HANDLING
=============================================================================

SIGINT (Ctrl+C) and SIGTERM (docker stop, systemd) don't kill the process
mid-lifecycle. The handler only sets flags. The pump notices at its next
step, and the lifecycle ends through its normal terminal path, so both
endpoints are released before the process exits.

=============================================================================
"""

import signal
import logging
import threading
from typing import Optional

from .config import ServerConfig
from .core.socket_server import ConnectionServer
from .core.socket_transport import SocketTransport
from .core.transport import Transport


logger = logging.getLogger(__name__)


class GreetingServer:
    """
    Serves the greeting to one client at a time, forever.

    Usage:
        server = GreetingServer(ServerConfig(port=4242))
        server.run()  # Blocks until Ctrl+C / SIGTERM
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        transport: Optional[Transport] = None,
    ):
        """
        Args:
            config: Server configuration. Uses defaults if not provided.
            transport: Transport to serve over. Defaults to a
                       SocketTransport sized to the receive buffer.
        """
        self.config = config or ServerConfig()
        self.config.validate()  # Fail-fast on invalid config

        self._transport = transport or SocketTransport(
            receive_window=self.config.buffer_size,
            read_size=self.config.buffer_size,
        )
        self._connection_server = ConnectionServer(self._transport, self.config)
        self._policy = self.config.restart_policy()

        self._running = False
        self._shutdown_event = threading.Event()
        self._original_handlers: dict = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connection_server(self) -> ConnectionServer:
        return self._connection_server

    # =========================================================================
    # SERVER LIFECYCLE
    # =========================================================================

    def run(self, install_signals: bool = True) -> int:
        """
        Serve lifecycles until shutdown or the restart policy says stop.

        Args:
            install_signals: Catch SIGINT/SIGTERM for graceful shutdown.
                             Only possible from the main thread.

        Returns:
            Number of lifecycles run.
        """
        self._setup_logging()
        self._running = True
        self._shutdown_event.clear()
        self._connection_server.clear_stop()

        if install_signals and threading.current_thread() is threading.main_thread():
            self._setup_signals()

        self._print_startup_banner()

        restarts = 0
        try:
            while self._running:
                code = self._connection_server.run_once()
                if not self._running:
                    break

                delay = self._policy.next_delay(code)
                if not self._policy.should_restart(restarts):
                    logger.info(f"Restart limit reached after {restarts} restarts")
                    break

                if delay > 0:
                    logger.info(f"Restarting in {delay:.1f}s")
                    if self._shutdown_event.wait(delay):
                        break
                restarts += 1
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self._running = False
            self._restore_signals()
            self._transport.shutdown()
            logger.info("Server stopped")

        return self._connection_server.lifecycles

    def shutdown(self):
        """
        Stop serving. Safe to call from a signal handler or another thread.

        The running lifecycle ends at its next pump step; no new one starts.
        """
        logger.info("Shutting down server...")
        self._running = False
        self._shutdown_event.set()
        self._connection_server.stop()

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown() is called. Returns False on timeout."""
        return self._shutdown_event.wait(timeout)

    # =========================================================================
    # SETUP
    # =========================================================================

    def _setup_logging(self):
        """Configure logging based on config."""
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        logging.getLogger("helloserver").setLevel(level)

    def _setup_signals(self):
        """Route SIGTERM and SIGINT to shutdown()."""
        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating shutdown...")
            self.shutdown()

        self._original_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, shutdown_handler)
        self._original_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, shutdown_handler)

    def _restore_signals(self):
        """Restore original signal handlers."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def _print_startup_banner(self):
        host = self.config.host or "*"
        limit = "unlimited" if self.config.max_restarts is None else str(self.config.max_restarts)
        print()
        print("╔══════════════════════════════════════════════════════════════╗")
        print(f"  helloserver on {host}:{self.config.port}")
        print(f"  greeting: {self.config.greeting!r}   restarts: {limit}")
        print("  Press Ctrl+C to stop")
        print("╚══════════════════════════════════════════════════════════════╝")
        print()
