"""
=============================================================================
HELLOSERVER CLI ENTRY POINT
=============================================================================

    # Run with defaults (all interfaces, port 4242, restart forever)
    python -m helloserver

    # Localhost only, custom port
    python -m helloserver --host 127.0.0.1 --port 5000

    # Stop after 10 restarts, back off on repeated failures
    python -m helloserver --max-restarts 10 --backoff 0.5

    # Try it
    nc localhost 4242
    hello
    ping            ← shows up in the server log

=============================================================================
"""

import argparse
import sys

from . import __version__
from .server import GreetingServer
from .config import ServerConfig, DEFAULT_PORT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="helloserver",
        description="Single-client TCP server that greets each client and logs what it sends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m helloserver                        # All interfaces, port 4242
  python -m helloserver --host 127.0.0.1       # Localhost only
  python -m helloserver --max-restarts 3       # Serve four lifecycles, then exit
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--host", "-H",
        default="",
        help="Host to bind to (default: all interfaces)"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port to listen on (default: {DEFAULT_PORT})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # RESTART ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--max-restarts",
        type=int,
        default=None,
        help="Stop after this many restarts (default: never stop)"
    )

    parser.add_argument(
        "--backoff",
        type=float,
        default=0.0,
        help="Seconds to wait after a failed lifecycle, doubling per failure (default: 0)"
    )

    parser.add_argument(
        "--idle-polls",
        type=int,
        default=None,
        help="Drop a client after this many idle polls (default: never)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"helloserver {__version__}"
    )

    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Translate CLI arguments to ServerConfig."""
    return ServerConfig(
        host=args.host,
        port=args.port,
        max_restarts=args.max_restarts,
        restart_backoff=args.backoff,
        idle_timeout_polls=args.idle_polls,
        log_level=args.log_level,
    )


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        server = GreetingServer(config_from_args(args))
        server.run()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
