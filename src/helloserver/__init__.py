"""
=============================================================================
HELLOSERVER - Single-Client Greeting Server
=============================================================================

A TCP server that serves exactly one client at a time. It accepts the
client, sends "hello\n", logs whatever the client sends back, and tears
everything down when the client leaves or anything goes wrong. Then it
starts over and listens for the next client, forever.

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    helloserver/
    ├── __init__.py              # This file - package exports
    ├── __main__.py              # CLI entry point (python -m helloserver)
    ├── server.py                # GreetingServer: serve-forever driver
    ├── config.py                # ServerConfig dataclass
    └── core/                    # The lifecycle and its collaborators
        ├── socket_server.py     # ConnectionServer state machine
        ├── connection.py        # ServerState, ReceiveBuffer, states
        ├── transport.py         # Transport interface, callbacks
        ├── socket_transport.py  # Transport over sockets + selectors
        ├── restart.py           # RestartPolicy
        └── errors.py            # ErrorCode and exceptions

=============================================================================
QUICK START
=============================================================================

    from helloserver import GreetingServer, ServerConfig

    server = GreetingServer(ServerConfig(host="127.0.0.1"))
    server.run()  # Blocks; Ctrl+C to stop

    # In another terminal:
    #   $ nc 127.0.0.1 4242
    #   hello

=============================================================================
"""

__version__ = "1.0.0"

from .config import ServerConfig
from .server import GreetingServer
from .core import ConnectionServer, SocketTransport

__all__ = [
    "GreetingServer",
    "ServerConfig",
    "ConnectionServer",
    "SocketTransport",
    "__version__",
]
