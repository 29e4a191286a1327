"""
=============================================================================
CORE SERVER COMPONENTS
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                       CONNECTION SERVER                              │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Owns the listening endpoint and at most one client endpoint      │
    │  • Reacts to transport events: accept, receive, sent, poll, error   │
    │  • Funnels every ending through one terminal transition             │
    └─────────────────────────────────────────────────────────────────────┘
                          │ commands           ▲ callbacks
                          ▼                    │
    ┌─────────────────────────────────────────────────────────────────────┐
    │                           TRANSPORT                                  │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Abstract byte-stream provider (transport.py)                     │
    │  • SocketTransport: non-blocking sockets + selector                 │
    │  • Delivers every callback serially from process_events()          │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .errors import (
    ErrorCode,
    ServerError,
    AllocationError,
    BindError,
    ListenError,
    AcceptError,
    WriteError,
    TransportError,
    CloseError,
)
from .transport import (
    AddressFamily,
    Endpoint,
    EndpointCallbacks,
    ReceivedPayload,
    Transport,
)
from .connection import ClientStatus, LifecycleState, ReceiveBuffer, ServerState
from .restart import RestartPolicy
from .socket_transport import SocketEndpoint, SocketTransport
from .socket_server import ConnectionServer

__all__ = [
    "ConnectionServer",   # Lifecycle state machine
    "SocketTransport",    # Transport over OS sockets
    "SocketEndpoint",
    "Transport",          # Interface ConnectionServer drives
    "Endpoint",
    "EndpointCallbacks",
    "ReceivedPayload",
    "AddressFamily",
    "ServerState",        # Per-lifecycle data
    "ReceiveBuffer",
    "LifecycleState",
    "ClientStatus",
    "RestartPolicy",
    "ErrorCode",
    "ServerError",
    "AllocationError",
    "BindError",
    "ListenError",
    "AcceptError",
    "WriteError",
    "TransportError",
    "CloseError",
]
