"""
=============================================================================
TRANSPORT INTERFACE
=============================================================================

The connection server never reads or writes the wire itself. It drives an
abstract Transport: it issues commands (bind, listen, write, close) and
reacts to events the transport delivers through callbacks.

=============================================================================
COMMANDS AND EVENTS
=============================================================================

    ┌───────────────────────┐    commands     ┌───────────────────────┐
    │                       │ ──────────────► │                       │
    │   ConnectionServer    │                 │       Transport       │
    │   (state machine)     │ ◄────────────── │   (byte stream I/O)   │
    │                       │    callbacks    │                       │
    └───────────────────────┘                 └───────────────────────┘

    Commands (server → transport):
        create_endpoint()      Allocate an endpoint
        bind()                 Attach it to host:port
        listen()               Start queueing connections (backlog)
        set_callbacks()        Register / deregister event handlers
        write()                Queue bytes for sending
        acknowledge_received() Reopen the receive window
        close() / abort()      Release an endpoint
        release_received_payload()

    Events (transport → server), all delivered from process_events():
        on_accept(endpoint, status)   A client connected
        on_receive(payload, status)   Bytes arrived (None = peer closed)
        on_sent(count)                count bytes left our send queue
        on_poll()                     Idle heartbeat every poll_interval
        on_error(code)                Connection failed; endpoint is gone

=============================================================================
OWNERSHIP RULES
=============================================================================

1. An Endpoint has exactly one owner. Whoever holds it must close() or
   abort() it exactly once.

2. When on_error fires, the transport has ALREADY released the endpoint.
   The owner must forget it without closing it again.

3. A ReceivedPayload passed to on_receive belongs to the callback, which
   must hand it back with release_received_payload() exactly once.

4. Callbacks are delivered one at a time from process_events(). They never
   run inside another callback or inside a command.

=============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .errors import ErrorCode


class AddressFamily(Enum):
    """Address family requested when creating an endpoint."""
    IPV4 = "ipv4"
    IPV6 = "ipv6"
    ANY = "any"      # Dual-stack where the platform supports it

    @classmethod
    def for_host(cls, host: str) -> "AddressFamily":
        """Pick the family a bind address needs ("" means any)."""
        if not host:
            return cls.ANY
        if ":" in host:
            return cls.IPV6
        return cls.IPV4


@dataclass
class ReceivedPayload:
    """
    A chunk of received bytes owned by the on_receive callback.

    Attributes:
        data: The received bytes.
        released: Set once the payload has been handed back.
    """
    data: bytes
    released: bool = field(default=False, repr=False)

    @property
    def total_length(self) -> int:
        """Number of bytes in the payload."""
        return len(self.data)


AcceptCallback = Callable[[Optional["Endpoint"], ErrorCode], None]
ReceiveCallback = Callable[[Optional[ReceivedPayload], ErrorCode], None]
SentCallback = Callable[[int], None]
PollCallback = Callable[[], None]
ErrorCallback = Callable[[ErrorCode], None]


@dataclass
class EndpointCallbacks:
    """
    The event handlers registered on one endpoint.

    A listener only needs on_accept; a client endpoint uses the rest.
    Passing None to Transport.set_callbacks() removes all of them at once.
    """
    on_accept: Optional[AcceptCallback] = None
    on_receive: Optional[ReceiveCallback] = None
    on_sent: Optional[SentCallback] = None
    on_poll: Optional[PollCallback] = None
    on_error: Optional[ErrorCallback] = None


class Endpoint(ABC):
    """
    Opaque handle to one end of a connection or a listener.

    Concrete transports subclass this to carry their own state. The server
    only stores, compares and passes endpoints back.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """False once the transport has released the endpoint."""

    @property
    def local_address(self) -> Optional[tuple]:
        """(host, port, ...) this endpoint is bound to, if known."""
        return None

    @property
    def peer_address(self) -> Optional[tuple]:
        """(host, port, ...) of the remote side, if connected."""
        return None


class Transport(ABC):
    """
    Reliable byte-stream provider consumed by ConnectionServer.

    Implementations:
        SocketTransport  OS sockets pumped by a selector (production)
        FakeTransport    Scripted, records commands (tests/conftest.py)
    """

    @abstractmethod
    def create_endpoint(self, family: AddressFamily = AddressFamily.ANY) -> Endpoint:
        """Allocate an endpoint. Raises AllocationError."""

    @abstractmethod
    def bind(self, endpoint: Endpoint, host: str, port: int) -> None:
        """Bind to host:port. Raises BindError."""

    @abstractmethod
    def listen(self, endpoint: Endpoint, backlog: int) -> Endpoint:
        """
        Put a bound endpoint into listening mode.

        Returns the listening endpoint, which may be a new handle replacing
        the one passed in. On success the caller owns only the returned
        handle. Raises ListenError, in which case the caller still owns
        the original endpoint.
        """

    @abstractmethod
    def set_callbacks(
        self,
        endpoint: Endpoint,
        callbacks: Optional[EndpointCallbacks],
        poll_interval: Optional[float] = None,
    ) -> None:
        """Register callbacks on an endpoint; None deregisters all of them."""

    @abstractmethod
    def write(self, endpoint: Endpoint, data: bytes, copy: bool = True) -> None:
        """Queue data for sending. Raises WriteError."""

    @abstractmethod
    def acknowledge_received(self, endpoint: Endpoint, count: int) -> None:
        """Tell the transport count received bytes were consumed."""

    @abstractmethod
    def close(self, endpoint: Endpoint) -> None:
        """Gracefully close an endpoint. Raises CloseError."""

    @abstractmethod
    def abort(self, endpoint: Endpoint) -> None:
        """Forcefully release an endpoint. Never fails."""

    @abstractmethod
    def release_received_payload(self, payload: ReceivedPayload) -> None:
        """Take back a payload previously handed to on_receive."""

    @abstractmethod
    def process_events(self, timeout: Optional[float] = None) -> None:
        """
        Deliver every ready event, waiting at most timeout seconds.

        This is the pump: the only place callbacks run. Raises
        TransportError if the event mechanism itself fails.
        """

    def shutdown(self) -> None:
        """Release every open endpoint. The transport stays usable afterwards."""
