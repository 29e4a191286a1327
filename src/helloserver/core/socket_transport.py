"""
=============================================================================
SOCKET TRANSPORT
=============================================================================

A Transport built on non-blocking OS sockets and a selector. It turns the
socket API (bind, listen, accept, recv, send) into the callback events the
connection server reacts to.

=============================================================================
BLOCKING vs. EVENT-DRIVEN
=============================================================================

A blocking server waits inside accept() or recv() and can do nothing else
meanwhile:

    conn, addr = sock.accept()    # stuck here until someone connects
    data = conn.recv(1024)        # stuck here until bytes arrive

An event-driven server asks the OS which sockets are READY, then handles
only those. Nothing ever blocks except the single wait in the middle:

    ┌─────────────────────────────────────────────────────────────────┐
    │                    process_events(timeout)                       │
    ├─────────────────────────────────────────────────────────────────┤
    │                                                                  │
    │   selector.select(timeout)     ← the ONLY blocking call          │
    │       │                                                          │
    │       ├── listener readable  → accept()  → on_accept(ep, OK)     │
    │       ├── client readable    → recv()    → on_receive(payload)   │
    │       │                          b""     → on_receive(None)      │
    │       ├── client writable    → send()    → on_sent(n)            │
    │       └── recv/send failed   → release   → on_error(code)        │
    │                                                                  │
    │   poll timers due            → on_poll()                         │
    │   deferred notifications     → on_error(ABORTED)                 │
    │                                                                  │
    └─────────────────────────────────────────────────────────────────┘

Every callback runs from inside process_events(), one after another.
Commands like write() and abort() never call back directly; they queue
work that the next pump delivers.

=============================================================================
FLOW CONTROL
=============================================================================

Each client endpoint has a receive WINDOW: how many bytes we are willing
to hand to the application before it says it has consumed them.

    window = 2048
    recv 100 bytes   → on_receive(100 bytes)     window = 1948
    acknowledge(100)                             window = 2048

If the application never acknowledges, the window reaches 0 and we stop
reading. The kernel buffer fills, TCP advertises a zero window, and the
peer slows down. Nothing is dropped.

=============================================================================
CLOSE vs. ABORT
=============================================================================

    close()   Graceful. Flush queued bytes, send FIN (shutdown SHUT_WR),
              drain what the peer still sends (at most drain_limit
              bytes), release the socket.
              Can fail (e.g. the peer already reset us); the endpoint
              then stays open and the caller must abort().

    abort()   Forceful. SO_LINGER = 0 makes close() send RST and drop
              anything unsent. Never fails.

=============================================================================
"""

import socket
import struct
import selectors
import time
import uuid
import logging
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional, Set

from .errors import (
    AllocationError,
    BindError,
    CloseError,
    ErrorCode,
    ListenError,
    TransportError,
    WriteError,
)
from .transport import (
    AddressFamily,
    Endpoint,
    EndpointCallbacks,
    ReceivedPayload,
    Transport,
)


logger = logging.getLogger(__name__)


class EndpointKind(Enum):
    """What a socket endpoint is currently used for."""
    UNBOUND = "unbound"    # Created, not yet bound
    BOUND = "bound"        # Bound, not yet listening
    LISTENER = "listener"  # Accepting connections
    STREAM = "stream"      # Connected client


class SocketEndpoint(Endpoint):
    """
    A socket plus the transport's bookkeeping for it.

    Attributes:
        id: Short identifier for logs.
        socket: The underlying non-blocking socket.
        kind: Current EndpointKind.
        callbacks: Registered event handlers, or None.
        poll_interval: Seconds between on_poll calls, or None.
        receive_window: Bytes we may still deliver before an acknowledge.
        outbox: Bytes queued by write() and not yet sent.
        peer_closed: The peer sent FIN; no more reads.
        closed: The socket has been released.
    """

    def __init__(
        self,
        sock: socket.socket,
        kind: EndpointKind = EndpointKind.UNBOUND,
        peer: Optional[tuple] = None,
        receive_window: int = 0,
    ):
        self.id = str(uuid.uuid4())[:8]
        self.socket = sock
        self.kind = kind
        self.callbacks: Optional[EndpointCallbacks] = None
        self.poll_interval: Optional[float] = None
        self.last_poll = time.monotonic()
        self.receive_window = receive_window
        self.outbox = bytearray()
        self.peer_closed = False
        self.closed = False
        self._peer = peer
        self._events = 0  # selector interest currently registered

    @property
    def is_open(self) -> bool:
        return not self.closed

    @property
    def local_address(self) -> Optional[tuple]:
        if self.closed:
            return None
        try:
            return self.socket.getsockname()
        except OSError:
            return None

    @property
    def peer_address(self) -> Optional[tuple]:
        return self._peer

    def __repr__(self) -> str:
        return f"SocketEndpoint(id={self.id}, kind={self.kind.value}, closed={self.closed})"


class SocketTransport(Transport):
    """
    Transport over OS sockets, pumped by selectors.DefaultSelector.

    Usage:
        transport = SocketTransport()
        listener = transport.create_endpoint()
        transport.bind(listener, "", 4242)
        listener = transport.listen(listener, backlog=1)
        transport.set_callbacks(listener, EndpointCallbacks(on_accept=...))

        while not done:
            transport.process_events(timeout=1.0)
    """

    def __init__(
        self,
        receive_window: int = 2048,
        read_size: int = 2048,
        send_buffer_limit: int = 64 * 1024,
        drain_limit: int = 64 * 1024,
    ):
        """
        Args:
            receive_window: Bytes a client endpoint may deliver before the
                            application acknowledges them.
            read_size: Largest single recv().
            send_buffer_limit: Most bytes write() will queue per endpoint.
            drain_limit: Most bytes close() discards from a peer that keeps
                         sending. Past this the close fails.
        """
        if min(receive_window, read_size, send_buffer_limit, drain_limit) < 1:
            raise ValueError("transport sizes must be >= 1")

        self.receive_window = receive_window
        self.read_size = read_size
        self.send_buffer_limit = send_buffer_limit
        self.drain_limit = drain_limit

        self._selector = selectors.DefaultSelector()
        self._endpoints: Set[SocketEndpoint] = set()

        # Notifications produced by commands, delivered on the next pump
        self._pending: Deque[Callable[[], None]] = deque()

    # =========================================================================
    # SETUP: create, bind, listen
    # =========================================================================

    def create_endpoint(self, family: AddressFamily = AddressFamily.ANY) -> SocketEndpoint:
        if family is AddressFamily.IPV4:
            af = socket.AF_INET
        elif family is AddressFamily.IPV6:
            af = socket.AF_INET6
        else:
            af = socket.AF_INET6 if socket.has_dualstack_ipv6() else socket.AF_INET

        try:
            sock = socket.socket(af, socket.SOCK_STREAM)
        except OSError as e:
            raise AllocationError(
                f"Failed to create socket: {e}",
                ErrorCode.from_os_error(e, ErrorCode.OUT_OF_MEMORY),
            ) from e

        try:
            # Restarts rebind the same port right away
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family is AddressFamily.ANY and af == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise AllocationError(f"Failed to configure socket: {e}") from e

        endpoint = SocketEndpoint(sock)
        self._endpoints.add(endpoint)
        logger.debug(f"[{endpoint.id}] Created endpoint ({family.value})")
        return endpoint

    def bind(self, endpoint: SocketEndpoint, host: str, port: int) -> None:
        if endpoint.closed or endpoint.kind is not EndpointKind.UNBOUND:
            raise BindError(f"[{endpoint.id}] Endpoint cannot be bound", ErrorCode.INVALID)
        try:
            endpoint.socket.bind((host, port))
        except OSError as e:
            raise BindError(
                f"Failed to bind to {host or '*'}:{port}: {e}",
                ErrorCode.from_os_error(e, ErrorCode.ADDRESS_IN_USE),
            ) from e
        endpoint.kind = EndpointKind.BOUND

    def listen(self, endpoint: SocketEndpoint, backlog: int) -> SocketEndpoint:
        if endpoint.closed or endpoint.kind is not EndpointKind.BOUND:
            raise ListenError(f"[{endpoint.id}] Endpoint is not bound", ErrorCode.INVALID)
        try:
            endpoint.socket.listen(backlog)
        except OSError as e:
            raise ListenError(
                f"Failed to listen: {e}",
                ErrorCode.from_os_error(e, ErrorCode.CONNECTION),
            ) from e
        endpoint.kind = EndpointKind.LISTENER
        self._update_interest(endpoint)
        return endpoint

    def set_callbacks(
        self,
        endpoint: SocketEndpoint,
        callbacks: Optional[EndpointCallbacks],
        poll_interval: Optional[float] = None,
    ) -> None:
        if endpoint.closed:
            return
        endpoint.callbacks = callbacks
        endpoint.poll_interval = poll_interval if callbacks is not None else None
        endpoint.last_poll = time.monotonic()
        self._update_interest(endpoint)

    # =========================================================================
    # DATA: write, acknowledge, payloads
    # =========================================================================

    def write(self, endpoint: SocketEndpoint, data: bytes, copy: bool = True) -> None:
        """
        Queue data for sending.

        The bytes are always copied into the endpoint's send queue, so the
        caller's buffer never has to outlive the call.
        """
        if endpoint.closed or endpoint.kind is not EndpointKind.STREAM:
            raise WriteError(f"[{endpoint.id}] Endpoint is not connected", ErrorCode.CLOSED)
        if len(endpoint.outbox) + len(data) > self.send_buffer_limit:
            raise WriteError(
                f"[{endpoint.id}] Send queue full "
                f"({len(endpoint.outbox)} queued, {len(data)} more)",
                ErrorCode.BUFFER,
            )
        endpoint.outbox += data
        self._update_interest(endpoint)

    def acknowledge_received(self, endpoint: SocketEndpoint, count: int) -> None:
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        if endpoint.closed:
            return
        endpoint.receive_window = min(endpoint.receive_window + count, self.receive_window)
        self._update_interest(endpoint)

    def release_received_payload(self, payload: ReceivedPayload) -> None:
        if payload.released:
            raise ValueError("payload already released")
        payload.released = True

    # =========================================================================
    # RELEASE: close, abort
    # =========================================================================

    def close(self, endpoint: SocketEndpoint) -> None:
        if endpoint.closed:
            raise CloseError(f"[{endpoint.id}] Endpoint already closed", ErrorCode.CLOSED)

        self._forget(endpoint)

        try:
            if endpoint.kind is EndpointKind.STREAM:
                # ─────────────────────────────────────────────────────────
                # STEP 1: Push out anything still queued
                # ─────────────────────────────────────────────────────────
                self._flush(endpoint)

                # ─────────────────────────────────────────────────────────
                # STEP 2: Stop sending (sends FIN)
                # ─────────────────────────────────────────────────────────
                endpoint.socket.shutdown(socket.SHUT_WR)

                # ─────────────────────────────────────────────────────────
                # STEP 3: Drain unread data so close() doesn't send RST
                # ─────────────────────────────────────────────────────────
                if not self._drain(endpoint):
                    raise CloseError(
                        f"[{endpoint.id}] Peer still sending after "
                        f"{self.drain_limit} bytes drained",
                        ErrorCode.BUFFER,
                    )
        except OSError as e:
            # Endpoint stays open; the owner is expected to abort()
            raise CloseError(
                f"[{endpoint.id}] Graceful close failed: {e}",
                ErrorCode.from_os_error(e, ErrorCode.CLOSED),
            ) from e

        endpoint.socket.close()
        endpoint.closed = True
        endpoint.callbacks = None
        logger.debug(f"[{endpoint.id}] Closed")

    def abort(self, endpoint: SocketEndpoint) -> None:
        if endpoint.closed:
            return

        callbacks = endpoint.callbacks
        self._forget(endpoint)

        try:
            # Linger with zero timeout: close() sends RST, drops unsent data
            endpoint.socket.setsockopt(
                socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0)
            )
        except OSError:
            pass  # Not connected; a plain close is already abortive
        try:
            endpoint.socket.close()
        except OSError:
            pass

        endpoint.closed = True
        endpoint.callbacks = None
        endpoint.outbox.clear()
        logger.debug(f"[{endpoint.id}] Aborted")

        if callbacks is not None and callbacks.on_error is not None:
            on_error = callbacks.on_error
            self._pending.append(lambda: on_error(ErrorCode.ABORTED))

    def shutdown(self) -> None:
        """
        Abort every endpoint still open and start over with a fresh selector.

        The transport stays usable, so a server can run again after a
        shutdown.
        """
        for endpoint in list(self._endpoints):
            endpoint.callbacks = None
            self.abort(endpoint)
        self._pending.clear()
        self._selector.close()
        self._selector = selectors.DefaultSelector()

    # =========================================================================
    # THE PUMP
    # =========================================================================

    def process_events(self, timeout: Optional[float] = None) -> None:
        """
        Wait up to timeout seconds for socket readiness and deliver events.

        The wait is cut short when a poll timer falls due or a deferred
        notification is pending.
        """
        wait = self._next_wait(timeout)

        try:
            if self._selector.get_map():
                ready = self._selector.select(wait)
            else:
                # Nothing registered; just let time pass for poll timers
                if wait is None or wait > 0:
                    time.sleep(wait if wait is not None else 0.1)
                ready = []
        except OSError as e:
            raise TransportError(
                f"Event wait failed: {e}",
                ErrorCode.from_os_error(e, ErrorCode.CONNECTION),
            ) from e

        for key, mask in ready:
            endpoint = key.data
            if mask & selectors.EVENT_READ and not endpoint.closed:
                self._on_readable(endpoint)
            if mask & selectors.EVENT_WRITE and not endpoint.closed:
                self._on_writable(endpoint)

        self._deliver_polls()
        self._deliver_pending()

    def _next_wait(self, timeout: Optional[float]) -> Optional[float]:
        if self._pending:
            return 0.0

        now = time.monotonic()
        wait = timeout
        for endpoint in self._endpoints:
            if self._poll_callback(endpoint) is None:
                continue
            due = max(0.0, endpoint.last_poll + endpoint.poll_interval - now)
            wait = due if wait is None else min(wait, due)
        return wait

    def _on_readable(self, endpoint: SocketEndpoint):
        if endpoint.kind is EndpointKind.LISTENER:
            self._accept(endpoint)
            return

        size = min(self.read_size, endpoint.receive_window)
        if size <= 0:
            self._update_interest(endpoint)
            return

        try:
            data = endpoint.socket.recv(size)
        except BlockingIOError:
            return
        except OSError as e:
            self._fail(endpoint, ErrorCode.from_os_error(e, ErrorCode.RESET))
            return

        callbacks = endpoint.callbacks
        if not data:
            # Peer sent FIN: it will send nothing more
            endpoint.peer_closed = True
            self._update_interest(endpoint)
            if callbacks is not None and callbacks.on_receive is not None:
                callbacks.on_receive(None, ErrorCode.OK)
            return

        endpoint.receive_window -= len(data)
        self._update_interest(endpoint)
        if callbacks is not None and callbacks.on_receive is not None:
            callbacks.on_receive(ReceivedPayload(data), ErrorCode.OK)

    def _accept(self, listener: SocketEndpoint):
        callbacks = listener.callbacks
        on_accept = callbacks.on_accept if callbacks is not None else None

        try:
            client_socket, client_address = listener.socket.accept()
        except BlockingIOError:
            return  # Client went away between select() and accept()
        except OSError as e:
            if on_accept is not None:
                on_accept(None, ErrorCode.from_os_error(e, ErrorCode.CONNECTION))
            return

        client_socket.setblocking(False)
        try:
            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

        client = SocketEndpoint(
            client_socket,
            kind=EndpointKind.STREAM,
            peer=client_address,
            receive_window=self.receive_window,
        )
        self._endpoints.add(client)
        logger.debug(f"[{client.id}] Accepted connection from {client_address[0]}:{client_address[1]}")

        if on_accept is None:
            self.abort(client)
            return
        on_accept(client, ErrorCode.OK)

    def _on_writable(self, endpoint: SocketEndpoint):
        try:
            sent = self._flush(endpoint)
        except OSError as e:
            self._fail(endpoint, ErrorCode.from_os_error(e, ErrorCode.RESET))
            return

        self._update_interest(endpoint)
        callbacks = endpoint.callbacks
        if sent and callbacks is not None and callbacks.on_sent is not None:
            callbacks.on_sent(sent)

    def _deliver_polls(self):
        now = time.monotonic()
        for endpoint in list(self._endpoints):
            on_poll = self._poll_callback(endpoint)
            if on_poll is None:
                continue
            if now - endpoint.last_poll >= endpoint.poll_interval:
                endpoint.last_poll = now
                on_poll()

    def _deliver_pending(self):
        while self._pending:
            notify = self._pending.popleft()
            notify()

    @staticmethod
    def _poll_callback(endpoint: SocketEndpoint):
        if endpoint.closed or endpoint.callbacks is None or not endpoint.poll_interval:
            return None
        return endpoint.callbacks.on_poll

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _flush(self, endpoint: SocketEndpoint) -> int:
        """Send as much of the outbox as the kernel takes. Raises OSError."""
        sent_total = 0
        while endpoint.outbox:
            try:
                sent = endpoint.socket.send(endpoint.outbox)
            except BlockingIOError:
                break
            if sent == 0:
                break
            del endpoint.outbox[:sent]
            sent_total += sent
        return sent_total

    def _drain(self, endpoint: SocketEndpoint) -> bool:
        """
        Discard what the peer still has in flight, up to drain_limit bytes.

        Returns False if the limit was hit with data still arriving.
        Raises OSError.
        """
        drained = 0
        try:
            while drained < self.drain_limit:
                chunk = endpoint.socket.recv(min(4096, self.drain_limit - drained))
                if not chunk:
                    return True
                drained += len(chunk)
        except BlockingIOError:
            return True
        return False

    def _fail(self, endpoint: SocketEndpoint, code: ErrorCode):
        """
        Release an endpoint after a connection-level error, then report it.

        The owner learns about the failure only through on_error, after the
        endpoint is already gone, so it must not close it again.
        """
        callbacks = endpoint.callbacks
        self._forget(endpoint)
        try:
            endpoint.socket.close()
        except OSError:
            pass
        endpoint.closed = True
        endpoint.callbacks = None
        logger.debug(f"[{endpoint.id}] Connection failed: {code.name}")

        if callbacks is not None and callbacks.on_error is not None:
            callbacks.on_error(code)

    def _update_interest(self, endpoint: SocketEndpoint):
        if endpoint.closed:
            return

        callbacks = endpoint.callbacks
        events = 0
        if endpoint.kind is EndpointKind.LISTENER:
            if callbacks is not None and callbacks.on_accept is not None:
                events |= selectors.EVENT_READ
        elif endpoint.kind is EndpointKind.STREAM:
            wants_data = callbacks is not None and callbacks.on_receive is not None
            if wants_data and not endpoint.peer_closed and endpoint.receive_window > 0:
                events |= selectors.EVENT_READ
            if endpoint.outbox:
                events |= selectors.EVENT_WRITE

        if events == endpoint._events:
            return
        if endpoint._events == 0:
            self._selector.register(endpoint.socket, events, endpoint)
        elif events == 0:
            self._selector.unregister(endpoint.socket)
        else:
            self._selector.modify(endpoint.socket, events, endpoint)
        endpoint._events = events

    def _forget(self, endpoint: SocketEndpoint):
        if endpoint._events:
            try:
                self._selector.unregister(endpoint.socket)
            except (KeyError, ValueError):
                pass
            endpoint._events = 0
        self._endpoints.discard(endpoint)
