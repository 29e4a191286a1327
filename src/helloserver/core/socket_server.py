"""
=============================================================================
CONNECTION SERVER
=============================================================================

This module implements the lifecycle of the greeting server: listen for one
client, say hello, log whatever it sends, and clean up when it goes away.

=============================================================================
ONE LIFECYCLE
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         run_once()                                   │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   start()          Allocate ServerState                  INIT        │
    │       │                                                              │
    │   open()           create → bind → listen(backlog=1)     LISTENING   │
    │       │                                                              │
    │   pump ◄─────────────────────────────────────────┐                   │
    │       │                                          │                   │
    │       ├── on_accept   take client, greet         │  CONNECTED        │
    │       ├── on_sent     count greeting bytes       │                   │
    │       ├── on_receive  log bytes, acknowledge ────┘                   │
    │       ├── on_poll     heartbeat (idle timeout)                       │
    │       │                                                              │
    │       └── peer closed / error / write failed / idle                  │
    │               │                                                      │
    │           result(code)   done = True              CLOSING            │
    │               │                                                      │
    │           close()        release both endpoints   TERMINATED         │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
EXACTLY ONE TERMINAL TRANSITION
=============================================================================

Several events can each look like "the end": the peer closes, a write
fails, the transport reports an error. They are delivered one at a time,
and all of them go through result():

    on_receive(None) ──┐
    on_error(code) ────┤
    write failed ──────┼──► result(code) ──► done? ── yes ──► ignore
    accept failed ─────┤                       │
    idle timeout ──────┤                       no
    open failed ───────┘                       │
                                               ▼
                                  done = True, log, close()

The first caller wins. Every later call sees done and returns.

=============================================================================
HANDLE SAFETY
=============================================================================

close() deregisters an endpoint's callbacks BEFORE closing it, so nothing
fires against a half-released endpoint. If the graceful close fails it
aborts instead. It drops each handle as soon as it is released, which makes
a second close() a no-op.

on_error() is different: the transport has already released the client
endpoint when it reports an error. The server forgets the handle WITHOUT
closing it, otherwise it would release the same endpoint twice.

=============================================================================
"""

import logging
from typing import Optional

from ..config import ServerConfig
from .connection import LifecycleState, ServerState
from .errors import (
    AcceptError,
    AllocationError,
    BindError,
    CloseError,
    ErrorCode,
    ListenError,
    TransportError,
    WriteError,
    describe,
)
from .transport import (
    AddressFamily,
    Endpoint,
    EndpointCallbacks,
    ReceivedPayload,
    Transport,
)


logger = logging.getLogger(__name__)

# Received bytes get their own logger so they can be routed separately
received_logger = logging.getLogger("helloserver.received")


class ConnectionServer:
    """
    Single-client lifecycle state machine.

    Serves one client per lifecycle over any Transport. The transport
    delivers events; this class decides what they mean.

    Usage:
        server = ConnectionServer(SocketTransport(), ServerConfig())
        while True:
            server.run_once()  # Blocks for one full lifecycle

    Attributes:
        transport: The Transport commands are issued to.
        config: Port, greeting, buffer and timing settings.
        state: ServerState of the running lifecycle, None between them.
        lifecycles: Number of lifecycles started.
    """

    def __init__(self, transport: Transport, config: Optional[ServerConfig] = None):
        self.transport = transport
        self.config = config or ServerConfig()
        self.state: Optional[ServerState] = None
        self.lifecycles = 0
        self._stop_requested = False

    @property
    def is_running(self) -> bool:
        """True while a lifecycle is active and not yet terminated."""
        return self.state is not None and not self.state.done

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def address(self) -> Optional[tuple]:
        """Local address of the listener, while one is held."""
        if self.state is None or self.state.listen_handle is None:
            return None
        return self.state.listen_handle.local_address

    # =========================================================================
    # SETUP
    # =========================================================================

    def start(self) -> ServerState:
        """
        Allocate the state for a new lifecycle.

        Raises:
            AllocationError: If the state could not be allocated.
        """
        try:
            state = ServerState(buffer_size=self.config.buffer_size)
        except MemoryError as e:
            logger.error("Failed to allocate state")
            raise AllocationError("failed to allocate server state") from e

        self.state = state
        return state

    def open(self):
        """
        Create the listening endpoint (INIT → LISTENING).

        The endpoint is recorded in the state as soon as it exists, so a
        failed bind or listen still leaves it for close() to release.

        Raises:
            AllocationError, BindError, ListenError
        """
        state = self._require_state()
        host, port = self.config.host, self.config.port

        logger.info(f"Starting server at {host or '*'} on port {port}")

        endpoint = self.transport.create_endpoint(AddressFamily.for_host(host))
        state.listen_handle = endpoint

        self.transport.bind(endpoint, host, port)

        # listen() may hand back a new endpoint that replaces the bound one
        state.listen_handle = self.transport.listen(endpoint, self.config.backlog)

        self.transport.set_callbacks(
            state.listen_handle,
            EndpointCallbacks(on_accept=self.on_accept),
        )
        state.phase = LifecycleState.LISTENING

        address = self.address
        if address:
            logger.info(f"Server listening on {address[0] or '*'}:{address[1]}")

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on_accept(self, endpoint: Optional[Endpoint], status: int):
        """
        A client connected (LISTENING → CONNECTED), or accept failed.

        On success: take the endpoint, arm its callbacks, send the greeting.
        """
        state = self.state
        if state is None or state.done:
            if endpoint is not None:
                self.transport.abort(endpoint)
            return

        if state.client_handle is not None and endpoint is not None:
            logger.warning("Rejecting client: already serving one")
            self.transport.abort(endpoint)
            return

        try:
            self._check_accept(endpoint, status)
        except AcceptError as e:
            logger.error(f"Failure in accept: {e}")
            if endpoint is not None:
                self.transport.abort(endpoint)
            self.result(e.code)
            return

        state.adopt_client(endpoint)
        self.transport.set_callbacks(
            endpoint,
            EndpointCallbacks(
                on_receive=self.on_receive,
                on_sent=self.on_sent,
                on_poll=self.on_poll,
                on_error=self.on_error,
            ),
            poll_interval=self.config.poll_interval,
        )

        peer = endpoint.peer_address
        if peer:
            logger.info(f"Client connected from {peer[0]}:{peer[1]}")
        else:
            logger.info("Client connected")

        self.send_greeting()

    @staticmethod
    def _check_accept(endpoint: Optional[Endpoint], status: int):
        if status != ErrorCode.OK:
            raise AcceptError(f"status {describe(status)}", status)
        if endpoint is None:
            raise AcceptError("no client endpoint", ErrorCode.INVALID)

    def send_greeting(self) -> bool:
        """
        Write the greeting to the client, once.

        Returns:
            True if the transport accepted the write. A rejected write ends
            the lifecycle.
        """
        state = self.state
        if state is None or state.done or state.client_handle is None:
            return False

        state.bytes_acknowledged = 0
        logger.debug("Writing to client")

        try:
            self.transport.write(state.client_handle, self.config.greeting, copy=True)
        except WriteError as e:
            logger.error(f"Failed to write data {describe(e.code)}: {e}")
            self.result(e.code)
            return False
        return True

    def on_sent(self, count: int):
        """The transport reports count greeting bytes sent."""
        state = self.state
        if state is None or state.done:
            return

        logger.debug(f"Sent {count} bytes")
        state.bytes_acknowledged += count

        if not state.greeting_complete and state.bytes_acknowledged >= len(self.config.greeting):
            state.greeting_complete = True
            logger.info("Sending done")

    def on_receive(self, payload: Optional[ReceivedPayload], status: int):
        """
        Bytes arrived, or the peer closed (payload None or empty).

        The payload is released exactly once here, whichever branch runs.
        """
        state = self.state
        peer_closed = False

        try:
            if state is None or state.done or state.client_handle is None:
                return

            if payload is None or payload.total_length == 0:
                peer_closed = True
                return

            # ─────────────────────────────────────────────────────────────
            # COPY, CLAMPED TO THE BUFFER
            # ─────────────────────────────────────────────────────────────
            # The buffer keeps at most capacity - 1 bytes plus a
            # terminator. The transport is acknowledged for everything it
            # handed over, kept or not.

            length = payload.total_length
            copied = state.receive_buffer.fill(payload.data)
            logger.debug(f"Received {length} bytes (status {describe(status)})")
            if copied < length:
                logger.warning(f"Kept {copied} of {length} received bytes")

            received_logger.info(state.receive_buffer.text())
            state.idle_polls = 0

            self.transport.acknowledge_received(state.client_handle, length)
        finally:
            if payload is not None:
                self.transport.release_received_payload(payload)

        if peer_closed:
            self.result(ErrorCode.OK)

    def on_poll(self):
        """Idle heartbeat. Ends the connection only if an idle limit is set."""
        state = self.state
        if state is None or state.done:
            return

        logger.debug("Poll")

        limit = self.config.idle_timeout_polls
        if limit is None:
            return

        state.idle_polls += 1
        if state.idle_polls >= limit:
            logger.info(f"Client idle for {state.idle_polls} polls, closing")
            self.result(ErrorCode.TIMEOUT)

    def on_error(self, code: int):
        """
        The transport reports a connection error.

        The client endpoint is already released by the transport, so it
        is dropped here without being closed. Aborts are reported the same
        way as any other error.
        """
        state = self.state
        if state is None or state.done:
            return

        if code == ErrorCode.ABORTED:
            logger.error(f"Client error (abort) {describe(code)}")
        else:
            logger.error(f"Client error {describe(code)}")

        state.release_client()
        self.result(code)

    # =========================================================================
    # TERMINATION
    # =========================================================================

    def result(self, code: int) -> int:
        """
        Finish the lifecycle: the single terminal transition.

        Only the first call per lifecycle does anything.

        Returns:
            The result of close(): OK, or ABORTED if a close had to abort.
        """
        state = self.state
        if state is None:
            return ErrorCode.OK
        if state.done:
            logger.debug(f"Ignoring result {describe(code)}: lifecycle already finished")
            return ErrorCode.OK

        state.phase = LifecycleState.CLOSING
        state.done = True
        state.result_code = code

        if code == ErrorCode.OK:
            logger.info("Completed normally")
        else:
            logger.error(f"Error {describe(code)}")

        err = self.close()
        state.phase = LifecycleState.TERMINATED
        return err

    def close(self) -> int:
        """
        Release the client and listening endpoints. Safe to call repeatedly.

        Returns:
            OK, or ABORTED if the client's graceful close failed.
        """
        state = self.state
        if state is None:
            return ErrorCode.OK

        err = ErrorCode.OK

        client = state.release_client()
        if client is not None:
            self.transport.set_callbacks(client, None)
            try:
                self.transport.close(client)
            except CloseError as e:
                logger.warning(f"Close failed {describe(e.code)}, calling abort")
                self.transport.abort(client)
                err = ErrorCode.ABORTED

        listener = state.release_listener()
        if listener is not None:
            self.transport.set_callbacks(listener, None)
            try:
                self.transport.close(listener)
            except CloseError as e:
                logger.warning(f"Listener close failed {describe(e.code)}, calling abort")
                self.transport.abort(listener)

        return err

    # =========================================================================
    # DRIVER
    # =========================================================================

    def run_once(self) -> int:
        """
        Run one full lifecycle and return its result code.

        Blocks, pumping the transport, until the lifecycle terminates.
        Lifecycle errors are logged and returned, never raised.
        """
        self.lifecycles += 1

        try:
            state = self.start()
        except AllocationError as e:
            return e.code

        try:
            try:
                self.open()
            except (AllocationError, BindError, ListenError) as e:
                logger.error(f"Failed to open listener: {e}")
                self.result(e.code)

            # ─────────────────────────────────────────────────────────────
            # WAIT FOR THE LIFECYCLE TO END
            # ─────────────────────────────────────────────────────────────
            # All callbacks run inside process_events(). The wait inside it
            # is the only place this loop blocks.

            while not state.done:
                if self._stop_requested:
                    logger.info("Stop requested, ending lifecycle")
                    self.result(ErrorCode.INTERRUPTED)
                    break
                try:
                    self.transport.process_events(self.config.pump_interval)
                except TransportError as e:
                    logger.error(f"Event processing failed: {e}")
                    self.result(e.code)
        finally:
            if not state.done:
                # Unwinding on an exception; still release everything
                self.result(ErrorCode.INTERRUPTED)
            self.state = None

        return state.result_code

    def stop(self):
        """
        Ask the running lifecycle to end at the next pump step.

        Only sets a flag, so it is safe to call from a signal handler.
        """
        self._stop_requested = True

    def clear_stop(self):
        """Allow lifecycles to run again after stop()."""
        self._stop_requested = False

    def _require_state(self) -> ServerState:
        if self.state is None:
            raise RuntimeError("start() must be called first")
        return self.state
