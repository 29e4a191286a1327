"""
pytest configuration and fixtures.
"""

import socket
import time
from collections import deque
from typing import Callable, Optional

import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from helloserver import ServerConfig
from helloserver.core import (
    AddressFamily,
    CloseError,
    ConnectionServer,
    Endpoint,
    EndpointCallbacks,
    ErrorCode,
    ReceivedPayload,
    Transport,
)


class FakeEndpoint(Endpoint):
    """Endpoint handed out by FakeTransport; remembers how it was released."""

    def __init__(self, name: str, peer: Optional[tuple] = None):
        self.name = name
        self.port: Optional[int] = None
        self.backlog: Optional[int] = None
        self.callbacks: Optional[EndpointCallbacks] = None
        self.poll_interval: Optional[float] = None
        self.closed = False
        self.aborted = False
        self.failed = False  # Released by the transport after an error
        self._peer = peer

    @property
    def released(self) -> bool:
        return self.closed or self.aborted or self.failed

    @property
    def is_open(self) -> bool:
        return not self.released

    @property
    def local_address(self):
        return ("127.0.0.1", self.port) if self.port is not None else None

    @property
    def peer_address(self):
        return self._peer

    def __repr__(self) -> str:
        return f"FakeEndpoint({self.name})"


class FakeTransport(Transport):
    """
    Scripted transport that records every command.

    Any use of an endpoint after it was released fails the test with an
    AssertionError, so double closes can't go unnoticed.

    process_events() runs the next scripted event (a callable taking the
    transport), mirroring how a real pump delivers one batch of callbacks.
    """

    def __init__(self):
        self.calls = []
        self.endpoints = []
        self.writes = []
        self.acknowledged = []
        self.released_payloads = []
        self.events = deque()
        self.pumps = 0
        self.shut_down = False

        self.listener: Optional[FakeEndpoint] = None
        self.client: Optional[FakeEndpoint] = None

        # Failure injection
        self.fail_create: Optional[Exception] = None
        self.fail_bind: Optional[Exception] = None
        self.fail_listen: Optional[Exception] = None
        self.fail_write: Optional[Exception] = None
        self.fail_close = set()

    # ─────────────────────────────────────────────────────────────────────
    # Transport commands
    # ─────────────────────────────────────────────────────────────────────

    def create_endpoint(self, family: AddressFamily = AddressFamily.ANY) -> FakeEndpoint:
        self.calls.append(("create_endpoint", family))
        if self.fail_create is not None:
            raise self.fail_create
        endpoint = FakeEndpoint(f"endpoint-{len(self.endpoints)}")
        self.endpoints.append(endpoint)
        return endpoint

    def bind(self, endpoint, host, port):
        self._check_live(endpoint, "bind")
        self.calls.append(("bind", endpoint, host, port))
        if self.fail_bind is not None:
            raise self.fail_bind
        endpoint.port = port

    def listen(self, endpoint, backlog):
        self._check_live(endpoint, "listen")
        self.calls.append(("listen", endpoint, backlog))
        if self.fail_listen is not None:
            raise self.fail_listen
        endpoint.backlog = backlog
        self.listener = endpoint
        return endpoint

    def set_callbacks(self, endpoint, callbacks, poll_interval=None):
        self._check_live(endpoint, "set_callbacks")
        self.calls.append(("set_callbacks", endpoint, callbacks is not None))
        endpoint.callbacks = callbacks
        endpoint.poll_interval = poll_interval

    def write(self, endpoint, data, copy=True):
        self._check_live(endpoint, "write")
        self.calls.append(("write", endpoint, bytes(data)))
        if self.fail_write is not None:
            raise self.fail_write
        self.writes.append((endpoint, bytes(data)))

    def acknowledge_received(self, endpoint, count):
        self._check_live(endpoint, "acknowledge_received")
        self.calls.append(("acknowledge_received", endpoint, count))
        self.acknowledged.append(count)

    def close(self, endpoint):
        self._check_live(endpoint, "close")
        self.calls.append(("close", endpoint))
        if endpoint in self.fail_close:
            raise CloseError(f"{endpoint} refuses to close", ErrorCode.RESET)
        endpoint.closed = True

    def abort(self, endpoint):
        self._check_live(endpoint, "abort")
        self.calls.append(("abort", endpoint))
        endpoint.aborted = True

    def release_received_payload(self, payload):
        assert not payload.released, "payload released twice"
        payload.released = True
        self.released_payloads.append(payload)

    def process_events(self, timeout=None):
        self.pumps += 1
        if self.pumps > 1000:
            raise RuntimeError("pump ran away: no scripted event ended the lifecycle")
        if self.events:
            event = self.events.popleft()
            event(self)

    def shutdown(self):
        self.shut_down = True

    # ─────────────────────────────────────────────────────────────────────
    # Event delivery (what a real transport does from its pump)
    # ─────────────────────────────────────────────────────────────────────

    def script(self, *events: Callable[["FakeTransport"], None]):
        self.events.extend(events)

    def connect(self, peer=("10.0.0.2", 50000)) -> FakeEndpoint:
        assert self.listener is not None, "nobody is listening"
        callbacks = self._callbacks_of(self.listener)
        client = FakeEndpoint(f"client-{len(self.endpoints)}", peer=peer)
        self.endpoints.append(client)
        self.client = client
        callbacks.on_accept(client, ErrorCode.OK)
        return client

    def receive(self, endpoint, data: Optional[bytes]) -> Optional[ReceivedPayload]:
        callbacks = self._callbacks_of(endpoint)
        payload = ReceivedPayload(data) if data is not None else None
        callbacks.on_receive(payload, ErrorCode.OK)
        return payload

    def sent(self, endpoint, count: int):
        self._callbacks_of(endpoint).on_sent(count)

    def poll(self, endpoint):
        self._callbacks_of(endpoint).on_poll()

    def fail(self, endpoint, code: ErrorCode):
        """Release the endpoint, then report the error (transport order)."""
        callbacks = self._callbacks_of(endpoint)
        endpoint.failed = True
        endpoint.callbacks = None
        callbacks.on_error(code)

    def calls_named(self, name: str):
        return [call for call in self.calls if call[0] == name]

    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _check_live(endpoint, operation):
        assert not endpoint.released, f"{operation} on released {endpoint}"

    @staticmethod
    def _callbacks_of(endpoint) -> EndpointCallbacks:
        assert not endpoint.released, f"event on released {endpoint}"
        assert endpoint.callbacks is not None, f"no callbacks registered on {endpoint}"
        return endpoint.callbacks


@pytest.fixture
def config() -> ServerConfig:
    """Default server configuration (port 4242, backlog 1)."""
    return ServerConfig()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def server(transport: FakeTransport, config: ServerConfig) -> ConnectionServer:
    return ConnectionServer(transport, config)


@pytest.fixture
def listening(server: ConnectionServer) -> ConnectionServer:
    """A server with its lifecycle started and the listener open."""
    server.start()
    server.open()
    return server


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def pump_until(transport: Transport, predicate: Callable[[], bool], timeout: float = 3.0):
    """Pump a real transport until predicate() holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        transport.process_events(0.05)


@pytest.fixture
def pump() -> Callable[..., None]:
    return pump_until
