"""
=============================================================================
LIFECYCLE STATE
=============================================================================

This module holds the data one lifecycle of the server works on: which
endpoints it owns, the receive buffer, and how far along it is.

=============================================================================
ONE LIFECYCLE, ONE STATE OBJECT
=============================================================================

The server serves at most one client per lifecycle, then throws all of its
state away and starts again:

    ┌─────────────────────────────────────────────────────────────────┐
    │   run_once()                                                     │
    │       │                                                          │
    │       ├──► ServerState()     fresh state, fresh buffer           │
    │       ├──► listen / accept / greet / receive ...                 │
    │       ├──► result()          done = True, handles released       │
    │       └──► drop ServerState                                      │
    │                                                                  │
    │   run_once()                 nothing carried over                │
    │       ...                                                        │
    └─────────────────────────────────────────────────────────────────┘

Nothing leaks from one connection into the next, and no stale handle can
be reused because the object holding it is gone.

=============================================================================
LIFECYCLE STATE MACHINE
=============================================================================

    INIT ──────► LISTENING ──────► CONNECTED
     │               │                 │
     │ open failed   │ accept failed   │ peer closed / error /
     │               │ error           │ write failed / idle
     ▼               ▼                 ▼
     └─────────────► CLOSING ◄─────────┘
                        │
                        ▼
                    TERMINATED      (never left within a lifecycle)

=============================================================================
THE RECEIVE BUFFER
=============================================================================

Incoming chunks are copied into one fixed-size buffer that is reused for
every read. The last slot is reserved for a zero terminator, so a chunk
longer than capacity - 1 is clamped at the copy:

    capacity = 8, payload = b"abcdefghij"

    index:   0   1   2   3   4   5   6   7
           ┌───┬───┬───┬───┬───┬───┬───┬───┐
           │ a │ b │ c │ d │ e │ f │ g │\0 │
           └───┴───┴───┴───┴───┴───┴───┴───┘
                                         ▲
                             never written past here

=============================================================================
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

from .errors import ErrorCode
from .transport import Endpoint


class LifecycleState(Enum):
    """Phases of one lifecycle."""
    INIT = "init"              # State allocated, nothing opened yet
    LISTENING = "listening"    # Listener bound, waiting for a client
    CONNECTED = "connected"    # Client accepted, greeting issued
    CLOSING = "closing"        # Terminal result reported, releasing
    TERMINATED = "terminated"  # Everything released


class ClientStatus(Enum):
    """Where the client handle is in its life."""
    NONE = "none"          # No client has connected yet
    HELD = "held"          # Client endpoint owned by this state
    RELEASED = "released"  # Client was connected and has been let go


class ReceiveBuffer:
    """
    Fixed-capacity byte buffer reused across reads.

    fill() never writes past index capacity - 1; that slot (or the one
    right after the copied bytes) always holds a zero terminator.
    """

    def __init__(self, capacity: int = 2048):
        if capacity < 2:
            raise ValueError(f"capacity must be >= 2, got {capacity}")
        self._data = bytearray(capacity)
        self._length = 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    @property
    def max_payload(self) -> int:
        """Largest number of bytes one fill() keeps."""
        return self.capacity - 1

    def __len__(self) -> int:
        return self._length

    def fill(self, data: bytes) -> int:
        """
        Copy a chunk into the buffer and terminate it.

        Args:
            data: Received bytes. Only the first capacity - 1 are kept.

        Returns:
            Number of bytes copied.
        """
        count = min(len(data), self.max_payload)
        self._data[:count] = data[:count]
        self._data[count] = 0
        self._length = count
        return count

    @property
    def contents(self) -> bytes:
        """Bytes of the last chunk, without the terminator."""
        return bytes(self._data[:self._length])

    def text(self) -> str:
        """Last chunk decoded for logging."""
        return self.contents.decode("utf-8", errors="replace")

    def clear(self):
        """Forget the last chunk."""
        self._data[0] = 0
        self._length = 0


@dataclass
class ServerState:
    """
    Everything one lifecycle owns.

    Attributes:
        listen_handle: The listening endpoint, while held.
        client_handle: The accepted client endpoint, while held.
        client_released: True once a held client has been let go.
        receive_buffer: Reused buffer for received chunks.
        bytes_acknowledged: Greeting bytes reported sent so far.
        greeting_complete: Set once the full greeting has been sent.
        idle_polls: Consecutive polls with no received data.
        done: Set exactly once, by the terminal transition.
        result_code: The code the terminal transition reported.
        phase: Current LifecycleState.
    """

    buffer_size: int = 2048

    listen_handle: Optional[Endpoint] = None
    client_handle: Optional[Endpoint] = None
    client_released: bool = False

    bytes_acknowledged: int = 0
    greeting_complete: bool = False
    idle_polls: int = 0

    done: bool = False
    result_code: Optional[ErrorCode] = None
    phase: LifecycleState = LifecycleState.INIT

    receive_buffer: ReceiveBuffer = field(init=False, repr=False)

    def __post_init__(self):
        self.receive_buffer = ReceiveBuffer(self.buffer_size)

    @property
    def client_status(self) -> ClientStatus:
        if self.client_handle is not None:
            return ClientStatus.HELD
        if self.client_released:
            return ClientStatus.RELEASED
        return ClientStatus.NONE

    @property
    def holds_handles(self) -> bool:
        """True while either endpoint is still owned."""
        return self.listen_handle is not None or self.client_handle is not None

    def adopt_client(self, endpoint: Endpoint):
        """Take ownership of an accepted client endpoint."""
        self.client_handle = endpoint
        self.client_released = False
        self.phase = LifecycleState.CONNECTED

    def release_client(self) -> Optional[Endpoint]:
        """
        Drop the client handle and mark it released.

        Returns the endpoint that was held (None if none was), so the
        caller can close it. After this the state never touches it again.
        """
        endpoint = self.client_handle
        if endpoint is not None:
            self.client_handle = None
            self.client_released = True
            self.receive_buffer.clear()
        return endpoint

    def release_listener(self) -> Optional[Endpoint]:
        """Drop the listen handle; returns what was held."""
        endpoint = self.listen_handle
        self.listen_handle = None
        return endpoint
