"""
=============================================================================
ERROR CODES AND EXCEPTIONS
=============================================================================

Every failure in the server maps to a numeric ErrorCode. Exceptions raised
by the transport carry one, and the lifecycle reports one when it ends:

    ┌──────────────────┬──────────────────────────────┬──────────────────┐
    │ Exception        │ Raised when                  │ Default code     │
    ├──────────────────┼──────────────────────────────┼──────────────────┤
    │ AllocationError  │ state/endpoint not created   │ OUT_OF_MEMORY    │
    │ BindError        │ bind() refused               │ ADDRESS_IN_USE   │
    │ ListenError      │ listen() refused             │ CONNECTION       │
    │ AcceptError      │ bad client on accept         │ INVALID          │
    │ WriteError       │ write() refused              │ BUFFER           │
    │ TransportError   │ async transport fault        │ RESET            │
    │ CloseError       │ graceful close failed        │ CLOSED           │
    └──────────────────┴──────────────────────────────┴──────────────────┘

Codes are negative integers so that 0 always means success when a result
is logged.

=============================================================================
"""

import errno
from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    """Numeric result codes reported by the transport and the lifecycle."""
    OK = 0
    OUT_OF_MEMORY = -1
    BUFFER = -2
    TIMEOUT = -3
    INVALID = -6
    ADDRESS_IN_USE = -8
    CONNECTION = -11
    ABORTED = -13
    RESET = -14
    CLOSED = -15
    INTERRUPTED = -20

    @classmethod
    def from_os_error(cls, exc: OSError, default: "ErrorCode") -> "ErrorCode":
        """Map an OSError's errno onto the closest ErrorCode."""
        mapping = {
            errno.EADDRINUSE: cls.ADDRESS_IN_USE,
            errno.EADDRNOTAVAIL: cls.INVALID,
            errno.EACCES: cls.INVALID,
            errno.ENOMEM: cls.OUT_OF_MEMORY,
            errno.ENOBUFS: cls.BUFFER,
            errno.ECONNRESET: cls.RESET,
            errno.EPIPE: cls.RESET,
            errno.ECONNABORTED: cls.ABORTED,
            errno.ENOTCONN: cls.CLOSED,
            errno.ETIMEDOUT: cls.TIMEOUT,
        }
        return mapping.get(exc.errno, default)


def describe(code: int) -> str:
    """Render a code for logs, e.g. "-8 (ADDRESS_IN_USE)"."""
    try:
        return f"{int(code)} ({ErrorCode(code).name})"
    except ValueError:
        return str(int(code))


class ServerError(Exception):
    """
    Base class for every error the server raises.

    Attributes:
        code: The ErrorCode this failure reports through the lifecycle.
    """
    default_code = ErrorCode.INVALID

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.code = code if code is not None else self.default_code


class AllocationError(ServerError):
    """Server state or a transport endpoint could not be allocated."""
    default_code = ErrorCode.OUT_OF_MEMORY


class BindError(ServerError):
    """The endpoint could not be bound to the requested address."""
    default_code = ErrorCode.ADDRESS_IN_USE


class ListenError(ServerError):
    """The bound endpoint could not be put into listening mode."""
    default_code = ErrorCode.CONNECTION


class AcceptError(ServerError):
    """An accept notification carried a failure or no client endpoint."""
    default_code = ErrorCode.INVALID


class WriteError(ServerError):
    """The transport rejected a write (closed endpoint, no buffer space)."""
    default_code = ErrorCode.BUFFER


class TransportError(ServerError):
    """Asynchronous, connection-level transport failure."""
    default_code = ErrorCode.RESET


class CloseError(ServerError):
    """Graceful close failed; callers escalate to abort."""
    default_code = ErrorCode.CLOSED
