"""
Unit tests for error codes, exceptions and transport value types.
"""

import errno

import pytest

from helloserver.core import (
    AcceptError,
    AddressFamily,
    AllocationError,
    BindError,
    CloseError,
    Endpoint,
    ErrorCode,
    ListenError,
    ReceivedPayload,
    ServerError,
    TransportError,
    WriteError,
)
from helloserver.core.errors import describe


class TestErrorCode:
    """Tests for ErrorCode values and helpers."""

    def test_ok_is_zero(self):
        """Test success is 0 and every failure is negative."""
        assert ErrorCode.OK == 0
        assert all(code < 0 for code in ErrorCode if code is not ErrorCode.OK)

    @pytest.mark.parametrize("err,expected", [
        (errno.EADDRINUSE, ErrorCode.ADDRESS_IN_USE),
        (errno.ECONNRESET, ErrorCode.RESET),
        (errno.EPIPE, ErrorCode.RESET),
        (errno.ECONNABORTED, ErrorCode.ABORTED),
        (errno.ENOTCONN, ErrorCode.CLOSED),
        (errno.ETIMEDOUT, ErrorCode.TIMEOUT),
    ])
    def test_from_os_error(self, err, expected):
        """Test errno values map onto the matching code."""
        exc = OSError(err, "boom")

        assert ErrorCode.from_os_error(exc, ErrorCode.CONNECTION) == expected

    def test_from_os_error_default(self):
        """Test unknown errno values fall back to the default."""
        exc = OSError(errno.EPERM, "boom")

        assert ErrorCode.from_os_error(exc, ErrorCode.CONNECTION) == ErrorCode.CONNECTION

    def test_describe(self):
        """Test codes are rendered with their name for logs."""
        assert describe(ErrorCode.ADDRESS_IN_USE) == "-8 (ADDRESS_IN_USE)"
        assert describe(0) == "0 (OK)"
        assert describe(-99) == "-99"


class TestServerErrors:
    """Tests for exception default codes."""

    @pytest.mark.parametrize("exc_type,code", [
        (AllocationError, ErrorCode.OUT_OF_MEMORY),
        (BindError, ErrorCode.ADDRESS_IN_USE),
        (ListenError, ErrorCode.CONNECTION),
        (AcceptError, ErrorCode.INVALID),
        (WriteError, ErrorCode.BUFFER),
        (TransportError, ErrorCode.RESET),
        (CloseError, ErrorCode.CLOSED),
    ])
    def test_default_codes(self, exc_type, code):
        """Test each exception carries its default code."""
        error = exc_type("failed")

        assert isinstance(error, ServerError)
        assert error.code == code
        assert str(error) == "failed"

    def test_explicit_code(self):
        """Test a raised error can carry a more specific code."""
        assert WriteError("closed", ErrorCode.CLOSED).code == ErrorCode.CLOSED


class TestTransportTypes:
    """Tests for AddressFamily and ReceivedPayload."""

    @pytest.mark.parametrize("host,family", [
        ("", AddressFamily.ANY),
        ("127.0.0.1", AddressFamily.IPV4),
        ("0.0.0.0", AddressFamily.IPV4),
        ("::1", AddressFamily.IPV6),
        ("::", AddressFamily.IPV6),
    ])
    def test_family_for_host(self, host, family):
        """Test the bind address picks the address family."""
        assert AddressFamily.for_host(host) is family

    def test_payload_length(self):
        """Test a payload reports its size and starts unreleased."""
        payload = ReceivedPayload(b"hello")

        assert payload.total_length == 5
        assert not payload.released

    def test_endpoint_must_report_is_open(self):
        """Test an Endpoint subclass has to implement is_open."""
        class Incomplete(Endpoint):
            pass

        with pytest.raises(TypeError):
            Incomplete()
