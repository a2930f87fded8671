"""Tests for mcp_runtime.exceptions."""

from __future__ import annotations

import pytest

from mcp_runtime.exceptions import (
    CapabilityNotFoundError,
    ClientNotConnectedError,
    ConfigurationError,
    ConnectionClosedError,
    ConnectionFailedError,
    DuplicateCapabilityError,
    DuplicateEndpointError,
    EndpointNotFoundError,
    ErrorKind,
    InvalidCapabilityError,
    McpException,
    McpTimeoutError,
    NoDefaultEndpointError,
    ProtocolError,
    RequestCancelledError,
)

ALL_ERRORS = [
    (ConfigurationError, ErrorKind.CONFIGURATION),
    (DuplicateEndpointError, ErrorKind.DUPLICATE_ENDPOINT),
    (EndpointNotFoundError, ErrorKind.ENDPOINT_NOT_FOUND),
    (NoDefaultEndpointError, ErrorKind.NO_DEFAULT_ENDPOINT),
    (DuplicateCapabilityError, ErrorKind.DUPLICATE_CAPABILITY),
    (InvalidCapabilityError, ErrorKind.INVALID_CAPABILITY),
    (CapabilityNotFoundError, ErrorKind.CAPABILITY_NOT_FOUND),
    (ClientNotConnectedError, ErrorKind.CLIENT_NOT_CONNECTED),
    (ConnectionFailedError, ErrorKind.CONNECTION_FAILED),
    (ConnectionClosedError, ErrorKind.CONNECTION_CLOSED),
    (McpTimeoutError, ErrorKind.TIMEOUT),
    (RequestCancelledError, ErrorKind.CANCELLED),
    (ProtocolError, ErrorKind.PROTOCOL),
]


class TestMcpException:
    """Tests for the base exception."""

    def test_message_and_default_kind(self) -> None:
        """Base exception should expose its message and the generic kind."""
        error = McpException("something broke")
        assert error.message == "something broke"
        assert str(error) == "something broke"
        assert error.kind is ErrorKind.MCP_ERROR

    def test_cause_is_preserved(self) -> None:
        """The low-level cause should be kept as cause and __cause__."""
        cause = OSError("pipe closed")
        error = McpException("send failed", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_kind_override(self) -> None:
        """An explicit kind should override the class default."""
        error = McpException("late", kind=ErrorKind.TIMEOUT)
        assert error.kind is ErrorKind.TIMEOUT

    def test_to_dict(self) -> None:
        """to_dict should serialize kind, message and endpoint."""
        error = ConnectionClosedError("gone", endpoint="c1", cause=OSError("eof"))
        data = error.to_dict()
        assert data["error"] is True
        assert data["error_code"] == "ConnectionClosedError"
        assert data["message"] == "gone"
        assert data["endpoint"] == "c1"
        assert "eof" in data["cause"]


class TestErrorTaxonomy:
    """Every specialized error is an McpException with its own kind."""

    @pytest.mark.parametrize(("error_class", "kind"), ALL_ERRORS)
    def test_kind_and_base_class(self, error_class: type[McpException], kind: ErrorKind) -> None:
        """Each subclass should carry its kind and be catchable as McpException."""
        error = error_class("test")
        assert isinstance(error, McpException)
        assert error.kind is kind

    def test_kinds_are_unique(self) -> None:
        """No two error classes should share a kind."""
        kinds = [kind for _, kind in ALL_ERRORS]
        assert len(kinds) == len(set(kinds))

    def test_timeout_kind_value(self) -> None:
        """Timeout errors report the kind name TimeoutError."""
        assert McpTimeoutError("late").kind.value == "TimeoutError"


class TestProtocolError:
    """Tests for ProtocolError."""

    def test_code_and_data(self) -> None:
        """ProtocolError should carry the JSON-RPC code and data."""
        error = ProtocolError("bad params", code=-32602, data={"field": "q"})
        assert error.code == -32602
        assert error.data == {"field": "q"}
        assert error.to_dict()["code"] == -32602
