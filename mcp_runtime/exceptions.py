"""Exception hierarchy for the MCP runtime.

Every public operation either returns a typed value or raises one
``McpException``. Each subclass carries a machine-readable ``kind`` so callers
can branch on the failure without importing every class, and the low-level
cause is preserved both as ``cause`` and as ``__cause__``.

Exception Hierarchy:
    McpException (base)
    ├── ConfigurationError - Invalid or unsupported configuration
    ├── DuplicateEndpointError - Endpoint name already taken
    ├── EndpointNotFoundError - Endpoint name does not resolve
    ├── NoDefaultEndpointError - No name given and no default configured
    ├── DuplicateCapabilityError - Capability name already registered
    ├── InvalidCapabilityError - Capability failed validation
    ├── CapabilityNotFoundError - Peer asked for an unknown capability
    ├── ClientNotConnectedError - Call issued while not connected
    ├── ConnectionFailedError - Transport open or handshake failed
    ├── ConnectionClosedError - Transport dropped while requests were pending
    ├── McpTimeoutError - Request deadline elapsed
    ├── RequestCancelledError - Request withdrawn by the caller
    └── ProtocolError - Malformed or peer-reported error response

Example:
    >>> from mcp_runtime.exceptions import ErrorKind, McpException
    >>> try:
    ...     await clients.call_tool("c1", "search", {"q": "x"})
    ... except McpException as e:
    ...     if e.kind is ErrorKind.TIMEOUT:
    ...         ...
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable error kinds carried by every ``McpException``."""

    MCP_ERROR = "McpError"
    CONFIGURATION = "ConfigurationError"
    DUPLICATE_ENDPOINT = "DuplicateEndpointError"
    ENDPOINT_NOT_FOUND = "EndpointNotFoundError"
    NO_DEFAULT_ENDPOINT = "NoDefaultEndpointError"
    DUPLICATE_CAPABILITY = "DuplicateCapabilityError"
    INVALID_CAPABILITY = "InvalidCapabilityError"
    CAPABILITY_NOT_FOUND = "CapabilityNotFoundError"
    CLIENT_NOT_CONNECTED = "ClientNotConnectedError"
    CONNECTION_FAILED = "ConnectionFailedError"
    CONNECTION_CLOSED = "ConnectionClosedError"
    TIMEOUT = "TimeoutError"
    CANCELLED = "RequestCancelledError"
    PROTOCOL = "ProtocolError"

    def __str__(self) -> str:
        return self.value


class McpException(Exception):
    """Base exception for all MCP runtime errors.

    Attributes:
        message: Human-readable error description.
        kind: Machine-readable error kind.
        cause: The original low-level exception, if any.
        endpoint: Name of the endpoint involved, if known.
    """

    kind: ErrorKind = ErrorKind.MCP_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        cause: BaseException | None = None,
        endpoint: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            kind: Overrides the class-level kind
            cause: Original exception that triggered this one
            endpoint: Endpoint name for context
        """
        self.message = message
        if kind is not None:
            self.kind = kind
        self.cause = cause
        self.endpoint = endpoint
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for JSON output."""
        return {
            "error": True,
            "error_code": self.kind.value,
            "message": self.message,
            "endpoint": self.endpoint,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ConfigurationError(McpException):
    """Configuration file or option is invalid or unsupported."""

    kind = ErrorKind.CONFIGURATION


class DuplicateEndpointError(McpException):
    """An endpoint with this name already exists."""

    kind = ErrorKind.DUPLICATE_ENDPOINT


class EndpointNotFoundError(McpException):
    """No endpoint is registered or configured under this name."""

    kind = ErrorKind.ENDPOINT_NOT_FOUND


class NoDefaultEndpointError(McpException):
    """Name omitted and no default endpoint is configured."""

    kind = ErrorKind.NO_DEFAULT_ENDPOINT


class DuplicateCapabilityError(McpException):
    """Capability name already registered for this endpoint and kind."""

    kind = ErrorKind.DUPLICATE_CAPABILITY


class InvalidCapabilityError(McpException):
    """Capability name, handler or schema failed validation."""

    kind = ErrorKind.INVALID_CAPABILITY


class CapabilityNotFoundError(McpException):
    """Requested tool, resource or prompt is not registered."""

    kind = ErrorKind.CAPABILITY_NOT_FOUND


class ClientNotConnectedError(McpException):
    """Call issued on a client whose connection is not ``connected``."""

    kind = ErrorKind.CLIENT_NOT_CONNECTED


class ConnectionFailedError(McpException):
    """Transport could not be opened or the handshake failed."""

    kind = ErrorKind.CONNECTION_FAILED


class ConnectionClosedError(McpException):
    """Connection dropped or was closed while the request was pending."""

    kind = ErrorKind.CONNECTION_CLOSED


class McpTimeoutError(McpException):
    """Request deadline elapsed before a response arrived.

    Named to avoid shadowing the builtin ``TimeoutError``; its kind is
    ``ErrorKind.TIMEOUT``.
    """

    kind = ErrorKind.TIMEOUT


class RequestCancelledError(McpException):
    """The caller withdrew the request before a response arrived."""

    kind = ErrorKind.CANCELLED


class ProtocolError(McpException):
    """Malformed response or error reported by the peer.

    Attributes:
        code: JSON-RPC error code, if the peer sent one.
        data: Optional ``data`` member of the JSON-RPC error.
    """

    kind = ErrorKind.PROTOCOL

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
        cause: BaseException | None = None,
        endpoint: str | None = None,
    ) -> None:
        self.code = code
        self.data = data
        super().__init__(message, cause=cause, endpoint=endpoint)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["code"] = self.code
        return result
