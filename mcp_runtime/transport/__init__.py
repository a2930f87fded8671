"""Transports and the factory that builds them from configuration."""

from __future__ import annotations

from mcp_runtime.config.settings import TransportConfig
from mcp_runtime.enums import TransportType
from mcp_runtime.exceptions import ConfigurationError
from mcp_runtime.transport.base import BaseTransport, CloseHandler, MessageHandler, Transport
from mcp_runtime.transport.http import HttpTransport
from mcp_runtime.transport.memory import MemoryTransport
from mcp_runtime.transport.stdio import StdioServerTransport, StdioTransport

__all__ = [
    "BaseTransport",
    "CloseHandler",
    "HttpTransport",
    "MemoryTransport",
    "MessageHandler",
    "StdioServerTransport",
    "StdioTransport",
    "Transport",
    "create_server_transport",
    "create_transport",
]


def create_transport(config: TransportConfig, *, timeout: float = 30.0) -> Transport:
    """Build a client transport for ``config``.

    The transport type is detected from the target when not given.

    Raises:
        ConfigurationError: If the target is missing or the type cannot be
            built from configuration alone (``memory`` needs an in-process
            server and is linked by the runtime).
    """
    transport_type = config.resolved_type()

    if transport_type is TransportType.HTTP:
        if not config.target:
            raise ConfigurationError("HTTP transport requires a target URL")
        return HttpTransport(config.target, headers=dict(config.headers), timeout=timeout)

    if transport_type is TransportType.STDIO:
        if not config.target:
            raise ConfigurationError("Stdio transport requires a target command")
        return StdioTransport(config.target, list(config.args), env=dict(config.env))

    raise ConfigurationError(f"Transport type '{transport_type}' cannot be created from configuration")


def create_server_transport(config: TransportConfig) -> Transport:
    """Build the listening side of a server endpoint.

    Only stdio is served directly; HTTP serving is left to an external
    web framework.

    Raises:
        ConfigurationError: For any other transport type.
    """
    transport_type = config.type or TransportType.STDIO
    if transport_type is TransportType.STDIO:
        return StdioServerTransport()
    raise ConfigurationError(f"Server transport '{transport_type}' is not supported")
