"""Enumerations shared across the MCP runtime."""

from __future__ import annotations

from enum import Enum


class EndpointKind(str, Enum):
    """Which side of the protocol an endpoint plays."""

    SERVER = "server"
    CLIENT = "client"

    def __str__(self) -> str:
        return self.value


class CapabilityKind(str, Enum):
    """Kinds of capability a server exposes.

    The value doubles as the JSON-RPC method prefix (``tools/list``,
    ``resources/read`` ...).
    """

    TOOL = "tools"
    RESOURCE = "resources"
    PROMPT = "prompts"

    def __str__(self) -> str:
        return self.value

    @property
    def singular(self) -> str:
        """Human-readable singular name (``tool``, ``resource``, ``prompt``)."""
        return self.value[:-1]

    @property
    def key_field(self) -> str:
        """Schema field that identifies an entry of this kind."""
        return "uri" if self is CapabilityKind.RESOURCE else "name"

    @classmethod
    def parse(cls, value: str | CapabilityKind) -> CapabilityKind:
        """Accept ``tool``, ``tools`` or a member."""
        if isinstance(value, cls):
            return value
        text = str(value).lower()
        for member in cls:
            if text in (member.value, member.singular):
                return member
        raise ValueError(f"Unknown capability kind: {value}")


class ConnectionState(str, Enum):
    """Lifecycle states of a client connection.

    ``disconnected -> connecting -> connected -> closed``, with ``degraded``
    reachable from ``connected`` after a transport error.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


class TransportType(str, Enum):
    """Supported transports."""

    STDIO = "stdio"
    HTTP = "http"
    MEMORY = "memory"

    def __str__(self) -> str:
        return self.value


class BackoffPolicy(str, Enum):
    """Delay growth between timeout retries."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"

    def __str__(self) -> str:
        return self.value
