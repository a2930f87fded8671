"""Runtime for hosting and connecting to Model Context Protocol endpoints.

Servers expose tools, resources and prompts from a per-endpoint capability
registry; clients call them over stdio, streamable HTTP or an in-process
transport. Every failure surfaces as an ``McpException``.
"""

from mcp_runtime.capabilities import Capability, Prompt, Resource, Tool, prompt, resource, tool
from mcp_runtime.client import McpClient
from mcp_runtime.config.settings import (
    CapabilitiesConfig,
    ClientEndpointConfig,
    RuntimeSettings,
    ServerEndpointConfig,
)
from mcp_runtime.enums import CapabilityKind, ConnectionState, EndpointKind, TransportType
from mcp_runtime.events import Event, EventEmitter, LifecycleEvent
from mcp_runtime.exceptions import ErrorKind, McpException
from mcp_runtime.manager import ClientManager, ServerManager
from mcp_runtime.roots import Root, RootStore
from mcp_runtime.runtime import McpRuntime
from mcp_runtime.server import McpServer

__version__ = "0.1.0"

__all__ = [
    "CapabilitiesConfig",
    "Capability",
    "CapabilityKind",
    "ClientEndpointConfig",
    "ClientManager",
    "ConnectionState",
    "EndpointKind",
    "ErrorKind",
    "Event",
    "EventEmitter",
    "LifecycleEvent",
    "McpClient",
    "McpException",
    "McpRuntime",
    "McpServer",
    "Prompt",
    "Resource",
    "Root",
    "RootStore",
    "RuntimeSettings",
    "ServerEndpointConfig",
    "ServerManager",
    "Tool",
    "TransportType",
    "prompt",
    "resource",
    "tool",
]
