"""Process-level MCP runtime.

``McpRuntime`` replaces global lookups with one explicitly constructed
object that owns the server and client managers, a shared event emitter and
the settings they were built from. Construct it once, pass it to whatever
needs it, and call ``shutdown`` (or use it as an async context manager) on
teardown.

Example:
    >>> async with McpRuntime(RuntimeSettings.from_yaml("mcp.yaml")) as runtime:
    ...     await runtime.servers.start("docs")
    ...     await runtime.clients.start("local")          # memory transport to "docs"
    ...     await runtime.clients.call_tool("local", "search", {"q": "retry"})
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from mcp_runtime.client import McpClient
from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.enums import TransportType
from mcp_runtime.events import EventEmitter
from mcp_runtime.exceptions import ConfigurationError, McpException
from mcp_runtime.manager import ClientManager, ServerManager
from mcp_runtime.transport import MemoryTransport, Transport, create_transport

log = structlog.get_logger(__name__)


class McpRuntime:
    """Owns every server and client endpoint of the process.

    Args:
        settings: Runtime settings; defaults are used when omitted.
        events: Event emitter shared by every endpoint.
    """

    def __init__(self, settings: RuntimeSettings | None = None, *, events: EventEmitter | None = None) -> None:
        self.settings = settings or RuntimeSettings()
        self.events = events or EventEmitter()
        self.created_at = datetime.now(timezone.utc)
        self.servers = ServerManager(
            self.settings.servers,
            default=self.settings.default_server,
            events=self.events,
        )
        self.clients = ClientManager(
            self.settings.clients,
            default=self.settings.default_client,
            events=self.events,
            transport_factory=self.client_transport,
        )

    async def __aenter__(self) -> McpRuntime:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.shutdown()

    async def client_transport(self, client: McpClient) -> Transport:
        """Build a client's transport, linking ``memory`` clients to local servers.

        A memory client's ``transport.target`` names the server; the default
        server is used when it is empty.

        Raises:
            ConfigurationError: If the transport cannot be built.
            EndpointNotFoundError: If a memory client names an unknown server.
        """
        config = client.config.transport
        if config.resolved_type() is not TransportType.MEMORY:
            return create_transport(config, timeout=client.config.timeout_seconds)

        server = self.servers.get(config.target)
        if not server.is_running:
            raise ConfigurationError(
                f"Server '{server.name}' must be running before client '{client.name}' can connect",
                endpoint=client.name,
            )
        client_side, server_side = MemoryTransport.create_pair(f"{client.name}->{server.name}")
        await server.attach(server_side)
        return client_side

    # === Status ===

    def system_status(self) -> dict[str, Any]:
        servers = self.servers.all_status()
        clients = self.clients.all_status()
        return {
            "created_at": self.created_at.isoformat(),
            "uptime": (datetime.now(timezone.utc) - self.created_at).total_seconds(),
            "servers": {
                "total": len(servers),
                "running": sum(1 for status in servers.values() if status["running"]),
                "endpoints": servers,
            },
            "clients": {
                "total": len(clients),
                "connected": sum(1 for status in clients.values() if status["connected"]),
                "endpoints": clients,
            },
        }

    async def health_check(self) -> dict[str, Any]:
        """Ping every connected client; failures are reported per client."""
        clients: dict[str, Any] = {}
        for name in self.clients.list():
            client = self.clients.get(name)
            if not client.is_running:
                clients[name] = {"healthy": False, "state": client.state.value}
                continue
            try:
                latency = await client.ping()
            except McpException as e:
                log.warning("health_check_failed", endpoint=name, error=e.message)
                clients[name] = {"healthy": False, "state": client.state.value, "error": e.message}
            else:
                clients[name] = {"healthy": True, "state": client.state.value, "latency_ms": latency}

        servers = {name: {"healthy": self.servers.is_running(name)} for name in self.servers.list()}
        return {
            "healthy": all(entry["healthy"] for entry in clients.values()),
            "servers": servers,
            "clients": clients,
        }

    async def shutdown(self) -> None:
        """Stop clients first, then servers."""
        log.info("runtime_shutdown", servers=len(self.servers.list()), clients=len(self.clients.list()))
        await self.clients.stop_all()
        await self.servers.stop_all()
