"""Endpoint managers: named registries of servers and clients.

A manager is the single owner of its name -> endpoint map. Endpoints are
created explicitly with ``create`` or lazily by ``get`` when the name is
configured in settings. Capability and call operations are delegated to the
named endpoint.

Example:
    Managing servers::

        servers = ServerManager(settings.servers, default=settings.default_server)
        servers.create("docs")
        servers.add_tool("docs", "search", search_handler, {"description": "Search"})
        servers.get_tools("docs")   # [{"name": "search", ...}]
        servers.remove_tool("docs", "search")
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Generic, TypeVar, cast

import structlog

from mcp_runtime.client import McpClient, TransportFactory
from mcp_runtime.config.settings import (
    CapabilitiesConfig,
    ClientEndpointConfig,
    EndpointConfig,
    ServerEndpointConfig,
    merge_config,
)
from mcp_runtime.endpoint import Endpoint
from mcp_runtime.enums import CapabilityKind, EndpointKind
from mcp_runtime.events import EventEmitter
from mcp_runtime.exceptions import (
    DuplicateEndpointError,
    EndpointNotFoundError,
    McpException,
    NoDefaultEndpointError,
)
from mcp_runtime.progress import Progress, ProgressToken
from mcp_runtime.registry import DiscoveryReport, RegistrationOutcome
from mcp_runtime.roots import Root
from mcp_runtime.server import McpServer, ServerSession
from mcp_runtime.transport import Transport

log = structlog.get_logger(__name__)

E = TypeVar("E", bound=Endpoint)


class EndpointManager(ABC, Generic[E]):
    """Lifecycle and lookup for named endpoints of one kind.

    Args:
        configured: Endpoint configurations from settings, by name.
        default: Name used when an operation is called without one.
        events: Emitter shared by every endpoint of this manager.
    """

    kind: EndpointKind
    config_model: type[EndpointConfig]

    def __init__(
        self,
        configured: Mapping[str, EndpointConfig] | None = None,
        *,
        default: str | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.default = default
        self.events = events or EventEmitter()
        self._configured: dict[str, EndpointConfig] = dict(configured or {})
        self._endpoints: dict[str, E] = {}
        self._lock = threading.RLock()

    @abstractmethod
    def _build(self, name: str, config: EndpointConfig) -> E: ...

    # === Lookup ===

    def resolve_name(self, name: str | None = None) -> str:
        """Return ``name`` or the configured default.

        Raises:
            NoDefaultEndpointError: If no name is given and no default is set.
        """
        if name:
            return name
        if not self.default:
            raise NoDefaultEndpointError(f"No {self.kind.value} name given and no default {self.kind.value} configured")
        return self.default

    def create(self, name: str, config: EndpointConfig | Mapping[str, Any] | None = None) -> E:
        """Create an endpoint from its configured settings merged with ``config``.

        Raises:
            DuplicateEndpointError: If ``name`` already exists.
            ConfigurationError: If the merged configuration is invalid.
        """
        with self._lock:
            if name in self._endpoints:
                raise DuplicateEndpointError(f"{self.kind.value.capitalize()} '{name}' already exists", endpoint=name)
            merged = merge_config(self.config_model, self._configured.get(name), config)
            endpoint = self._build(name, merged)
            self._endpoints[name] = endpoint
        log.info("endpoint_created", endpoint=name, endpoint_kind=self.kind.value)
        return endpoint

    def get(self, name: str | None = None) -> E:
        """Return the named (or default) endpoint, creating it if only configured.

        Raises:
            NoDefaultEndpointError: No name given and no default configured.
            EndpointNotFoundError: The name is neither created nor configured.
        """
        resolved = self.resolve_name(name)
        with self._lock:
            endpoint = self._endpoints.get(resolved)
            if endpoint is not None:
                return endpoint
            if resolved in self._configured:
                return self.create(resolved)
        raise EndpointNotFoundError(f"{self.kind.value.capitalize()} '{resolved}' not found", endpoint=resolved)

    def list(self) -> list[str]:
        """Names of created endpoints, in creation order."""
        with self._lock:
            return list(self._endpoints)

    def configured(self) -> list[str]:
        """Names available from settings, created or not."""
        return list(self._configured)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._endpoints

    def is_running(self, name: str | None = None) -> bool:
        """Whether the endpoint is running; False for unknown names."""
        with self._lock:
            endpoint = self._endpoints.get(name or self.default or "")
        return endpoint is not None and endpoint.is_running

    def get_status(self, name: str | None = None) -> dict[str, Any]:
        """Status of one endpoint.

        Raises:
            EndpointNotFoundError: If the endpoint was not created.
        """
        resolved = self.resolve_name(name)
        with self._lock:
            endpoint = self._endpoints.get(resolved)
        if endpoint is None:
            raise EndpointNotFoundError(f"{self.kind.value.capitalize()} '{resolved}' not found", endpoint=resolved)
        return endpoint.status()

    def all_status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            endpoints = list(self._endpoints.values())
        return {endpoint.name: endpoint.status() for endpoint in endpoints}

    # === Lifecycle ===

    async def start(self, name: str | None = None, transport: Transport | None = None) -> E:
        endpoint = self.get(name)
        await endpoint.start(transport)
        return endpoint

    async def stop(self, name: str | None = None) -> None:
        """Stop an endpoint. Stopping a stopped or never-created endpoint is a no-op.

        Raises:
            EndpointNotFoundError: If the name is neither created nor configured.
        """
        resolved = self.resolve_name(name)
        with self._lock:
            endpoint = self._endpoints.get(resolved)
            configured = resolved in self._configured
        if endpoint is None:
            if configured:
                return
            raise EndpointNotFoundError(f"{self.kind.value.capitalize()} '{resolved}' not found", endpoint=resolved)
        await endpoint.stop()

    async def restart(self, name: str | None = None, transport: Transport | None = None) -> E:
        endpoint = self.get(name)
        await endpoint.restart(transport)
        return endpoint

    async def remove(self, name: str) -> bool:
        """Stop and forget an endpoint. Returns False if it did not exist."""
        with self._lock:
            endpoint = self._endpoints.pop(name, None)
        if endpoint is None:
            return False
        await endpoint.stop()
        log.info("endpoint_removed", endpoint=name, endpoint_kind=self.kind.value)
        return True

    async def stop_all(self) -> None:
        """Stop every endpoint; one failure does not keep the others running."""
        with self._lock:
            endpoints = list(self._endpoints.values())
        for endpoint in endpoints:
            try:
                await endpoint.stop()
            except McpException as e:
                log.error("endpoint_stop_failed", endpoint=endpoint.name, error=e.message)

    # === Protocol capabilities ===

    def get_capabilities(self, name: str | None = None) -> CapabilitiesConfig | dict[str, Any]:
        return self.get(name).get_capabilities()

    def set_capabilities(
        self, name: str | None, capabilities: CapabilitiesConfig | Mapping[str, Any]
    ) -> CapabilitiesConfig | dict[str, Any]:
        """Replace capability flags; applied at the endpoint's next negotiation."""
        return self.get(name).set_capabilities(capabilities)


class ServerManager(EndpointManager[McpServer]):
    """Named MCP servers and their capability registries."""

    kind = EndpointKind.SERVER
    config_model = ServerEndpointConfig

    def _build(self, name: str, config: EndpointConfig) -> McpServer:
        return McpServer(name, cast(ServerEndpointConfig, config), events=self.events)

    async def attach(self, name: str | None, transport: Transport) -> ServerSession:
        return await self.get(name).attach(transport)

    # === Capability delegation ===

    def _add(self, kind: CapabilityKind, server: str | None, name: str, handler: Any, schema: Mapping[str, Any] | None) -> dict[str, Any]:
        return self.get(server).registry.for_kind(kind).add(name, handler, schema).describe()

    def add_tool(self, server: str | None, name: str, handler: Any, schema: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Register a tool and return its advertised descriptor."""
        return self._add(CapabilityKind.TOOL, server, name, handler, schema)

    def add_resource(self, server: str | None, uri: str, handler: Any, schema: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return self._add(CapabilityKind.RESOURCE, server, uri, handler, schema)

    def add_prompt(self, server: str | None, name: str, handler: Any, schema: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return self._add(CapabilityKind.PROMPT, server, name, handler, schema)

    def remove_tool(self, server: str | None, name: str) -> bool:
        return self.get(server).tools.remove(name)

    def remove_resource(self, server: str | None, uri: str) -> bool:
        return self.get(server).resources.remove(uri)

    def remove_prompt(self, server: str | None, name: str) -> bool:
        return self.get(server).prompts.remove(name)

    def get_tools(self, server: str | None = None) -> list[dict[str, Any]]:
        return self.get(server).tools.list()

    def get_resources(self, server: str | None = None) -> list[dict[str, Any]]:
        return self.get(server).resources.list()

    def get_prompts(self, server: str | None = None) -> list[dict[str, Any]]:
        return self.get(server).prompts.list()

    def discover(
        self,
        server: str | None = None,
        locations: Iterable[str] | None = None,
        *,
        kinds: Iterable[CapabilityKind] | None = None,
    ) -> DiscoveryReport:
        """Discover capabilities into a server.

        Without ``locations``, every configured discovery location is used.
        """
        endpoint = self.get(server)
        if locations is None:
            return endpoint.run_discovery()
        return endpoint.registry.discover(locations, kinds=kinds)

    def register_batch(self, server: str | None, components: Iterable[Any]) -> list[RegistrationOutcome]:
        return self.get(server).registry.register_batch(components)


class ClientManager(EndpointManager[McpClient]):
    """Named MCP clients and the calls made through them.

    Args:
        transport_factory: Builds client transports; defaults to the
            configuration-based factory.
    """

    kind = EndpointKind.CLIENT
    config_model = ClientEndpointConfig

    def __init__(
        self,
        configured: Mapping[str, EndpointConfig] | None = None,
        *,
        default: str | None = None,
        events: EventEmitter | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        super().__init__(configured, default=default, events=events)
        self.transport_factory = transport_factory

    def _build(self, name: str, config: EndpointConfig) -> McpClient:
        return McpClient(
            name, cast(ClientEndpointConfig, config), events=self.events, transport_factory=self.transport_factory
        )

    # === Call delegation ===

    async def call_tool(
        self, client: str | None, name: str, arguments: Mapping[str, Any] | None = None, *, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self.get(client).call_tool(name, arguments, timeout=timeout)

    async def read_resource(self, client: str | None, uri: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self.get(client).read_resource(uri, timeout=timeout)

    async def get_prompt(
        self, client: str | None, name: str, arguments: Mapping[str, Any] | None = None, *, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self.get(client).get_prompt(name, arguments, timeout=timeout)

    async def list_tools(self, client: str | None = None) -> list[dict[str, Any]]:
        return await self.get(client).list_tools()

    async def list_resources(self, client: str | None = None) -> list[dict[str, Any]]:
        return await self.get(client).list_resources()

    async def list_prompts(self, client: str | None = None) -> list[dict[str, Any]]:
        return await self.get(client).list_prompts()

    async def ping(self, client: str | None = None) -> float:
        return await self.get(client).ping()

    async def complete_text(self, client: str | None, text: str, **options: Any) -> dict[str, Any]:
        return await self.get(client).complete_text(text, **options)

    # === Cancellation and progress ===

    def cancel(self, client: str | None, request_id: int, reason: str = "cancelled by client") -> bool:
        return self.get(client).cancel(request_id, reason)

    def get_progress(self, client: str | None, token: ProgressToken) -> Progress | None:
        return self.get(client).get_progress(token)

    # === Roots ===

    def add_root(self, client: str | None, uri: str, name: str | None = None, metadata: Mapping[str, Any] | None = None) -> Root:
        return self.get(client).add_root(uri, name, metadata)

    def remove_root(self, client: str | None, uri: str) -> bool:
        return self.get(client).remove_root(uri)

    def get_roots(self, client: str | None = None) -> list[Root]:
        return self.get(client).get_roots()

    # === Diagnostics ===

    async def test_connection(
        self,
        target: str,
        transport: str | None = None,
        args: Iterable[str] | None = None,
        *,
        timeout: float = 10.0,
        factory: Callable[[McpClient], Any] | None = None,
    ) -> dict[str, Any]:
        """Connect to ``target`` once and report what the server offers.

        Never raises for connection problems; they are reported in the
        returned dict under ``error``.
        """
        try:
            config = ClientEndpointConfig.model_validate(
                {
                    "timeout": int(timeout * 1000),
                    "transport": {"target": target, "type": transport, "args": list(args or [])},
                }
            )
        except ValueError as e:
            return {"success": False, "target": target, "error": str(e), "error_kind": "ConfigurationError"}

        trial = McpClient(
            f"test:{target}",
            config,
            events=self.events,
            transport_factory=factory or self.transport_factory,
        )
        report: dict[str, Any] = {"target": target, "transport": config.transport.resolved_type().value}
        started = time.monotonic()
        try:
            await trial.start()
            tools = await trial.list_tools()
            report.update(
                success=True,
                server_info=trial.server_info,
                protocol_version=trial.protocol_version,
                server_capabilities=trial.server_capabilities,
                tools=[tool.get("name") for tool in tools],
                response_time=round((time.monotonic() - started) * 1000, 3),
            )
        except McpException as e:
            report.update(success=False, error=e.message, error_kind=e.kind.value)
        finally:
            await trial.stop()
        return report
