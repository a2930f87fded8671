"""MCP client endpoint.

A client owns one ``Connection`` at a time. ``start`` builds a fresh
connection, negotiates capabilities with the server and leaves the
connection ``connected``; every operation then goes through the
``ResilientCallEngine``. After a transport failure the connection is
``degraded`` and calls fail with ``ClientNotConnectedError`` until the
client is started again.

Example:
    >>> client = McpClient("fetch", ClientEndpointConfig(transport={"target": "uvx"}))
    >>> await client.start()
    >>> tools = await client.list_tools()
    >>> result = await client.call_tool("fetch", {"url": "https://example.com"})
    >>> await client.stop()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from mcp_runtime import protocol
from mcp_runtime.config.settings import ClientEndpointConfig
from mcp_runtime.connection import Connection
from mcp_runtime.endpoint import Endpoint
from mcp_runtime.engine import CallStats, ResilientCallEngine
from mcp_runtime.enums import ConnectionState, EndpointKind
from mcp_runtime.events import EventEmitter, LifecycleEvent
from mcp_runtime.exceptions import ClientNotConnectedError, ConnectionFailedError, McpException, ProtocolError
from mcp_runtime.progress import Progress, ProgressStore, ProgressToken
from mcp_runtime.protocol import Method
from mcp_runtime.roots import Root, RootStore
from mcp_runtime.transport import Transport, create_transport

log = structlog.get_logger(__name__)

TransportFactory = Callable[["McpClient"], "Transport | Awaitable[Transport]"]

# Guards against a server that never stops returning cursors
MAX_PAGES = 100


def default_transport_factory(client: McpClient) -> Transport:
    return create_transport(client.config.transport, timeout=client.config.timeout_seconds)


class McpClient(Endpoint):
    """Client endpoint bound to one MCP server.

    Args:
        name: Endpoint name.
        config: Merged client configuration.
        events: Lifecycle event emitter.
        transport_factory: Builds the transport when ``start`` is called
            without an explicit one.
    """

    kind = EndpointKind.CLIENT

    def __init__(
        self,
        name: str,
        config: ClientEndpointConfig | None = None,
        *,
        events: EventEmitter | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        super().__init__(name, config or ClientEndpointConfig(), events=events)
        self.config: ClientEndpointConfig
        self._transport_factory = transport_factory or default_transport_factory
        self.connection: Connection | None = None
        self.engine: ResilientCallEngine | None = None
        self.stats = CallStats()
        self.roots = RootStore(on_change=self._roots_changed)
        self.progress = ProgressStore()
        self.server_info: dict[str, Any] = {}
        self.server_capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None
        self.last_ping: datetime | None = None

    @property
    def state(self) -> ConnectionState:
        return self.connection.state if self.connection is not None else ConnectionState.DISCONNECTED

    @property
    def is_running(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    # === Lifecycle ===

    async def start(self, transport: Transport | None = None) -> None:
        """Connect and negotiate. A no-op if already connected.

        Args:
            transport: Use this transport instead of the configured one.

        Raises:
            ConfigurationError: If no transport can be built from configuration.
            ConnectionFailedError: If the transport cannot be opened or the
                handshake fails. The new connection is then ``closed``.
        """
        async with self.lifecycle_lock:
            if self.is_running:
                log.debug("client_already_running", endpoint=self.name)
                return
            if self.connection is not None:
                await self.connection.close()

            if transport is None:
                built = self._transport_factory(self)
                transport = await built if inspect.isawaitable(built) else built
            connection = Connection(
                self.name,
                transport,
                events=self.events,
                request_handler=self._handle_request,
                notification_handler=self._handle_notification,
                timeout=self.config.timeout_seconds,
            )
            engine = ResilientCallEngine(connection, retry=self.config.retry, stats=self.stats)
            self.connection = connection
            self.engine = engine

            await connection.open()
            try:
                await self._handshake(connection, engine)
            except McpException as e:
                await connection.close()
                log.error("client_handshake_failed", endpoint=self.name, error=e.message)
                raise ConnectionFailedError(
                    f"Handshake with server for '{self.name}' failed: {e.message}", cause=e, endpoint=self.name
                ) from e

            self.started_at = datetime.now(timezone.utc)
            self.events.emit(
                LifecycleEvent.ENDPOINT_STARTED,
                self.name,
                endpoint_kind=self.kind.value,
                server=self.server_info.get("name"),
                protocol_version=self.protocol_version,
            )

    async def _handshake(self, connection: Connection, engine: ResilientCallEngine) -> None:
        result = await engine.call(
            Method.INITIALIZE,
            {
                "protocolVersion": protocol.PROTOCOL_VERSION,
                "capabilities": self.capabilities.to_protocol(),
                "clientInfo": {"name": self.display_name, "version": self.config.version},
            },
            retry=False,
            allow_handshake=True,
        )
        if not isinstance(result.get("capabilities", {}), dict):
            raise ProtocolError("Malformed initialize result: 'capabilities' is not an object")
        self.protocol_version = result.get("protocolVersion")
        self.server_capabilities = dict(result.get("capabilities") or {})
        self.server_info = dict(result.get("serverInfo") or {})

        connection.mark_connected()
        await connection.notify(Method.INITIALIZED)

    async def stop(self) -> None:
        """Close the connection. Stopping a stopped client is a no-op."""
        async with self.lifecycle_lock:
            connection = self.connection
            if connection is None or connection.state is ConnectionState.CLOSED:
                return
            was_started = connection.state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED)
            await connection.close()
            if was_started:
                self.events.emit(LifecycleEvent.ENDPOINT_STOPPED, self.name, endpoint_kind=self.kind.value)

    # === Operations ===

    async def _call(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> dict[str, Any]:
        if self.engine is None:
            raise ClientNotConnectedError(f"Client '{self.name}' has not been started", endpoint=self.name)
        return await self.engine.call(method, params, timeout=timeout)

    async def call_tool(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        progress_token: ProgressToken | None = None,
    ) -> dict[str, Any]:
        """Call a tool on the server and return its ``CallToolResult``.

        Args:
            name: Tool name.
            arguments: Tool arguments.
            timeout: Per-call timeout in seconds.
            progress_token: Ask the server to report progress under this
                token; reports are readable through ``get_progress``.
        """
        params: dict[str, Any] = {"name": name, "arguments": dict(arguments or {})}
        if progress_token is not None:
            params["_meta"] = {"progressToken": progress_token}
        return await self._call(Method.TOOLS_CALL, params, timeout)

    async def read_resource(self, uri: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._call(Method.RESOURCES_READ, {"uri": uri}, timeout)

    async def get_prompt(
        self, name: str, arguments: Mapping[str, Any] | None = None, *, timeout: float | None = None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = {key: str(value) for key, value in arguments.items()}
        return await self._call(Method.PROMPTS_GET, params, timeout)

    async def list_tools(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        return await self._list(Method.TOOLS_LIST, "tools", timeout)

    async def list_resources(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        return await self._list(Method.RESOURCES_LIST, "resources", timeout)

    async def list_prompts(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        return await self._list(Method.PROMPTS_LIST, "prompts", timeout)

    async def _list(self, method: str, key: str, timeout: float | None) -> list[dict[str, Any]]:
        """Collect every page of a list method by following ``nextCursor``."""
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(MAX_PAGES):
            result = await self._call(method, {"cursor": cursor} if cursor else None, timeout)
            page = result.get(key, [])
            if not isinstance(page, list):
                raise ProtocolError(f"Malformed '{method}' result: '{key}' is not a list", endpoint=self.name)
            items.extend(page)
            cursor = result.get("nextCursor")
            if not cursor:
                return items
        log.warning("pagination_limit_reached", endpoint=self.name, method=method, pages=MAX_PAGES)
        return items

    async def ping(self, *, timeout: float | None = None) -> float:
        """Ping the server and return the round trip in milliseconds."""
        await self._call(Method.PING, None, timeout)
        self.last_ping = datetime.now(timezone.utc)
        return self.stats.last_response_time or 0.0

    async def complete_text(
        self,
        text: str,
        *,
        ref: Mapping[str, Any] | None = None,
        argument: str = "text",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Ask the server to complete ``text`` for an argument of a prompt or resource template."""
        params = {
            "ref": dict(ref or {"type": "ref/prompt", "name": "completion"}),
            "argument": {"name": argument, "value": text},
        }
        result = await self._call(Method.COMPLETION_COMPLETE, params, timeout)
        return result.get("completion", result)

    # === Cancellation and progress ===

    def pending_requests(self) -> list[int]:
        """Correlation ids of requests still waiting for a response."""
        return self.connection.pending_ids() if self.connection is not None else []

    def cancel(self, request_id: int, reason: str = "cancelled by client") -> bool:
        """Cancel an in-flight request.

        The waiting caller gets ``RequestCancelledError`` and the server is
        sent ``notifications/cancelled``.

        Returns:
            False if the request is not in flight.
        """
        if self.connection is None:
            return False
        return self.connection.cancel(request_id, reason)

    def get_progress(self, token: ProgressToken) -> Progress | None:
        """Latest progress the server reported for ``token``."""
        return self.progress.get(token)

    # === Roots ===

    def add_root(self, uri: str, name: str | None = None, metadata: Mapping[str, Any] | None = None) -> Root:
        return self.roots.add_root(uri, name, metadata)

    def remove_root(self, uri: str) -> bool:
        return self.roots.remove_root(uri)

    def get_roots(self) -> list[Root]:
        return self.roots.get_roots()

    def _roots_changed(self) -> None:
        roots = self.capabilities.roots
        connection = self.connection
        if roots is None or not roots.list_changed or connection is None or not self.is_running:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            log.debug("roots_change_not_sent", endpoint=self.name, reason="no running event loop")
            return
        connection.spawn(self._send_roots_changed(connection))

    async def _send_roots_changed(self, connection: Connection) -> None:
        try:
            await connection.notify(Method.ROOTS_LIST_CHANGED)
        except McpException as e:
            log.warning("roots_change_not_sent", endpoint=self.name, error=e.message)

    # === Peer-initiated messages ===

    async def _handle_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == Method.PING:
            return {}
        if method == Method.ROOTS_LIST and self.capabilities.roots is not None:
            return {"roots": self.roots.to_protocol()}
        raise ProtocolError(f"Method not found: {method}", code=protocol.METHOD_NOT_FOUND, endpoint=self.name)

    def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method == Method.PROGRESS:
            entry = self.progress.update(params)
            if entry is None:
                log.warning("malformed_progress", endpoint=self.name, params=params)
            else:
                log.debug("progress", endpoint=self.name, token=entry.token, progress=entry.progress, total=entry.total)
            return
        log.info("server_notification", endpoint=self.name, method=method)

    # === Introspection ===

    def status(self) -> dict[str, Any]:
        transport = self.config.transport
        return {
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "connected": self.is_running,
            "transport": transport.resolved_type().value if transport.target or transport.type else None,
            "target": transport.target,
            "connected_at": self.started_at.isoformat() if self.started_at and self.is_running else None,
            "uptime": self.uptime,
            "last_ping": self.last_ping.isoformat() if self.last_ping else None,
            "pending_requests": self.connection.pending_count if self.connection else 0,
            "progress": {str(token): entry.to_dict() for token, entry in self.progress.snapshot().items()},
            "last_error": str(self.connection.last_error) if self.connection and self.connection.last_error else None,
            "capabilities": self.capabilities.to_protocol(),
            "server_info": dict(self.server_info),
            "server_capabilities": dict(self.server_capabilities),
            **self.stats.to_dict(),
        }
