"""MCP server endpoint.

A server owns a ``CapabilitySet`` and answers MCP requests from any number
of sessions. Each session is one peer connection over one transport; stdio
servers have a single session, in-process servers get one per attached
client.

Example:
    >>> server = McpServer("docs")
    >>> server.tools.add("search", search_handler, {"description": "Search the docs"})
    >>> await server.start(StdioServerTransport())
    >>> await server.wait_closed()
"""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from mcp_runtime import protocol
from mcp_runtime.config.settings import ServerEndpointConfig
from mcp_runtime.connection import Connection
from mcp_runtime.endpoint import Endpoint
from mcp_runtime.enums import CapabilityKind, ConnectionState, EndpointKind, TransportType
from mcp_runtime.events import EventEmitter, LifecycleEvent
from mcp_runtime.exceptions import ConnectionFailedError, McpException, ProtocolError
from mcp_runtime.protocol import Method
from mcp_runtime.registry import CapabilityEntry, CapabilityRegistry, CapabilitySet, DiscoveryReport
from mcp_runtime.transport import Transport, create_server_transport

log = structlog.get_logger(__name__)

CompletionHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[list[str]]]

SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")


# === Result shaping ===


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


def tool_result(value: Any) -> dict[str, Any]:
    """Shape a tool handler's return value as a ``CallToolResult``."""
    if isinstance(value, Mapping) and "content" in value:
        return dict(value)
    if value is None:
        return {"content": []}
    if isinstance(value, list) and all(isinstance(item, Mapping) and "type" in item for item in value):
        return {"content": [dict(item) for item in value]}
    return {"content": [{"type": "text", "text": _as_text(value)}]}


def resource_result(entry: CapabilityEntry, value: Any) -> dict[str, Any]:
    """Shape a resource handler's return value as a ``ReadResourceResult``."""
    if isinstance(value, Mapping) and "contents" in value:
        return dict(value)
    mime_type = entry.schema.get("mimeType")
    if isinstance(value, bytes):
        content = {
            "uri": entry.name,
            "mimeType": mime_type or "application/octet-stream",
            "blob": base64.b64encode(value).decode("ascii"),
        }
    elif isinstance(value, str):
        content = {"uri": entry.name, "mimeType": mime_type or "text/plain", "text": value}
    else:
        content = {"uri": entry.name, "mimeType": mime_type or "application/json", "text": _as_text(value)}
    return {"contents": [content]}


def prompt_result(entry: CapabilityEntry, value: Any) -> dict[str, Any]:
    """Shape a prompt handler's return value as a ``GetPromptResult``."""
    if isinstance(value, Mapping) and "messages" in value:
        return dict(value)
    if isinstance(value, list):
        messages = [dict(message) for message in value]
    else:
        messages = [{"role": "user", "content": {"type": "text", "text": _as_text(value)}}]
    return {"description": entry.schema.get("description", ""), "messages": messages}


def paginate(items: list[dict[str, Any]], key: str, cursor: Any, page_size: int | None) -> dict[str, Any]:
    """Slice ``items`` into a page; the cursor is the offset of the next page.

    Raises:
        ProtocolError: If the cursor is not one this server issued.
    """
    if page_size is None:
        return {key: items}
    try:
        offset = int(cursor) if cursor else 0
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid cursor: {cursor!r}", code=protocol.INVALID_PARAMS, cause=e) from e
    if offset < 0:
        raise ProtocolError(f"Invalid cursor: {cursor!r}", code=protocol.INVALID_PARAMS)

    result: dict[str, Any] = {key: items[offset:offset + page_size]}
    if offset + page_size < len(items):
        result["nextCursor"] = str(offset + page_size)
    return result


class ServerSession:
    """One client connected to a server."""

    def __init__(self, server: McpServer, transport: Transport) -> None:
        self.server = server
        self.initialized = False
        self.client_info: dict[str, Any] = {}
        self.client_capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None
        self.closed = asyncio.Event()
        self.connection = Connection(
            server.name,
            transport,
            events=server.events,
            request_handler=self._handle_request,
            notification_handler=self._handle_notification,
            close_listener=self._peer_closed,
            timeout=server.config.timeout_seconds,
        )

    @property
    def is_active(self) -> bool:
        return self.connection.state is ConnectionState.CONNECTED

    async def open(self) -> None:
        await self.connection.open()
        self.connection.mark_connected()

    async def close(self) -> None:
        await self.connection.close()
        self.closed.set()

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        try:
            await self.connection.notify(method, params)
        except McpException as e:
            log.debug("session_notification_failed", endpoint=self.server.name, method=method, error=e.message)

    def _peer_closed(self, error: BaseException | None) -> None:
        log.info("session_closed_by_peer", endpoint=self.server.name, error=str(error) if error else None)
        self.server._spawn(self.server._drop_session(self))

    async def _handle_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == Method.INITIALIZE:
            return self._initialize(params)
        if method == Method.PING:
            return {}
        return await self.server.handle_request(method, params)

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        self.protocol_version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else protocol.PROTOCOL_VERSION
        self.client_info = dict(params.get("clientInfo") or {})
        self.client_capabilities = dict(params.get("capabilities") or {})
        log.info(
            "session_initialized",
            endpoint=self.server.name,
            client=self.client_info.get("name"),
            protocol_version=self.protocol_version,
        )
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.server.advertised_capabilities(),
            "serverInfo": {"name": self.server.display_name, "version": self.server.config.version},
        }

    def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method == Method.INITIALIZED:
            self.initialized = True
        elif method == Method.ROOTS_LIST_CHANGED:
            log.info("client_roots_changed", endpoint=self.server.name, client=self.client_info.get("name"))
        else:
            log.debug("session_notification_ignored", endpoint=self.server.name, method=method)


class McpServer(Endpoint):
    """Server endpoint exposing tools, resources and prompts.

    Args:
        name: Endpoint name.
        config: Merged server configuration.
        events: Lifecycle event emitter.
    """

    kind = EndpointKind.SERVER

    def __init__(
        self,
        name: str,
        config: ServerEndpointConfig | None = None,
        *,
        events: EventEmitter | None = None,
    ) -> None:
        super().__init__(name, config or ServerEndpointConfig(), events=events)
        self.config: ServerEndpointConfig
        self.registry = CapabilitySet(name, lock=self.lock, events=self.events, on_change=self._capabilities_changed)
        self.sessions: list[ServerSession] = []
        self.completion_handler: CompletionHandler | None = None
        self.last_discovery: DiscoveryReport | None = None
        self._running = False
        self._discovered = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def tools(self) -> CapabilityRegistry:
        return self.registry.tools

    @property
    def resources(self) -> CapabilityRegistry:
        return self.registry.resources

    @property
    def prompts(self) -> CapabilityRegistry:
        return self.registry.prompts

    @property
    def is_running(self) -> bool:
        return self._running

    # === Lifecycle ===

    async def start(self, transport: Transport | None = None) -> None:
        """Start serving. A no-op if already running.

        Runs configured auto-registration on the first start. Without an
        explicit transport, a listener is opened only for ``stdio``
        configuration; otherwise sessions are added with ``attach``.

        Raises:
            ConfigurationError: If the configured transport cannot be served.
            ConnectionFailedError: If the listener transport cannot be opened.
        """
        async with self.lifecycle_lock:
            if self._running:
                log.debug("server_already_running", endpoint=self.name)
                return

            if transport is None and self.config.transport.type is TransportType.STDIO:
                transport = create_server_transport(self.config.transport)

            if not self._discovered:
                self.last_discovery = self.run_discovery(auto_only=True)
                self._discovered = True

            self._loop = asyncio.get_running_loop()
            self._running = True
            self.started_at = datetime.now(timezone.utc)
            if transport is not None:
                try:
                    await self._open_session(transport)
                except McpException:
                    self._running = False
                    raise

            self.events.emit(LifecycleEvent.ENDPOINT_STARTED, self.name, endpoint_kind=self.kind.value)

    async def stop(self) -> None:
        """Close every session. Stopping a stopped server is a no-op."""
        async with self.lifecycle_lock:
            if not self._running:
                return
            self._running = False
            sessions, self.sessions = self.sessions, []
            for session in sessions:
                await session.close()
            self.events.emit(LifecycleEvent.ENDPOINT_STOPPED, self.name, endpoint_kind=self.kind.value)

    async def attach(self, transport: Transport) -> ServerSession:
        """Serve one more peer over ``transport``.

        Raises:
            ConnectionFailedError: If the server is not running or the
                transport cannot be opened.
        """
        if not self._running:
            raise ConnectionFailedError(f"Server '{self.name}' is not running", endpoint=self.name)
        return await self._open_session(transport)

    async def _open_session(self, transport: Transport) -> ServerSession:
        session = ServerSession(self, transport)
        await session.open()
        self.sessions.append(session)
        return session

    async def _drop_session(self, session: ServerSession) -> None:
        if session in self.sessions:
            self.sessions.remove(session)
        await session.close()

    async def wait_closed(self) -> None:
        """Wait until every current session has been closed."""
        while self.sessions:
            await self.sessions[0].closed.wait()
            await asyncio.sleep(0)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("server_task_failed", endpoint=self.name, error=str(task.exception()))

    # === Capabilities ===

    def run_discovery(self, *, auto_only: bool = False) -> DiscoveryReport:
        """Discover capabilities from the configured locations of each kind."""
        report = DiscoveryReport()
        for kind in CapabilityKind:
            discovery = getattr(self.config, kind.value)
            if not discovery.discover or (auto_only and not discovery.auto_register):
                continue
            report.merge(self.registry.discover(discovery.discover, kinds=[kind]))
        return report

    def advertised_capabilities(self) -> dict[str, Any]:
        """Capabilities sent in the ``initialize`` result."""
        with self.lock:
            advertised = self.capabilities.to_protocol()
            advertised.pop("roots", None)
            advertised.pop("sampling", None)
            for kind in CapabilityKind:
                if len(self.registry.for_kind(kind)):
                    advertised[kind.value] = {"listChanged": True}
            if self.completion_handler is not None:
                advertised["completions"] = {}
        return advertised

    def _capabilities_changed(self, kind: CapabilityKind) -> None:
        """Announce a registry change; mutations may come from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self._running:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._announce_list_changed(kind)
        else:
            loop.call_soon_threadsafe(self._announce_list_changed, kind)

    def _announce_list_changed(self, kind: CapabilityKind) -> None:
        method = Method.list_changed(kind.value)
        for session in [s for s in self.sessions if s.initialized and s.is_active]:
            session.connection.spawn(session.notify(method))

    # === Request handling ===

    async def handle_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Answer one MCP request (everything except the handshake).

        Raises:
            CapabilityNotFoundError: Unknown tool, resource or prompt.
            ProtocolError: Unknown method or invalid parameters.
        """
        page_size = self.config.page_size
        cursor = params.get("cursor")

        if method == Method.TOOLS_LIST:
            return paginate(self.tools.list(), "tools", cursor, page_size)
        if method == Method.RESOURCES_LIST:
            return paginate(self.resources.list(), "resources", cursor, page_size)
        if method == Method.PROMPTS_LIST:
            return paginate(self.prompts.list(), "prompts", cursor, page_size)

        if method == Method.TOOLS_CALL:
            entry = self.tools.require(self._param(params, "name"))
            try:
                value = await entry.invoke(params.get("arguments") or {})
            except Exception as e:
                log.warning("tool_failed", endpoint=self.name, tool=entry.name, error=str(e))
                return {"content": [{"type": "text", "text": str(e)}], "isError": True}
            return tool_result(value)

        if method == Method.RESOURCES_READ:
            entry = self.resources.require(self._param(params, "uri"))
            try:
                value = await entry.invoke({"uri": entry.name})
            except Exception as e:
                raise McpException(f"Resource '{entry.name}' failed: {e}", cause=e, endpoint=self.name) from e
            return resource_result(entry, value)

        if method == Method.PROMPTS_GET:
            entry = self.prompts.require(self._param(params, "name"))
            try:
                value = await entry.invoke(params.get("arguments") or {})
            except Exception as e:
                raise McpException(f"Prompt '{entry.name}' failed: {e}", cause=e, endpoint=self.name) from e
            return prompt_result(entry, value)

        if method == Method.COMPLETION_COMPLETE:
            return await self._complete(params)

        raise ProtocolError(f"Method not found: {method}", code=protocol.METHOD_NOT_FOUND, endpoint=self.name)

    async def _complete(self, params: dict[str, Any]) -> dict[str, Any]:
        values: list[str] = []
        if self.completion_handler is not None:
            values = list(await self.completion_handler(params.get("ref") or {}, params.get("argument") or {}))
        return {"completion": {"values": values[:100], "total": len(values), "hasMore": len(values) > 100}}

    def _param(self, params: dict[str, Any], key: str) -> str:
        value = params.get(key)
        if not isinstance(value, str) or not value:
            raise ProtocolError(f"Missing required parameter '{key}'", code=protocol.INVALID_PARAMS, endpoint=self.name)
        return value

    # === Introspection ===

    def status(self) -> dict[str, Any]:
        transport = self.config.transport
        return {
            "name": self.name,
            "kind": self.kind.value,
            "running": self._running,
            "transport": transport.type.value if transport.type else None,
            "started_at": self.started_at.isoformat() if self.started_at and self._running else None,
            "uptime": self.uptime,
            "sessions": sum(1 for session in self.sessions if session.is_active),
            "tools": len(self.tools),
            "resources": len(self.resources),
            "prompts": len(self.prompts),
            "capabilities": self.capabilities.to_protocol(),
        }
