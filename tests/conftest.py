"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from mcp_runtime import protocol
from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.events import Event, EventEmitter
from mcp_runtime.runtime import McpRuntime
from mcp_runtime.transport import MemoryTransport

Reply = dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any] | None] | None


class ScriptedPeer:
    """Remote end of a memory pipe that answers requests from a script.

    ``replies`` maps a method to the body of its response (``{"result": ...}``
    or ``{"error": ...}``), to a callable building that body from the request,
    or to None to leave the request unanswered. Unlisted methods get an empty
    result.
    """

    def __init__(self) -> None:
        self.client_transport, self.transport = MemoryTransport.create_pair("scripted")
        self.received: list[dict[str, Any]] = []
        self.replies: dict[str, Reply] = {
            protocol.Method.INITIALIZE: {
                "result": {
                    "protocolVersion": protocol.PROTOCOL_VERSION,
                    "capabilities": {"tools": {"listChanged": True}},
                    "serverInfo": {"name": "scripted", "version": "0.0.1"},
                }
            },
        }
        self._responses: dict[Any, asyncio.Future[dict[str, Any]]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self.transport.on_message(self._on_message)

    async def open(self) -> None:
        await self.transport.open()

    def requests(self, method: str | None = None) -> list[dict[str, Any]]:
        return [m for m in self.received if protocol.is_request(m) and method in (None, m["method"])]

    def notifications(self, method: str | None = None) -> list[dict[str, Any]]:
        return [m for m in self.received if protocol.is_notification(m) and method in (None, m["method"])]

    async def request(self, method: str, params: dict[str, Any] | None = None, request_id: int = 1000) -> dict[str, Any]:
        """Send a request to the client side and wait for its response."""
        future = asyncio.get_running_loop().create_future()
        self._responses[request_id] = future
        await self.transport.send(protocol.make_request(request_id, method, params))
        return await asyncio.wait_for(future, timeout=5)

    def _on_message(self, message: dict[str, Any]) -> None:
        if protocol.is_response(message):
            future = self._responses.pop(message["id"], None)
            if future is not None and not future.done():
                future.set_result(message)
            return

        self.received.append(message)
        if not protocol.is_request(message):
            return
        reply = self.replies.get(message["method"], {"result": {}})
        if callable(reply):
            reply = reply(message)
        if reply is None:
            return
        response = {"jsonrpc": protocol.JSONRPC_VERSION, "id": message["id"], **reply}
        task = asyncio.get_running_loop().create_task(self.transport.send(response))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


@pytest.fixture
def peer() -> ScriptedPeer:
    """Scripted remote peer; connect through ``peer.client_transport``."""
    return ScriptedPeer()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds, failing the test after a timeout."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("condition not met in time")
            await asyncio.sleep(0.005)

    return wait


@pytest.fixture
def recorded_events() -> tuple[EventEmitter, list[Event]]:
    """Event emitter that records every event it raises."""
    events = EventEmitter()
    recorded: list[Event] = []
    events.subscribe(None, recorded.append)
    return events, recorded


@pytest.fixture
def settings() -> RuntimeSettings:
    """Settings with an in-process server ``docs`` and a client ``c1`` bound to it."""
    return RuntimeSettings(
        default_server="docs",
        default_client="c1",
        servers={"docs": {"name": "Docs Server", "version": "2.0.0"}},
        clients={"c1": {"transport": {"type": "memory", "target": "docs"}, "timeout": 2000}},
    )


@pytest.fixture
def runtime(settings: RuntimeSettings, recorded_events: tuple[EventEmitter, list[Event]]) -> McpRuntime:
    """Runtime built from ``settings``; tests are responsible for ``shutdown``."""
    events, _ = recorded_events
    return McpRuntime(settings, events=events)
