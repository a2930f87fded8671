"""Tests for the connection state machine."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from mcp_runtime import protocol
from mcp_runtime.connection import Connection, error_code_for
from mcp_runtime.enums import ConnectionState
from mcp_runtime.events import Event, EventEmitter, LifecycleEvent
from mcp_runtime.exceptions import (
    CapabilityNotFoundError,
    ConnectionClosedError,
    ConnectionFailedError,
    InvalidCapabilityError,
    McpException,
    McpTimeoutError,
    ProtocolError,
    RequestCancelledError,
)
from mcp_runtime.transport import MemoryTransport


async def connect(peer: Any, events: EventEmitter | None = None, **kwargs: Any) -> Connection:
    """Open a connection to ``peer`` and mark it connected."""
    await peer.open()
    connection = Connection("c1", peer.client_transport, events=events, **kwargs)
    await connection.open()
    connection.mark_connected()
    return connection


async def request(connection: Connection, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> asyncio.Future[dict[str, Any]]:
    """Register and send a request, returning its future."""
    in_flight = connection.register(method, params, timeout)
    await connection.send_request(in_flight)
    return in_flight.future


class TestErrorCodeFor:
    """Tests for mapping exceptions to JSON-RPC codes."""

    def test_protocol_error_keeps_code(self) -> None:
        """A coded ProtocolError should keep its code."""
        assert error_code_for(ProtocolError("x", code=protocol.METHOD_NOT_FOUND)) == protocol.METHOD_NOT_FOUND

    def test_capability_errors_are_invalid_params(self) -> None:
        """Unknown or invalid capabilities map to invalid params."""
        assert error_code_for(CapabilityNotFoundError("x")) == protocol.INVALID_PARAMS
        assert error_code_for(InvalidCapabilityError("x")) == protocol.INVALID_PARAMS

    def test_everything_else_is_internal(self) -> None:
        """Other failures map to internal error."""
        assert error_code_for(McpException("x")) == protocol.INTERNAL_ERROR
        assert error_code_for(RuntimeError("x")) == protocol.INTERNAL_ERROR


class TestLifecycle:
    """Tests for state transitions."""

    @pytest.mark.asyncio
    async def test_open_and_mark_connected(self, peer: Any) -> None:
        """open enters connecting; mark_connected enters connected and emits once."""
        events = EventEmitter()
        received: list[Event] = []
        events.subscribe(None, received.append)
        await peer.open()
        connection = Connection("c1", peer.client_transport, events=events)

        assert connection.state is ConnectionState.DISCONNECTED
        await connection.open()
        assert connection.state is ConnectionState.CONNECTING
        connection.mark_connected()
        connection.mark_connected()

        assert connection.state is ConnectionState.CONNECTED
        assert [e.name for e in received] == [LifecycleEvent.CONNECTION_OPENED]

    @pytest.mark.asyncio
    async def test_open_failure_closes(self) -> None:
        """A transport that cannot open should leave the connection closed."""
        connection = Connection("c1", MemoryTransport())

        with pytest.raises(ConnectionFailedError) as exc_info:
            await connection.open()

        assert connection.state is ConnectionState.CLOSED
        assert isinstance(exc_info.value.cause, ConnectionClosedError)

    @pytest.mark.asyncio
    async def test_cannot_reopen(self, peer: Any) -> None:
        """A used connection cannot be opened again."""
        connection = await connect(peer)
        with pytest.raises(ConnectionFailedError):
            await connection.open()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, peer: Any) -> None:
        """close should fail pending requests and emit closed exactly once."""
        events = EventEmitter()
        received: list[Event] = []
        events.subscribe(LifecycleEvent.CONNECTION_CLOSED, received.append)
        peer.replies["slow"] = None
        connection = await connect(peer, events)
        future = await request(connection, "slow")

        await connection.close()
        await connection.close()

        assert connection.state is ConnectionState.CLOSED
        assert isinstance(future.exception(), ConnectionClosedError)
        assert len(received) == 1
        assert received[0].data == {"previous_state": "connected"}

    @pytest.mark.asyncio
    async def test_close_unopened_emits_nothing(self) -> None:
        """Closing a never-opened connection raises no closed event."""
        events = EventEmitter()
        received: list[Event] = []
        events.subscribe(None, received.append)
        client_side, _ = MemoryTransport.create_pair()

        await Connection("c1", client_side, events=events).close()

        assert received == []


class TestRequests:
    """Tests for outbound requests."""

    @pytest.mark.asyncio
    async def test_result_resolves_future(self, peer: Any) -> None:
        """A result response should resolve the matching request."""
        peer.replies["tools/list"] = {"result": {"tools": [{"name": "search"}]}}
        connection = await connect(peer)

        future = await request(connection, "tools/list", {"cursor": None})
        result = await asyncio.wait_for(future, timeout=1)

        assert result == {"tools": [{"name": "search"}]}
        assert connection.pending_count == 0
        assert peer.requests("tools/list")[0]["params"] == {"cursor": None}

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, peer: Any) -> None:
        """Every request gets a fresh correlation id."""
        connection = await connect(peer)
        for _ in range(3):
            await asyncio.wait_for(await request(connection, "ping"), timeout=1)

        ids = [m["id"] for m in peer.requests("ping")]
        assert len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_error_response(self, peer: Any) -> None:
        """An error response should fail the request with its code and data."""
        peer.replies["tools/call"] = {"error": {"code": -32602, "message": "bad args", "data": {"field": "q"}}}
        connection = await connect(peer)

        future = await request(connection, "tools/call")
        with pytest.raises(ProtocolError) as exc_info:
            await asyncio.wait_for(future, timeout=1)

        assert exc_info.value.code == -32602
        assert exc_info.value.data == {"field": "q"}
        assert connection.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_request_timeout_code_is_timeout(self, peer: Any) -> None:
        """A -32001 error response should fail as a timeout and keep the connection."""
        peer.replies["tools/call"] = {"error": {"code": protocol.REQUEST_TIMEOUT, "message": "took too long"}}
        connection = await connect(peer)

        future = await request(connection, "tools/call")
        with pytest.raises(McpTimeoutError, match="took too long"):
            await asyncio.wait_for(future, timeout=1)

        assert connection.state is ConnectionState.CONNECTED
        assert connection.pending_count == 0

    @pytest.mark.asyncio
    async def test_malformed_result(self, peer: Any) -> None:
        """A non-object result should fail with ProtocolError."""
        peer.replies["ping"] = {"result": "pong"}
        connection = await connect(peer)

        future = await request(connection, "ping")
        with pytest.raises(ProtocolError, match="Malformed"):
            await asyncio.wait_for(future, timeout=1)

    @pytest.mark.asyncio
    async def test_unencodable_params_fail_only_that_request(self, peer: Any) -> None:
        """Params that cannot be encoded should not degrade the connection."""
        connection = await connect(peer)

        future = await request(connection, "tools/call", {"arguments": object()})

        assert isinstance(future.exception(), ProtocolError)
        assert connection.state is ConnectionState.CONNECTED
        assert connection.pending_count == 0

    @pytest.mark.asyncio
    async def test_timeout(self, peer: Any) -> None:
        """An unanswered request should time out and be cancelled at the peer."""
        peer.replies["slow"] = None
        connection = await connect(peer)

        future = await request(connection, "slow", timeout=0.05)
        with pytest.raises(McpTimeoutError):
            await asyncio.wait_for(future, timeout=1)
        await asyncio.sleep(0.01)

        assert connection.state is ConnectionState.CONNECTED
        assert connection.pending_count == 0
        cancelled = peer.notifications(protocol.Method.CANCELLED)
        assert cancelled[0]["params"]["requestId"] == peer.requests("slow")[0]["id"]

    @pytest.mark.asyncio
    async def test_late_response_ignored(self, peer: Any) -> None:
        """A response after the timeout should be dropped."""
        connection = await connect(peer)
        in_flight = connection.register("slow", timeout=0.01)
        await asyncio.sleep(0.03)

        await peer.transport.send(protocol.make_result(in_flight.id, {}))
        await asyncio.sleep(0)

        assert isinstance(in_flight.future.exception(), McpTimeoutError)


class TestCancellation:
    """Tests for withdrawing in-flight requests."""

    @pytest.mark.asyncio
    async def test_cancel_fails_request_and_tells_peer(self, peer: Any, wait_until: Any) -> None:
        """cancel should fail the caller and send notifications/cancelled."""
        peer.replies["slow"] = None
        connection = await connect(peer)
        in_flight = connection.register("slow", timeout=5)
        await connection.send_request(in_flight)

        assert connection.cancel(in_flight.id, "user abort") is True

        with pytest.raises(RequestCancelledError, match="user abort"):
            await in_flight.future
        assert connection.state is ConnectionState.CONNECTED
        assert connection.pending_count == 0
        await wait_until(lambda: len(peer.notifications(protocol.Method.CANCELLED)) == 1)
        params = peer.notifications(protocol.Method.CANCELLED)[0]["params"]
        assert params == {"requestId": in_flight.id, "reason": "user abort"}

    @pytest.mark.asyncio
    async def test_cancel_unknown_request(self, peer: Any) -> None:
        """Unknown or finished ids are not cancelled and nothing is sent."""
        connection = await connect(peer)
        future = await request(connection, "fast")
        await asyncio.wait_for(future, timeout=1)

        answered = peer.requests("fast")[0]["id"]

        assert connection.cancel(answered) is False
        assert connection.cancel(answered + 100) is False
        await asyncio.sleep(0.01)

        assert peer.notifications(protocol.Method.CANCELLED) == []

    @pytest.mark.asyncio
    async def test_response_after_cancel_ignored(self, peer: Any) -> None:
        """A late answer to a cancelled request is dropped."""
        connection = await connect(peer)
        in_flight = connection.register("slow", timeout=5)
        connection.cancel(in_flight.id)

        await peer.transport.send(protocol.make_result(in_flight.id, {"late": True}))
        await asyncio.sleep(0.01)

        assert isinstance(in_flight.future.exception(), RequestCancelledError)
        assert connection.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_cancel_after_close_sends_nothing(self, peer: Any) -> None:
        """Requests failed by close are no longer cancellable."""
        connection = await connect(peer)
        in_flight = connection.register("slow", timeout=5)
        await connection.close()

        assert connection.cancel(in_flight.id) is False
        assert isinstance(in_flight.future.exception(), ConnectionClosedError)


class TestDegradation:
    """Tests for transport failure handling."""

    @pytest.mark.asyncio
    async def test_drop_fails_every_pending_request(self, peer: Any) -> None:
        """A transport drop should degrade the connection and fail all pending requests."""
        events = EventEmitter()
        received: list[Event] = []
        events.subscribe(None, received.append)
        peer.replies["slow"] = None
        connection = await connect(peer, events)
        futures = [await request(connection, "slow") for _ in range(3)]

        peer.client_transport.simulate_drop(OSError("link down"))

        assert connection.state is ConnectionState.DEGRADED
        for future in futures:
            assert isinstance(future.exception(), ConnectionClosedError)
        assert connection.pending_count == 0
        assert LifecycleEvent.CONNECTION_DEGRADED in [e.name for e in received]

    @pytest.mark.asyncio
    async def test_send_failure_degrades(self, peer: Any) -> None:
        """A failed send should fail the request through degradation."""
        connection = await connect(peer)
        peer.client_transport.send = AsyncMock(side_effect=OSError("broken pipe"))

        future = await request(connection, "ping")

        assert connection.state is ConnectionState.DEGRADED
        assert isinstance(future.exception(), ConnectionClosedError)
        assert isinstance(connection.last_error, OSError)

    @pytest.mark.asyncio
    async def test_connection_closed_error_code_degrades(self, peer: Any) -> None:
        """A -32000 error from the peer means the upstream connection dropped."""
        peer.replies["tools/call"] = {"error": {"code": -32000, "message": "Connection closed"}}
        connection = await connect(peer)

        future = await request(connection, "tools/call")
        with pytest.raises(ConnectionClosedError):
            await asyncio.wait_for(future, timeout=1)

        assert connection.state is ConnectionState.DEGRADED

    @pytest.mark.asyncio
    async def test_close_listener_called_on_drop(self, peer: Any) -> None:
        """The close listener should run when the transport drops."""
        seen: list[BaseException | None] = []
        connection = await connect(peer, close_listener=seen.append)

        peer.transport.simulate_drop(None)

        assert len(seen) == 1
        assert isinstance(seen[0], ConnectionClosedError)
        assert connection.state is ConnectionState.DEGRADED

    @pytest.mark.asyncio
    async def test_notify_after_drop_raises(self, peer: Any) -> None:
        """Notifications on a dropped transport should raise ConnectionClosedError."""
        connection = await connect(peer)
        peer.transport.simulate_drop(None)

        with pytest.raises(ConnectionClosedError):
            await connection.notify("notifications/progress")


class TestInbound:
    """Tests for requests initiated by the peer."""

    @pytest.mark.asyncio
    async def test_request_answered(self, peer: Any) -> None:
        """Peer requests should be answered by the request handler."""

        async def handler(method: str, params: dict[str, Any]) -> dict[str, Any]:
            return {"method": method, "params": params}

        await connect(peer, request_handler=handler)
        response = await peer.request("roots/list", {"x": 1})

        assert response["result"] == {"method": "roots/list", "params": {"x": 1}}

    @pytest.mark.asyncio
    async def test_no_handler(self, peer: Any) -> None:
        """Without a handler every request is method-not-found."""
        await connect(peer)
        response = await peer.request("roots/list")
        assert response["error"]["code"] == protocol.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_handler_errors_mapped(self, peer: Any) -> None:
        """McpException and other failures should map to JSON-RPC errors."""

        async def handler(method: str, params: dict[str, Any]) -> dict[str, Any]:
            if method == "missing":
                raise CapabilityNotFoundError("Tool 'x' not found")
            raise RuntimeError("kaboom")

        await connect(peer, request_handler=handler)
        missing = await peer.request("missing", request_id=1)
        broken = await peer.request("broken", request_id=2)

        assert missing["error"] == {"code": protocol.INVALID_PARAMS, "message": "Tool 'x' not found"}
        assert broken["error"]["code"] == protocol.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_peer_cancellation(self, peer: Any) -> None:
        """notifications/cancelled should cancel the running handler."""
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def handler(method: str, params: dict[str, Any]) -> dict[str, Any]:
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return {}

        await connect(peer, request_handler=handler)
        await peer.transport.send(protocol.make_request(5, "tools/call", {}))
        await asyncio.wait_for(started.wait(), timeout=1)
        await peer.transport.send(protocol.make_notification(protocol.Method.CANCELLED, {"requestId": 5}))

        await asyncio.wait_for(cancelled.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_notifications_delivered(self, peer: Any) -> None:
        """Peer notifications should reach the notification handler."""
        seen: list[tuple[str, dict[str, Any]]] = []
        await connect(peer, notification_handler=lambda method, params: seen.append((method, params)))

        await peer.transport.send(protocol.make_notification("notifications/tools/list_changed"))
        await asyncio.sleep(0)

        assert seen == [("notifications/tools/list_changed", {})]
