"""Connection state machine and in-flight request bookkeeping.

A ``Connection`` owns one transport and the map of requests waiting for a
response. Its lifecycle is::

    disconnected -> connecting -> connected -> closed
                                      |
                                      +-> degraded -> closed

Every in-flight request reaches exactly one terminal outcome: a result, a
timeout, or ``ConnectionClosedError`` when the transport drops or the
connection is closed. The state is always updated before pending requests
are failed, so a caller that sees a connection error also sees the new
state.

The same class serves both sides of the protocol: client endpoints issue
requests through it, server sessions answer the peer's requests through the
``request_handler`` callback.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

import structlog

from mcp_runtime import protocol
from mcp_runtime.enums import ConnectionState
from mcp_runtime.events import EventEmitter, LifecycleEvent
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
from mcp_runtime.protocol import Method
from mcp_runtime.transport.base import Transport

log = structlog.get_logger(__name__)

RequestHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]
NotificationHandler = Callable[[str, dict[str, Any]], None]


@dataclass
class InFlightRequest:
    """A request waiting for its correlated response.

    Attributes:
        id: Correlation id, unique for the lifetime of the connection.
        method: JSON-RPC method name.
        params: Request parameters.
        timeout: Seconds until the request fails with a timeout.
        future: Completed exactly once with the result or an ``McpException``.
    """

    id: int
    method: str
    params: dict[str, Any] | None
    timeout: float
    future: asyncio.Future[dict[str, Any]]
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout

    def resolve(self, result: dict[str, Any]) -> None:
        self._cancel_timer()
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, error: McpException) -> None:
        self._cancel_timer()
        if not self.future.done():
            self.future.set_exception(error)

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


def error_code_for(error: BaseException) -> int:
    """JSON-RPC error code used when answering a failed inbound request."""
    if isinstance(error, ProtocolError) and error.code is not None:
        return error.code
    if isinstance(error, (CapabilityNotFoundError, InvalidCapabilityError)):
        return protocol.INVALID_PARAMS
    return protocol.INTERNAL_ERROR


class Connection:
    """One peer connection over one transport.

    Args:
        endpoint: Owning endpoint name (for errors, logs and events).
        transport: Transport owned exclusively by this connection.
        events: Emitter for opened/degraded/closed events.
        request_handler: Answers requests initiated by the peer.
        notification_handler: Receives notifications from the peer.
        timeout: Default request timeout in seconds.
        close_listener: Called after the transport closed underneath the
            connection (not on an explicit ``close``).
    """

    def __init__(
        self,
        endpoint: str,
        transport: Transport,
        *,
        events: EventEmitter | None = None,
        request_handler: RequestHandler | None = None,
        notification_handler: NotificationHandler | None = None,
        close_listener: Callable[[BaseException | None], None] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.transport = transport
        self.timeout = timeout
        self.last_error: BaseException | None = None
        self._state = ConnectionState.DISCONNECTED
        self._events = events
        self._request_handler = request_handler
        self._notification_handler = notification_handler
        self._close_listener = close_listener
        self._ids = itertools.count(1)
        self._pending: dict[int, InFlightRequest] = {}
        self._incoming: dict[Any, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[int]:
        return list(self._pending)

    # === Lifecycle ===

    async def open(self) -> None:
        """Open the transport and enter ``connecting``.

        Raises:
            ConnectionFailedError: If the connection was already used or the
                transport cannot be opened. The connection is then ``closed``.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise ConnectionFailedError(
                f"Connection for '{self.endpoint}' cannot be reopened from state '{self._state}'",
                endpoint=self.endpoint,
            )

        self._state = ConnectionState.CONNECTING
        self.transport.on_message(self._handle_message)
        self.transport.on_close(self._handle_close)
        try:
            await self.transport.open()
        except Exception as e:
            self._state = ConnectionState.CLOSED
            self.last_error = e
            log.error("connection_open_failed", endpoint=self.endpoint, error=str(e))
            raise ConnectionFailedError(
                f"Failed to open transport for '{self.endpoint}': {e}", cause=e, endpoint=self.endpoint
            ) from e

    def mark_connected(self) -> None:
        """Complete the handshake: ``connecting -> connected``."""
        if self._state is not ConnectionState.CONNECTING:
            return
        self._state = ConnectionState.CONNECTED
        if self._events is not None:
            self._events.emit(LifecycleEvent.CONNECTION_OPENED, self.endpoint)

    def degrade(self, error: BaseException) -> None:
        """Record a transport failure and fail every pending request.

        From ``connected`` this moves to ``degraded``; during the handshake
        the state is left for the owner to close.
        """
        if self._state in (ConnectionState.DEGRADED, ConnectionState.CLOSED):
            return

        self.last_error = error
        transitioned = self._state is ConnectionState.CONNECTED
        if transitioned:
            self._state = ConnectionState.DEGRADED

        log.warning(
            "connection_transport_error",
            endpoint=self.endpoint,
            error=str(error),
            pending=len(self._pending),
        )
        if transitioned and self._events is not None:
            self._events.emit(LifecycleEvent.CONNECTION_DEGRADED, self.endpoint, error=str(error))

        self._fail_pending(f"lost ({error})", cause=error)

    async def close(self) -> None:
        """Close the connection and release the transport. Idempotent."""
        if self._state is ConnectionState.CLOSED:
            return

        previous = self._state
        self._state = ConnectionState.CLOSED
        self._fail_pending("closed")

        tasks = list(self._incoming.values()) + list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self.transport.close()
        except Exception as e:
            log.warning("transport_close_failed", endpoint=self.endpoint, error=str(e))

        if previous is not ConnectionState.DISCONNECTED and self._events is not None:
            self._events.emit(LifecycleEvent.CONNECTION_CLOSED, self.endpoint, previous_state=previous.value)

    # === Outbound ===

    def register(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> InFlightRequest:
        """Allocate a correlation id and start the request's deadline."""
        loop = asyncio.get_running_loop()
        request = InFlightRequest(
            id=next(self._ids),
            method=method,
            params=params,
            timeout=timeout if timeout is not None else self.timeout,
            future=loop.create_future(),
        )
        request.timer = loop.call_later(request.timeout, self._expire, request.id)
        self._pending[request.id] = request
        return request

    async def send_request(self, request: InFlightRequest) -> None:
        """Put a registered request on the wire.

        A send failure degrades the connection, which fails the request;
        nothing is raised here. Params that cannot be encoded fail only
        this request.
        """
        try:
            await self.transport.send(protocol.make_request(request.id, request.method, request.params))
        except (TypeError, ValueError) as e:
            self._pending.pop(request.id, None)
            request.fail(ProtocolError(
                f"Request '{request.method}' cannot be encoded: {e}", cause=e, endpoint=self.endpoint
            ))
        except Exception as e:
            self.degrade(e)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification.

        Raises:
            ConnectionClosedError: If the transport rejected the message.
        """
        await self._transmit(protocol.make_notification(method, params))

    async def _transmit(self, message: dict[str, Any]) -> None:
        try:
            await self.transport.send(message)
        except Exception as e:
            self.degrade(e)
            raise ConnectionClosedError(
                f"Failed to send to '{self.endpoint}': {e}", cause=e, endpoint=self.endpoint
            ) from e

    def cancel(self, request_id: int, reason: str = "cancelled by client") -> bool:
        """Withdraw an in-flight request.

        The request fails with ``RequestCancelledError`` and the peer is sent
        a best-effort ``notifications/cancelled``.

        Returns:
            False if no request with that id is pending.
        """
        request = self._pending.pop(request_id, None)
        if request is None or request.future.done():
            return False

        log.info("request_cancelled", endpoint=self.endpoint, method=request.method, id=request.id, reason=reason)
        request.fail(RequestCancelledError(
            f"Request '{request.method}' to '{self.endpoint}' was cancelled: {reason}",
            endpoint=self.endpoint,
        ))

        if self._state is ConnectionState.CONNECTED:
            self.spawn(self._send_cancelled(request.id, reason))
        return True

    def _expire(self, request_id: int) -> None:
        request = self._pending.pop(request_id, None)
        if request is None or request.future.done():
            return

        request.timer = None
        log.warning("request_timeout", endpoint=self.endpoint, method=request.method, id=request.id)
        request.fail(McpTimeoutError(
            f"Request '{request.method}' to '{self.endpoint}' timed out after {request.timeout:g}s",
            endpoint=self.endpoint,
        ))

        if self._state is ConnectionState.CONNECTED:
            self.spawn(self._send_cancelled(request.id, "timeout"))

    async def _send_cancelled(self, request_id: int, reason: str) -> None:
        try:
            await self.notify(Method.CANCELLED, {"requestId": request_id, "reason": reason})
        except McpException as e:
            log.debug("cancel_notification_failed", endpoint=self.endpoint, id=request_id, error=e.message)

    def _fail_pending(self, reason: str, cause: BaseException | None = None) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.fail(ConnectionClosedError(
                f"Connection to '{self.endpoint}' {reason} during '{request.method}'",
                cause=cause,
                endpoint=self.endpoint,
            ))

    # === Inbound ===

    def _handle_message(self, message: dict[str, Any]) -> None:
        if protocol.is_response(message):
            self._handle_response(message)
        elif protocol.is_request(message):
            self._handle_request(message)
        elif protocol.is_notification(message):
            self._handle_notification(message)
        else:
            log.warning("invalid_message", endpoint=self.endpoint, message=repr(message)[:200])
            if message.get("id") is not None and self._state is not ConnectionState.CLOSED:
                self.spawn(self._reply(protocol.make_error(message["id"], protocol.INVALID_REQUEST, "Invalid request")))

    def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        request = self._pending.get(request_id)  # type: ignore[arg-type]
        if request is None:
            log.debug("unmatched_response", endpoint=self.endpoint, id=request_id)
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"code": protocol.INTERNAL_ERROR, "message": str(error)}
            if protocol.is_connection_closed_error(error):
                # Upstream dropped; leaves the request pending so degrade fails it
                self.degrade(ProtocolError(
                    str(error.get("message", "Connection closed")),
                    code=error.get("code"),
                    endpoint=self.endpoint,
                ))
                return
            del self._pending[request.id]
            if error.get("code") == protocol.REQUEST_TIMEOUT:
                request.fail(McpTimeoutError(
                    f"Request '{request.method}' to '{self.endpoint}' timed out: {error.get('message', '')}",
                    endpoint=self.endpoint,
                ))
                return
            request.fail(ProtocolError(
                f"'{request.method}' failed: {error.get('message', 'unknown error')}",
                code=error.get("code"),
                data=error.get("data"),
                endpoint=self.endpoint,
            ))
            return

        del self._pending[request.id]
        result = message.get("result")
        if not isinstance(result, dict):
            request.fail(ProtocolError(
                f"Malformed result for '{request.method}': expected an object",
                data=result,
                endpoint=self.endpoint,
            ))
            return
        request.resolve(result)

    def _handle_request(self, message: dict[str, Any]) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        request_id = message["id"]
        task = self.spawn(self._answer(request_id, message["method"], message.get("params") or {}))
        self._incoming[request_id] = task
        task.add_done_callback(lambda _: self._incoming.pop(request_id, None))

    async def _answer(self, request_id: Any, method: str, params: dict[str, Any]) -> None:
        if self._request_handler is None:
            response = protocol.make_error(request_id, protocol.METHOD_NOT_FOUND, f"Method not found: {method}")
        else:
            try:
                result = await self._request_handler(method, params)
                response = protocol.make_result(request_id, result)
            except McpException as e:
                response = protocol.make_error(request_id, error_code_for(e), e.message)
            except Exception as e:
                log.error("request_handler_failed", endpoint=self.endpoint, method=method, error=str(e), exc_info=True)
                response = protocol.make_error(request_id, protocol.INTERNAL_ERROR, f"Internal error: {e}")
        await self._reply(response)

    async def _reply(self, response: dict[str, Any]) -> None:
        try:
            await self._transmit(response)
        except McpException as e:
            log.debug("response_not_delivered", endpoint=self.endpoint, id=response.get("id"), error=e.message)

    def _handle_notification(self, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        if method == Method.CANCELLED:
            task = self._incoming.get(params.get("requestId"))
            if task is not None:
                log.info("request_cancelled_by_peer", endpoint=self.endpoint, id=params.get("requestId"))
                task.cancel()
            return
        if self._notification_handler is None:
            return
        try:
            self._notification_handler(method, params)
        except Exception as e:
            log.error("notification_handler_failed", endpoint=self.endpoint, method=method, error=str(e), exc_info=True)

    def _handle_close(self, error: BaseException | None) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self.degrade(error or ConnectionClosedError("Transport closed by peer", endpoint=self.endpoint))
        if self._close_listener is not None:
            try:
                self._close_listener(error)
            except Exception as e:
                log.error("close_listener_failed", endpoint=self.endpoint, error=str(e), exc_info=True)

    # === Background tasks ===

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in the background; its outcome is always observed."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("background_task_failed", endpoint=self.endpoint, error=str(error))
