"""Resilient call engine.

Every outbound call goes through ``ResilientCallEngine.call``:

1. The connection must be ``connected``; otherwise the call fails with
   ``ClientNotConnectedError`` and nothing is sent.
2. A correlation id and deadline are registered with the connection.
3. The request is sent. The engine attaches its own observer to the
   request's future, so the outcome is always retrieved even if the caller
   gives up; the caller itself waits through ``asyncio.shield``.
4. The outcome becomes a result dict or one ``McpException``.

Timeouts may be retried with backoff (each attempt gets a fresh correlation
id). Connection and protocol errors are never retried.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import structlog

from mcp_runtime.config.settings import RetryConfig
from mcp_runtime.connection import Connection
from mcp_runtime.enums import ConnectionState
from mcp_runtime.exceptions import ClientNotConnectedError, McpException, McpTimeoutError
from mcp_runtime.utils.retry import async_retry

log = structlog.get_logger(__name__)


@dataclass
class CallStats:
    """Counters kept across connections of one client."""

    request_count: int = 0
    error_count: int = 0
    last_response_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "last_response_time": self.last_response_time,
        }


class ResilientCallEngine:
    """Issues requests over one ``Connection`` and types every failure.

    Args:
        connection: Connection to issue requests on.
        retry: Timeout retry policy.
        stats: Shared counters, updated per attempt.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        retry: RetryConfig | None = None,
        stats: CallStats | None = None,
    ) -> None:
        self.connection = connection
        self.retry = retry or RetryConfig()
        self.stats = stats or CallStats()

    @property
    def endpoint(self) -> str:
        return self.connection.endpoint

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        retry: bool = True,
        allow_handshake: bool = False,
    ) -> dict[str, Any]:
        """Send a request and wait for its result.

        Args:
            method: JSON-RPC method.
            params: Request parameters.
            timeout: Seconds before the call times out; defaults to the
                connection's timeout.
            retry: Apply the timeout retry policy.
            allow_handshake: Permit the call while still ``connecting``.

        Returns:
            The ``result`` member of the response.

        Raises:
            ClientNotConnectedError: Connection not in a usable state.
            McpTimeoutError: No response before the deadline (after retries).
            ConnectionClosedError: Connection dropped or closed while pending.
            ProtocolError: Peer returned an error or a malformed response.
        """
        if not retry or self.retry.max_retries == 0:
            return await self._call_once(method, params, timeout, allow_handshake)

        retrying = async_retry(
            max_retries=self.retry.max_retries,
            base_delay=self.retry.delay_ms / 1000.0,
            policy=self.retry.backoff,
            multiplier=self.retry.multiplier,
            exceptions=(McpTimeoutError,),
        )(self._call_once)
        return await retrying(method, params, timeout, allow_handshake)

    async def _call_once(
        self,
        method: str,
        params: dict[str, Any] | None,
        timeout: float | None,
        allow_handshake: bool,
    ) -> dict[str, Any]:
        connection = self.connection
        usable = (ConnectionState.CONNECTED, ConnectionState.CONNECTING) if allow_handshake else (
            ConnectionState.CONNECTED,
        )
        if connection.state not in usable:
            raise ClientNotConnectedError(
                f"Client '{self.endpoint}' is not connected (state: {connection.state})",
                endpoint=self.endpoint,
            )

        request = connection.register(method, params, timeout)
        request.future.add_done_callback(_observe)
        self.stats.request_count += 1
        started = time.monotonic()

        await connection.send_request(request)
        try:
            result = await asyncio.shield(request.future)
        except McpException as e:
            self.stats.error_count += 1
            if e.endpoint is None:
                e.endpoint = self.endpoint
            raise
        except asyncio.CancelledError:
            log.debug("call_abandoned", endpoint=self.endpoint, method=method, id=request.id)
            raise
        except Exception as e:
            self.stats.error_count += 1
            raise McpException(
                f"Call '{method}' to '{self.endpoint}' failed: {e}", cause=e, endpoint=self.endpoint
            ) from e

        self.stats.last_response_time = round((time.monotonic() - started) * 1000, 3)
        return result


def _observe(future: asyncio.Future[Any]) -> None:
    # Retrieve the outcome so an abandoned call never logs "exception was never retrieved"
    if not future.cancelled():
        future.exception()
