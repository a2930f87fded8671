"""Streamable HTTP transport for MCP clients.

Each outbound message is POSTed to the server URL. The server answers with
either a JSON body or a ``text/event-stream`` carrying one or more JSON-RPC
messages; notifications are acknowledged with ``202 Accepted`` and no body.
Requests run as background tasks so that ``send`` returns as soon as the
message is handed over, like the other transports.

Response deadlines belong to the connection: the HTTP client has no read
timeout, so a slow answer never closes the transport.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, cast

import httpx
import structlog

from mcp_runtime import protocol
from mcp_runtime.exceptions import ConnectionClosedError
from mcp_runtime.transport.base import BaseTransport

log = structlog.get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event."""
    buffer: list[str] = []
    async for line in lines:
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)


class HttpTransport(BaseTransport):
    """Client-side transport over streamable HTTP.

    Attributes:
        url: MCP endpoint URL.
        session_id: Session id assigned by the server, once known.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.session_id: str | None = None
        self._client = client
        self._owns_client = client is None
        self._tasks: set[asyncio.Task[None]] = set()

    async def open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(f"HTTP transport for {self.url} is closed")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, read=None), headers=self.headers)
        log.debug("http_transport_opened", url=self.url)

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed or self._client is None:
            raise ConnectionClosedError(f"HTTP transport for {self.url} is not open")
        task = asyncio.create_task(self._post(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _request_headers(self) -> dict[str, str]:
        headers = {
            **self.headers,
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, message: dict[str, Any]) -> None:
        client = cast(httpx.AsyncClient, self._client)
        request_id = message.get("id") if protocol.is_request(message) else None
        try:
            async with client.stream(
                "POST", self.url, json=message, headers=self._request_headers()
            ) as response:
                session_id = response.headers.get(SESSION_HEADER)
                if session_id:
                    self.session_id = session_id

                if response.status_code == 202:
                    return
                if response.status_code >= 400:
                    await response.aread()
                    log.warning(
                        "http_request_failed",
                        url=self.url,
                        status_code=response.status_code,
                        method=message.get("method"),
                    )
                    if request_id is not None:
                        self._dispatch_message(
                            protocol.make_error(
                                request_id,
                                protocol.INTERNAL_ERROR,
                                f"HTTP {response.status_code}: {response.reason_phrase}",
                            )
                        )
                    return

                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    async for data in iter_sse_data(response.aiter_lines()):
                        self._dispatch_text(data, request_id)
                else:
                    body = await response.aread()
                    if body.strip():
                        self._dispatch_text(body.decode(), request_id)
        except httpx.TimeoutException as e:
            log.warning("http_request_timeout", url=self.url, method=message.get("method"), error=str(e))
            if request_id is not None:
                self._dispatch_message(
                    protocol.make_error(request_id, protocol.REQUEST_TIMEOUT, f"HTTP request timed out: {e}")
                )
        except httpx.TransportError as e:
            log.error("http_transport_error", url=self.url, error=str(e))
            self._dispatch_close(e)

    def _dispatch_text(self, text: str, request_id: Any) -> None:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning("http_invalid_json", url=self.url, error=str(e))
            if request_id is not None:
                self._dispatch_message(protocol.make_error(request_id, protocol.PARSE_ERROR, f"Invalid JSON: {e}"))
            return
        self._dispatch_payload(payload)

    async def close(self) -> None:
        """Cancel outstanding requests and release the HTTP client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._dispatch_close(None)
