"""Transport contract for MCP connections.

A transport moves JSON-RPC messages between two peers. It owns framing and
encoding; callers hand it dictionaries and receive dictionaries back through
the ``on_message`` callback. Closure (orderly or not) is reported exactly
once through ``on_close``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Protocol

import structlog

log = structlog.get_logger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]
CloseHandler = Callable[[BaseException | None], None]


class Transport(Protocol):
    """Protocol every concrete transport satisfies."""

    async def open(self) -> None: ...

    async def send(self, message: dict[str, Any]) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_close(self, handler: CloseHandler) -> None: ...

    async def close(self) -> None: ...


class BaseTransport(ABC):
    """Shared callback bookkeeping for concrete transports.

    Subclasses call ``_dispatch_message`` for every decoded inbound message
    and ``_dispatch_close`` when the channel ends. Close is delivered once;
    later calls are ignored.
    """

    def __init__(self) -> None:
        self._message_handler: MessageHandler | None = None
        self._close_handler: CloseHandler | None = None
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handler = handler

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    def _dispatch_payload(self, payload: Any) -> None:
        """Deliver a decoded body that may be a single message or a batch."""
        if isinstance(payload, list):
            for item in payload:
                self._dispatch_payload(item)
        elif isinstance(payload, dict):
            self._dispatch_message(payload)
        else:
            log.warning("transport_malformed_message", transport=type(self).__name__, payload=repr(payload)[:200])

    def _dispatch_message(self, message: dict[str, Any]) -> None:
        if self._closed or self._message_handler is None:
            return
        try:
            self._message_handler(message)
        except Exception as e:
            log.error("transport_message_handler_failed", transport=type(self).__name__, error=str(e), exc_info=True)

    def _dispatch_close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close_handler is None:
            return
        try:
            self._close_handler(error)
        except Exception as e:
            log.error("transport_close_handler_failed", transport=type(self).__name__, error=str(e), exc_info=True)
