"""In-process transport.

Two linked ``MemoryTransport`` objects form a pipe inside one event loop.
Messages are JSON round-tripped so that the in-process path rejects the
same payloads a real wire would, and delivery is scheduled on the loop so
that send never re-enters the peer synchronously.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from mcp_runtime.exceptions import ConnectionClosedError
from mcp_runtime.transport.base import BaseTransport


class MemoryTransport(BaseTransport):
    """One end of an in-process pipe. Create with ``create_pair``."""

    def __init__(self, label: str = "memory") -> None:
        super().__init__()
        self.label = label
        self._peer: MemoryTransport | None = None
        self._opened = False

    @classmethod
    def create_pair(cls, label: str = "memory") -> tuple[MemoryTransport, MemoryTransport]:
        """Return ``(client_side, server_side)`` linked to each other."""
        client_side = cls(f"{label}:client")
        server_side = cls(f"{label}:server")
        client_side._peer = server_side
        server_side._peer = client_side
        return client_side, server_side

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Transport {self.label} is closed")
        if self._peer is None:
            raise ConnectionClosedError(f"Transport {self.label} has no peer")
        self._opened = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_open or self._peer is None or self._peer.is_closed:
            raise ConnectionClosedError(f"Transport {self.label} is not open")
        wire = json.loads(json.dumps(message))
        asyncio.get_running_loop().call_soon(self._peer._receive, wire)

    def _receive(self, message: dict[str, Any]) -> None:
        self._dispatch_message(message)

    async def close(self) -> None:
        await asyncio.sleep(0)
        self.simulate_drop(None)

    def simulate_drop(self, error: BaseException | None = None) -> None:
        """Close both ends immediately, reporting ``error`` to each side."""
        peer = self._peer
        self._dispatch_close(error)
        if peer is not None and not peer.is_closed:
            peer._dispatch_close(error or ConnectionClosedError(f"Peer {self.label} closed the connection"))
