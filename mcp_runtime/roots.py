"""Client-side root store.

Roots tell a server which URIs the client is willing to expose. The store is
keyed by URI: adding a URI that is already present replaces the previous
entry entirely.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mcp_runtime.exceptions import ConfigurationError


@dataclass(frozen=True)
class Root:
    """A root exposed to the server.

    Attributes:
        uri: Root URI, unique within a store.
        name: Optional display name.
        metadata: Free-form data kept locally, not sent to the peer.
        added_at: When the root was (last) added.
    """

    uri: str
    name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_protocol(self) -> dict[str, Any]:
        result: dict[str, Any] = {"uri": self.uri}
        if self.name is not None:
            result["name"] = self.name
        return result


class RootStore:
    """Insertion-ordered collection of roots keyed by URI.

    Args:
        on_change: Called after every mutation that changed the store.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._roots: dict[str, Root] = {}
        self._lock = threading.Lock()
        self._on_change = on_change

    def add_root(self, uri: str, name: str | None = None, metadata: Mapping[str, Any] | None = None) -> Root:
        """Add ``uri``, replacing any existing root with the same URI.

        Raises:
            ConfigurationError: If ``uri`` is empty.
        """
        if not uri or not isinstance(uri, str):
            raise ConfigurationError("Root URI must be a non-empty string")
        root = Root(uri=uri, name=name, metadata=dict(metadata or {}))
        with self._lock:
            self._roots[uri] = root
        self._notify()
        return root

    def remove_root(self, uri: str) -> bool:
        with self._lock:
            removed = self._roots.pop(uri, None) is not None
        if removed:
            self._notify()
        return removed

    def has_root(self, uri: str) -> bool:
        with self._lock:
            return uri in self._roots

    def get_root(self, uri: str) -> Root | None:
        with self._lock:
            return self._roots.get(uri)

    def get_roots(self) -> list[Root]:
        with self._lock:
            return list(self._roots.values())

    def clear_roots(self) -> None:
        with self._lock:
            had_roots = bool(self._roots)
            self._roots = {}
        if had_roots:
            self._notify()

    def to_protocol(self) -> list[dict[str, Any]]:
        """Roots in the shape of a ``roots/list`` result."""
        return [root.to_protocol() for root in self.get_roots()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._roots)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
