"""Base class shared by server and client endpoints."""

from __future__ import annotations

import asyncio
import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from mcp_runtime.config.settings import CapabilitiesConfig, EndpointConfig
from mcp_runtime.enums import EndpointKind
from mcp_runtime.events import EventEmitter
from mcp_runtime.exceptions import ConfigurationError


class Endpoint(ABC):
    """A named server or client.

    Holds the endpoint's immutable configuration, its advertised protocol
    capabilities, and the locks that serialize its mutations: ``lock`` for
    registry and capability changes, ``lifecycle_lock`` for start/stop.
    """

    kind: EndpointKind

    def __init__(self, name: str, config: EndpointConfig, *, events: EventEmitter | None = None) -> None:
        self.name = name
        self.config = config
        self.events = events or EventEmitter()
        self.lock = threading.RLock()
        self.lifecycle_lock = asyncio.Lock()
        self.started_at: datetime | None = None
        self._capabilities = config.capabilities
        self._capabilities_as_set: CapabilitiesConfig | dict[str, Any] = config.capabilities

    @property
    def display_name(self) -> str:
        return self.config.name or self.name

    @property
    @abstractmethod
    def is_running(self) -> bool: ...

    @abstractmethod
    async def start(self, transport: Any = None) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    def status(self) -> dict[str, Any]: ...

    async def restart(self, transport: Any = None) -> None:
        await self.stop()
        await self.start(transport)

    @property
    def capabilities(self) -> CapabilitiesConfig:
        """Validated capability flags used for negotiation."""
        with self.lock:
            return self._capabilities

    def get_capabilities(self) -> CapabilitiesConfig | dict[str, Any]:
        """Return the capabilities exactly as last set (a copy for mappings)."""
        with self.lock:
            value = self._capabilities_as_set
        return copy.deepcopy(value) if isinstance(value, dict) else value

    def set_capabilities(self, capabilities: CapabilitiesConfig | Mapping[str, Any]) -> CapabilitiesConfig | dict[str, Any]:
        """Replace the protocol capability flags used at the next negotiation.

        A mapping is validated into ``CapabilitiesConfig`` for negotiation;
        ``get_capabilities`` keeps returning the mapping that was given.

        Raises:
            ConfigurationError: If ``capabilities`` is not a valid capability set.
        """
        as_set: CapabilitiesConfig | dict[str, Any]
        if isinstance(capabilities, CapabilitiesConfig):
            model = as_set = capabilities
        else:
            try:
                as_set = copy.deepcopy(dict(capabilities))
                model = CapabilitiesConfig.model_validate(as_set)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid capabilities for '{self.name}': {e}", cause=e, endpoint=self.name) from e
        with self.lock:
            self._capabilities = model
            self._capabilities_as_set = as_set
        return copy.deepcopy(as_set) if isinstance(as_set, dict) else as_set

    @property
    def uptime(self) -> float | None:
        """Seconds since the endpoint started, or None when not running."""
        if self.started_at is None or not self.is_running:
            return None
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, running={self.is_running})"
