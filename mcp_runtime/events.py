"""Lifecycle event side channel.

Endpoints raise an event exactly once per transition (connection opened,
degraded, closed; endpoint started, stopped; capability added, removed).
Delivery is synchronous to registered listeners; a failing listener is
logged and never interrupts the transition that raised the event.

Example:
    >>> events = EventEmitter()
    >>> events.subscribe(LifecycleEvent.CONNECTION_DEGRADED, lambda e: alert(e.endpoint))
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class LifecycleEvent(str, Enum):
    """Events raised by endpoints and their registries."""

    CONNECTION_OPENED = "connection_opened"
    CONNECTION_DEGRADED = "connection_degraded"
    CONNECTION_CLOSED = "connection_closed"
    ENDPOINT_STARTED = "endpoint_started"
    ENDPOINT_STOPPED = "endpoint_stopped"
    CAPABILITY_ADDED = "capability_added"
    CAPABILITY_REMOVED = "capability_removed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Event:
    """One raised event."""

    name: LifecycleEvent
    endpoint: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[Event], None]


class EventEmitter:
    """Synchronous publish/subscribe for lifecycle events."""

    def __init__(self) -> None:
        self._listeners: dict[LifecycleEvent | None, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: LifecycleEvent | None, listener: Listener) -> None:
        """Register ``listener`` for one event, or for all events when ``name`` is None."""
        with self._lock:
            self._listeners.setdefault(name, []).append(listener)

    def unsubscribe(self, name: LifecycleEvent | None, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(name, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, name: LifecycleEvent, endpoint: str, /, **data: Any) -> Event:
        """Log the event and deliver it to listeners."""
        event = Event(name=name, endpoint=endpoint, data=data)
        log.info(name.value, endpoint=endpoint, **data)

        with self._lock:
            listeners = list(self._listeners.get(name, [])) + list(self._listeners.get(None, []))

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                log.error("event_listener_failed", lifecycle_event=name.value, endpoint=endpoint, error=str(e), exc_info=True)
        return event
