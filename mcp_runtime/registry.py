"""Per-endpoint capability registries.

Each server endpoint owns one ``CapabilitySet`` holding a registry per kind
(tools, resources, prompts). All three share the endpoint's lock, so a
mutation is never observed half-applied and never races the capability
advertisement built during negotiation.

Example:
    >>> caps = CapabilitySet("docs")
    >>> caps.tools.add("search", search_handler, {"description": "Search docs"})
    >>> [t["name"] for t in caps.tools.list()]
    ['search']
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

import structlog

from mcp_runtime.capabilities import Capability, as_capability, default_schema, get_marker
from mcp_runtime.discovery import CapabilityCandidate, CapabilitySource, DiscoveryFailure, ModuleCapabilitySource
from mcp_runtime.enums import CapabilityKind
from mcp_runtime.events import EventEmitter, LifecycleEvent
from mcp_runtime.exceptions import (
    CapabilityNotFoundError,
    DuplicateCapabilityError,
    InvalidCapabilityError,
    McpException,
)

log = structlog.get_logger(__name__)

ChangeListener = Callable[[CapabilityKind], None]


@dataclass(frozen=True, slots=True)
class CapabilityEntry:
    """An immutable (name, handler, schema) triple.

    In-flight invocations hold the entry itself, so removing the name from
    the registry never invalidates a running call.
    """

    kind: CapabilityKind
    name: str
    capability: Capability
    schema: Mapping[str, Any]
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> dict[str, Any]:
        """Return a copy of the descriptor advertised to peers."""
        return json.loads(json.dumps(dict(self.schema)))

    async def invoke(self, arguments: Mapping[str, Any] | None = None) -> Any:
        return await self.capability.invoke(arguments or {})


@dataclass(frozen=True, slots=True)
class RegistrationOutcome:
    """Result of one item in a batch registration."""

    kind: CapabilityKind | None
    name: str | None
    registered: bool
    error: McpException | None = None


@dataclass
class DiscoveryReport:
    """What a discovery pass registered and what it had to skip."""

    registered: list[tuple[CapabilityKind, str]] = field(default_factory=list)
    failures: list[DiscoveryFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: DiscoveryReport) -> None:
        self.registered.extend(other.registered)
        self.failures.extend(other.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "registered": [{"kind": kind.value, "name": name} for kind, name in self.registered],
            "failures": [
                {"source": failure.source, "name": failure.name, "error": failure.error} for failure in self.failures
            ],
        }


def build_schema(kind: CapabilityKind, name: str, schema: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge a supplied descriptor over the defaults for ``kind``.

    Raises:
        InvalidCapabilityError: If the descriptor is not a JSON object.
    """
    if schema is not None and not isinstance(schema, Mapping):
        raise InvalidCapabilityError(f"Schema for {kind.singular} '{name}' must be a mapping")

    merged = default_schema(kind, name)
    merged.update(schema or {})
    merged[kind.key_field] = name
    if kind is CapabilityKind.TOOL and not isinstance(merged.get("inputSchema"), Mapping):
        merged["inputSchema"] = {"type": "object"}

    try:
        return json.loads(json.dumps(merged))
    except (TypeError, ValueError) as e:
        raise InvalidCapabilityError(
            f"Schema for {kind.singular} '{name}' is not JSON serializable: {e}", cause=e
        ) from e


class CapabilityRegistry:
    """Name-unique registry for one capability kind on one endpoint.

    Args:
        kind: Capability kind held by this registry.
        endpoint: Owning endpoint name, used for errors and events.
        lock: Endpoint-wide lock shared with the other registries.
        events: Emitter for ``capability_added``/``capability_removed``.
        on_change: Called with ``kind`` after every successful mutation.
    """

    def __init__(
        self,
        kind: CapabilityKind,
        *,
        endpoint: str = "",
        lock: threading.RLock | None = None,
        events: EventEmitter | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.kind = kind
        self.endpoint = endpoint
        self._lock = lock or threading.RLock()
        self._events = events
        self._on_change = on_change
        self._entries: dict[str, CapabilityEntry] = {}

    def add(
        self,
        name: str,
        handler: Capability | Callable[..., Any],
        schema: Mapping[str, Any] | None = None,
    ) -> CapabilityEntry:
        """Register a capability.

        Raises:
            InvalidCapabilityError: If name, handler or schema is invalid.
            DuplicateCapabilityError: If ``name`` is already registered. The
                existing entry is left untouched.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidCapabilityError(f"{self.kind.singular.capitalize()} name must be a non-empty string")
        try:
            capability = as_capability(self.kind, name, handler, schema)
        except TypeError as e:
            raise InvalidCapabilityError(str(e), cause=e, endpoint=self.endpoint) from e
        if capability.kind is not self.kind:
            raise InvalidCapabilityError(
                f"Cannot register a {capability.kind.singular} as {self.kind.singular} '{name}'",
                endpoint=self.endpoint,
            )
        if schema is None:
            schema = capability.schema
        # Build the full entry before taking the lock so readers never see half of it
        entry = CapabilityEntry(
            kind=self.kind,
            name=name,
            capability=capability,
            schema=MappingProxyType(build_schema(self.kind, name, schema)),
        )

        with self._lock:
            if name in self._entries:
                raise DuplicateCapabilityError(
                    f"{self.kind.singular.capitalize()} '{name}' is already registered on '{self.endpoint}'",
                    endpoint=self.endpoint,
                )
            self._entries[name] = entry

        self._changed(LifecycleEvent.CAPABILITY_ADDED, name)
        return entry

    def remove(self, name: str) -> bool:
        """Unregister ``name``. Returns False (no error) if it was absent."""
        with self._lock:
            removed = self._entries.pop(name, None)
        if removed is None:
            return False
        self._changed(LifecycleEvent.CAPABILITY_REMOVED, name)
        return True

    def get(self, name: str) -> CapabilityEntry | None:
        with self._lock:
            return self._entries.get(name)

    def require(self, name: str) -> CapabilityEntry:
        """Like ``get`` but raises ``CapabilityNotFoundError``."""
        entry = self.get(name)
        if entry is None:
            raise CapabilityNotFoundError(
                f"{self.kind.singular.capitalize()} '{name}' not found", endpoint=self.endpoint
            )
        return entry

    def entries(self) -> list[CapabilityEntry]:
        """Snapshot of entries in insertion order."""
        with self._lock:
            return list(self._entries.values())

    def list(self) -> list[dict[str, Any]]:
        """Snapshot of descriptors in insertion order."""
        return [entry.describe() for entry in self.entries()]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            names = list(self._entries)
            self._entries.clear()
        for name in names:
            self._changed(LifecycleEvent.CAPABILITY_REMOVED, name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __iter__(self) -> Iterator[CapabilityEntry]:
        return iter(self.entries())

    def _changed(self, event: LifecycleEvent, name: str) -> None:
        if self._events is not None:
            self._events.emit(event, self.endpoint, kind=self.kind.value, name=name)
        if self._on_change is not None:
            try:
                self._on_change(self.kind)
            except Exception as e:
                log.error("capability_change_listener_failed", endpoint=self.endpoint, error=str(e), exc_info=True)


class CapabilitySet:
    """The tool, resource and prompt registries of one endpoint."""

    def __init__(
        self,
        endpoint: str = "",
        *,
        lock: threading.RLock | None = None,
        events: EventEmitter | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.lock = lock or threading.RLock()
        self._registries = {
            kind: CapabilityRegistry(kind, endpoint=endpoint, lock=self.lock, events=events, on_change=on_change)
            for kind in CapabilityKind
        }

    @property
    def tools(self) -> CapabilityRegistry:
        return self._registries[CapabilityKind.TOOL]

    @property
    def resources(self) -> CapabilityRegistry:
        return self._registries[CapabilityKind.RESOURCE]

    @property
    def prompts(self) -> CapabilityRegistry:
        return self._registries[CapabilityKind.PROMPT]

    def for_kind(self, kind: CapabilityKind | str) -> CapabilityRegistry:
        return self._registries[CapabilityKind.parse(kind)]

    def counts(self) -> dict[str, int]:
        with self.lock:
            return {kind.value: len(registry) for kind, registry in self._registries.items()}

    def register_batch(self, components: Iterable[Any]) -> list[RegistrationOutcome]:
        """Register several capabilities; each item succeeds or fails on its own.

        Items may be ``Capability`` instances, decorated functions, or
        mappings with ``kind``, ``name``, ``handler`` and optional ``schema``.
        """
        outcomes: list[RegistrationOutcome] = []
        for component in components:
            kind: CapabilityKind | None = None
            name: str | None = None
            try:
                kind, name, handler, schema = self._unpack(component)
                self.for_kind(kind).add(name, handler, schema)
            except McpException as e:
                outcomes.append(RegistrationOutcome(kind, name, registered=False, error=e))
                continue
            outcomes.append(RegistrationOutcome(kind, name, registered=True))

        failed = sum(1 for outcome in outcomes if not outcome.registered)
        log.info("capability_batch_registered", endpoint=self.endpoint, total=len(outcomes), failed=failed)
        return outcomes

    def discover(
        self,
        locations: Iterable[str],
        *,
        kinds: Iterable[CapabilityKind] | None = None,
        source: CapabilitySource | None = None,
    ) -> DiscoveryReport:
        """Scan ``locations`` and register what is found.

        Failures are collected in the returned report, never raised.
        """
        wanted = set(kinds) if kinds is not None else set(CapabilityKind)
        source = source or ModuleCapabilitySource()
        report = DiscoveryReport()

        for item in source.scan(locations):
            if isinstance(item, DiscoveryFailure):
                report.failures.append(item)
                continue
            if item.kind not in wanted:
                log.debug("discovery_candidate_skipped", endpoint=self.endpoint, kind=item.kind.value, name=item.name)
                continue
            self._register_candidate(item, report)

        log.info(
            "discovery_completed",
            endpoint=self.endpoint,
            registered=len(report.registered),
            failed=len(report.failures),
        )
        return report

    def _register_candidate(self, candidate: CapabilityCandidate, report: DiscoveryReport) -> None:
        try:
            self.for_kind(candidate.kind).add(candidate.name, candidate.handler, candidate.schema)
        except McpException as e:
            log.warning(
                "discovery_candidate_rejected",
                endpoint=self.endpoint,
                source=candidate.source,
                name=candidate.name,
                error=e.message,
            )
            report.failures.append(DiscoveryFailure(candidate.source, e.message, name=candidate.name))
            return
        report.registered.append((candidate.kind, candidate.name))

    @staticmethod
    def _unpack(component: Any) -> tuple[CapabilityKind, str, Any, Mapping[str, Any] | None]:
        if isinstance(component, Capability):
            return component.kind, component.name, component, component.schema

        marker = get_marker(component)
        if marker is not None:
            return marker.kind, marker.name, component, marker.schema

        if isinstance(component, Mapping):
            try:
                kind = CapabilityKind.parse(component.get("kind", CapabilityKind.TOOL))
            except ValueError as e:
                raise InvalidCapabilityError(str(e), cause=e) from e
            return kind, component.get("name", ""), component.get("handler"), component.get("schema")

        raise InvalidCapabilityError(f"Cannot register {component!r}: not a capability")
