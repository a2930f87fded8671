"""Capability model: tools, resources and prompts with a uniform ``invoke``.

A capability is anything a server exposes to its peer. The registry only
ever calls ``invoke(arguments)`` and never looks inside the handler, so a
capability can be a plain function, a coroutine function, or a subclass of
``Tool``/``Resource``/``Prompt``.

Example:
    Decorated functions (picked up by discovery)::

        @tool("search", description="Full text search")
        async def search(arguments):
            return await index.search(arguments["q"])

    Subclasses::

        class Readme(Resource):
            name = "file:///README.md"

            async def invoke(self, arguments):
                return Path("README.md").read_text()
"""

from __future__ import annotations

import inspect
import posixpath
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from mcp_runtime.enums import CapabilityKind

MARKER_ATTRIBUTE = "__mcp_capability__"


def default_schema(kind: CapabilityKind, name: str) -> dict[str, Any]:
    """Descriptor used when a capability is registered without one."""
    if kind is CapabilityKind.TOOL:
        return {"name": name, "description": f"Tool: {name}", "inputSchema": {"type": "object"}}
    if kind is CapabilityKind.RESOURCE:
        return {
            "uri": name,
            "name": posixpath.basename(name.rstrip("/")) or name,
            "description": f"Resource: {name}",
        }
    return {"name": name, "description": f"Prompt: {name}"}


class Capability(ABC):
    """Base class for class-based capabilities.

    Subclasses set ``name`` (the URI for resources) and optionally
    ``schema``, and implement ``invoke``.
    """

    kind: ClassVar[CapabilityKind]
    name: str = ""
    schema: Mapping[str, Any] | None = None

    def __init__(self, name: str | None = None, schema: Mapping[str, Any] | None = None) -> None:
        self.name = name or self.name
        source_schema = schema if schema is not None else type(self).schema
        self.schema = dict(source_schema) if source_schema is not None else None

    @abstractmethod
    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        """Run the capability with the peer-supplied arguments."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class Tool(Capability):
    kind = CapabilityKind.TOOL


class Resource(Capability):
    kind = CapabilityKind.RESOURCE


class Prompt(Capability):
    kind = CapabilityKind.PROMPT


class FunctionCapability(Capability):
    """Adapts a plain or coroutine function to the ``Capability`` contract."""

    def __init__(
        self,
        kind: CapabilityKind,
        name: str,
        func: Callable[..., Any],
        schema: Mapping[str, Any] | None = None,
    ) -> None:
        self.kind = kind  # type: ignore[misc]
        self.func = func
        super().__init__(name, schema)

    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        result = self.func(dict(arguments))
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionCapability(kind={self.kind.value!r}, name={self.name!r}, func={self.func!r})"


def as_capability(
    kind: CapabilityKind,
    name: str,
    handler: Capability | Callable[..., Any],
    schema: Mapping[str, Any] | None = None,
) -> Capability:
    """Wrap ``handler`` so it can be invoked uniformly.

    Raises:
        TypeError: If ``handler`` is neither a ``Capability`` nor callable.
    """
    if isinstance(handler, Capability):
        return handler
    if not callable(handler):
        raise TypeError(f"Handler for {kind.singular} '{name}' is not callable")
    return FunctionCapability(kind, name, handler, schema)


# === Decorators ===


@dataclass(frozen=True, slots=True)
class CapabilityMarker:
    """Registration details attached to a decorated function."""

    kind: CapabilityKind
    name: str
    schema: dict[str, Any] = field(default_factory=dict)


def _decorator(
    kind: CapabilityKind,
    name: str | Callable[..., Any] | None,
    extra: dict[str, Any],
) -> Any:
    def apply(func: Callable[..., Any], capability_name: str | None) -> Callable[..., Any]:
        resolved = capability_name or func.__name__
        schema = {key: value for key, value in extra.items() if value is not None}
        if kind is not CapabilityKind.RESOURCE and "description" not in schema and func.__doc__:
            schema["description"] = inspect.cleandoc(func.__doc__).splitlines()[0]
        setattr(func, MARKER_ATTRIBUTE, CapabilityMarker(kind, resolved, schema))
        return func

    if callable(name):
        return apply(name, None)
    return lambda func: apply(func, name)


def tool(
    name: str | Callable[..., Any] | None = None,
    *,
    description: str | None = None,
    input_schema: Mapping[str, Any] | None = None,
) -> Any:
    """Mark a function as a tool. Usable as ``@tool`` or ``@tool("name")``."""
    return _decorator(
        CapabilityKind.TOOL,
        name,
        {"description": description, "inputSchema": dict(input_schema) if input_schema else None},
    )


def resource(
    uri: str,
    *,
    name: str | None = None,
    description: str | None = None,
    mime_type: str | None = None,
) -> Any:
    """Mark a function as the reader for ``uri``."""
    return _decorator(
        CapabilityKind.RESOURCE,
        uri,
        {"name": name, "description": description, "mimeType": mime_type},
    )


def prompt(
    name: str | Callable[..., Any] | None = None,
    *,
    description: str | None = None,
    arguments: list[dict[str, Any]] | None = None,
) -> Any:
    """Mark a function as a prompt. Usable as ``@prompt`` or ``@prompt("name")``."""
    return _decorator(CapabilityKind.PROMPT, name, {"description": description, "arguments": arguments})


def get_marker(obj: Any) -> CapabilityMarker | None:
    marker = getattr(obj, MARKER_ATTRIBUTE, None)
    return marker if isinstance(marker, CapabilityMarker) else None
