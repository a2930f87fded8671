"""Capability discovery from Python modules.

A capability source turns a set of locations into a lazy, finite sequence of
candidates. Each candidate is validated by the registry on its own, so one
broken module or capability never stops the rest of the scan.

Locations may be directories (every ``*.py`` file not starting with ``_`` is
imported), single ``.py`` files, or dotted module names.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

import structlog

from mcp_runtime.capabilities import Capability, FunctionCapability, Prompt, Resource, Tool, get_marker
from mcp_runtime.enums import CapabilityKind

log = structlog.get_logger(__name__)

_BASE_CLASSES = (Capability, Tool, Resource, Prompt, FunctionCapability)


@dataclass(frozen=True, slots=True)
class CapabilityCandidate:
    """One discovered capability, not yet validated."""

    kind: CapabilityKind
    name: str
    handler: Any
    schema: dict[str, Any] | None
    source: str


@dataclass(frozen=True, slots=True)
class DiscoveryFailure:
    """A location or candidate that could not be loaded or registered."""

    source: str
    error: str
    name: str | None = None


ScanItem = CapabilityCandidate | DiscoveryFailure


class CapabilitySource(Protocol):
    """Anything that can enumerate capability candidates."""

    def scan(self, locations: Iterable[str]) -> Iterator[ScanItem]:
        """Yield candidates, or failures for locations that could not be read."""
        ...


class ModuleCapabilitySource:
    """Discovers decorated functions and ``Capability`` subclasses in modules."""

    def scan(self, locations: Iterable[str]) -> Iterator[ScanItem]:
        for location in locations:
            yield from self._scan_location(location)

    def _scan_location(self, location: str) -> Iterator[ScanItem]:
        path = Path(location)
        if path.is_dir():
            for file in sorted(path.glob("*.py")):
                if file.name.startswith("_"):
                    continue
                yield from self._scan_file(file)
        elif path.is_file() and path.suffix == ".py":
            yield from self._scan_file(path)
        else:
            try:
                module = importlib.import_module(location)
            except Exception as e:
                log.warning("discovery_location_failed", location=location, error=str(e))
                yield DiscoveryFailure(location, f"Not a directory or importable module: {e}")
                return
            yield from candidates_from_module(module, location)

    def _scan_file(self, file: Path) -> Iterator[ScanItem]:
        try:
            module = load_module_from_path(file)
        except Exception as e:
            log.warning("discovery_module_failed", path=str(file), error=str(e))
            yield DiscoveryFailure(str(file), f"{type(e).__name__}: {e}")
            return
        yield from candidates_from_module(module, str(file))


def load_module_from_path(file: Path) -> ModuleType:
    """Import a single source file under a private module name."""
    module_name = f"_mcp_discovered.{file.parent.name}.{file.stem}"
    spec = importlib.util.spec_from_file_location(module_name, file)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {file}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def candidates_from_module(module: ModuleType, source: str) -> Iterator[ScanItem]:
    """Yield every capability defined in ``module``."""
    for attr_name, obj in vars(module).items():
        if attr_name.startswith("_"):
            continue

        marker = get_marker(obj)
        if marker is not None:
            if getattr(obj, "__module__", None) != module.__name__:
                continue
            yield CapabilityCandidate(marker.kind, marker.name, obj, dict(marker.schema), source)
            continue

        if isinstance(obj, Capability):
            yield CapabilityCandidate(obj.kind, obj.name, obj, obj.schema, source)
            continue

        if (
            inspect.isclass(obj)
            and issubclass(obj, Capability)
            and obj not in _BASE_CLASSES
            and not inspect.isabstract(obj)
            and obj.__module__ == module.__name__
        ):
            try:
                instance = obj()
            except Exception as e:
                yield DiscoveryFailure(source, f"Cannot instantiate {obj.__name__}: {e}", name=attr_name)
                continue
            yield CapabilityCandidate(instance.kind, instance.name, instance, instance.schema, source)
