"""Tests for mcp_runtime.roots."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from mcp_runtime.exceptions import ConfigurationError, ErrorKind, McpException
from mcp_runtime.roots import Root, RootStore


class TestRoot:
    """Tests for Root."""

    def test_to_protocol_omits_metadata(self) -> None:
        """Only uri and name are sent to the peer."""
        root = Root(uri="file:///repo", name="Repo", metadata={"secret": 1})
        assert root.to_protocol() == {"uri": "file:///repo", "name": "Repo"}

    def test_to_protocol_without_name(self) -> None:
        """A missing name should be omitted."""
        assert Root(uri="file:///repo").to_protocol() == {"uri": "file:///repo"}


class TestRootStore:
    """Tests for RootStore."""

    def test_add_and_get(self) -> None:
        """Added roots should be retrievable by URI."""
        store = RootStore()
        store.add_root("file:///a", "A")
        assert store.has_root("file:///a")
        assert store.get_root("file:///a").name == "A"
        assert len(store) == 1

    def test_add_replaces_existing(self) -> None:
        """Adding an existing URI should replace the whole entry."""
        store = RootStore()
        store.add_root("file:///a", "A", metadata={"v": 1})
        store.add_root("file:///a", "B")

        roots = store.get_roots()
        assert len(roots) == 1
        assert roots[0].name == "B"
        assert dict(roots[0].metadata) == {}

    def test_insertion_order(self) -> None:
        """Roots should list in insertion order."""
        store = RootStore()
        for uri in ("file:///c", "file:///a", "file:///b"):
            store.add_root(uri)
        assert [r.uri for r in store.get_roots()] == ["file:///c", "file:///a", "file:///b"]

    def test_remove(self) -> None:
        """remove_root should report whether anything was removed."""
        store = RootStore()
        store.add_root("file:///a")
        assert store.remove_root("file:///a") is True
        assert store.remove_root("file:///a") is False
        assert store.get_root("file:///a") is None

    def test_empty_uri_rejected(self) -> None:
        """An empty URI is a ConfigurationError and leaves the store unchanged."""
        on_change = MagicMock()
        store = RootStore(on_change=on_change)

        with pytest.raises(McpException) as exc_info:
            store.add_root("")

        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert len(store) == 0
        on_change.assert_not_called()

    def test_change_callback(self) -> None:
        """on_change should fire only for mutations that changed the store."""
        on_change = MagicMock()
        store = RootStore(on_change=on_change)

        store.add_root("file:///a")
        store.remove_root("file:///missing")
        store.clear_roots()
        store.clear_roots()

        assert on_change.call_count == 2

    def test_to_protocol(self) -> None:
        """to_protocol should produce a roots/list payload."""
        store = RootStore()
        store.add_root("file:///a", "A")
        store.add_root("file:///b")
        assert store.to_protocol() == [{"uri": "file:///a", "name": "A"}, {"uri": "file:///b"}]
