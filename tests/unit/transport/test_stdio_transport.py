"""Tests for the stdio transports."""

from __future__ import annotations

import asyncio
import io
import json
import os
import sys
import textwrap
from typing import Any

import pytest

from mcp_runtime.exceptions import ConnectionClosedError
from mcp_runtime.transport import StdioServerTransport, StdioTransport
from mcp_runtime.transport.stdio import encode_line

ECHO_SERVER = textwrap.dedent(
    """
    import json
    import sys

    for line in sys.stdin:
        message = json.loads(line)
        if message.get("method") == "exit":
            sys.exit(3)
        if "id" in message:
            response = {"jsonrpc": "2.0", "id": message["id"], "result": {"echo": message.get("params")}}
            print(json.dumps(response), flush=True)
    """
)


def make_echo_transport() -> StdioTransport:
    return StdioTransport(sys.executable, ["-c", ECHO_SERVER], shutdown_timeout=2.0)


class TestEncodeLine:
    """Tests for line framing."""

    def test_compact_newline_terminated(self) -> None:
        """Messages should be one compact JSON line."""
        assert encode_line({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}\n'


class TestStdioTransport:
    """Tests for StdioTransport against a real subprocess."""

    @pytest.mark.asyncio
    async def test_request_response(self) -> None:
        """Messages should round-trip through the subprocess."""
        transport = make_echo_transport()
        received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        transport.on_message(received.put_nowait)

        await transport.open()
        try:
            assert transport.pid is not None
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {"q": "x"}})
            message = await asyncio.wait_for(received.get(), timeout=10)
        finally:
            await transport.close()

        assert message == {"jsonrpc": "2.0", "id": 1, "result": {"echo": {"q": "x"}}}

    @pytest.mark.asyncio
    async def test_process_exit_reports_close(self) -> None:
        """Subprocess exit should be reported as a ConnectionClosedError."""
        transport = make_echo_transport()
        closed: asyncio.Future[BaseException | None] = asyncio.get_running_loop().create_future()
        transport.on_close(closed.set_result)

        await transport.open()
        try:
            await transport.send({"jsonrpc": "2.0", "method": "exit"})
            error = await asyncio.wait_for(closed, timeout=10)
        finally:
            await transport.close()

        assert isinstance(error, ConnectionClosedError)
        assert transport.is_closed

    @pytest.mark.asyncio
    async def test_close_terminates_process(self) -> None:
        """close should end the subprocess and report an orderly close."""
        transport = make_echo_transport()
        reasons: list[BaseException | None] = []
        transport.on_close(reasons.append)

        await transport.open()
        process = transport._process
        await transport.close()

        assert process is not None and process.returncode is not None
        assert reasons == [None]
        with pytest.raises(ConnectionClosedError):
            await transport.send({"jsonrpc": "2.0", "method": "note"})

    @pytest.mark.asyncio
    async def test_missing_command(self) -> None:
        """An unknown executable should fail to open."""
        transport = StdioTransport("definitely-not-a-real-mcp-server-binary")
        with pytest.raises(OSError):
            await transport.open()


class TestStdioServerTransport:
    """Tests for StdioServerTransport over a pipe."""

    @pytest.mark.asyncio
    async def test_reads_lines_and_writes_responses(self) -> None:
        """Inbound lines should be dispatched and sends written to stdout."""
        read_fd, write_fd = os.pipe()
        stdout = io.BytesIO()
        transport = StdioServerTransport(os.fdopen(read_fd, "rb", buffering=0), stdout)
        received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        closed: asyncio.Future[BaseException | None] = asyncio.get_running_loop().create_future()
        transport.on_message(received.put_nowait)
        transport.on_close(closed.set_result)

        await transport.open()
        try:
            os.write(write_fd, b'\nnot json\n{"jsonrpc":"2.0","id":1,"method":"ping"}\n')
            message = await asyncio.wait_for(received.get(), timeout=5)
            await transport.send({"jsonrpc": "2.0", "id": 1, "result": {}})

            os.close(write_fd)
            assert await asyncio.wait_for(closed, timeout=5) is None
        finally:
            await transport.close()

        assert message == {"jsonrpc": "2.0", "id": 1, "method": "ping"}
        assert json.loads(stdout.getvalue()) == {"jsonrpc": "2.0", "id": 1, "result": {}}
