"""Stdio transports for MCP communication.

``StdioTransport`` spawns an MCP server as a subprocess and exchanges
newline-delimited JSON-RPC messages over its stdin/stdout.
``StdioServerTransport`` is the other side: it serves this process's own
stdin/stdout.

Example:
    Connecting to a local server::

        transport = StdioTransport("uvx", ["mcp-server-fetch"])
        transport.on_message(handle)
        transport.on_close(handle_close)
        await transport.open()
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from typing import IO, Any, cast

import structlog

from mcp_runtime.exceptions import ConnectionClosedError
from mcp_runtime.transport.base import BaseTransport

log = structlog.get_logger(__name__)

# Upper bound on a single JSON-RPC line
STREAM_LIMIT = 4 * 1024 * 1024


def encode_line(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode() + b"\n"


class StdioTransport(BaseTransport):
    """Client-side transport talking to a subprocess over stdio.

    Attributes:
        command: Executable to launch.
        args: Command-line arguments.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        self.command = command
        self.args = list(args or [])
        self._env = env or {}
        self._cwd = cwd
        self._shutdown_timeout = shutdown_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def open(self) -> None:
        """Start the server process and begin reading its stdout.

        Uses a new session (process group) so the server and its children can
        be terminated together.

        Raises:
            OSError: If the command cannot be started.
        """
        env = os.environ.copy()
        env.update(self._env)

        log.info("starting_stdio_server", cmd=[self.command, *self.args])
        self._process = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=env,
            cwd=self._cwd,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
        self._reader = asyncio.create_task(self._read_loop(), name=f"stdio-reader-{self._process.pid}")

    async def send(self, message: dict[str, Any]) -> None:
        process = self._process
        if self._closed or process is None or process.stdin is None:
            raise ConnectionClosedError("Stdio transport is not open")
        if process.returncode is not None:
            raise ConnectionClosedError(f"Server exited with code {process.returncode}")

        async with self._write_lock:
            process.stdin.write(encode_line(message))
            await process.stdin.drain()

    async def _read_loop(self) -> None:
        process = cast(asyncio.subprocess.Process, self._process)
        stdout = cast(asyncio.StreamReader, process.stdout)
        error: BaseException | None = None
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as e:
                    log.warning("stdio_invalid_json", error=str(e), line=line[:200])
                    continue
                self._dispatch_payload(payload)
        except asyncio.CancelledError:
            return
        except (OSError, ValueError) as e:
            error = e

        if error is None:
            returncode = process.returncode
            error = ConnectionClosedError(
                "Server closed stdout" if returncode is None else f"Server exited with code {returncode}"
            )
        self._dispatch_close(error)

    async def close(self) -> None:
        """Stop reading and terminate the server process group."""
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)

        process = self._process
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                await self._terminate(process)

        self._dispatch_close(None)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            process.terminate()

        try:
            await asyncio.wait_for(process.wait(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            log.warning("stdio_server_kill", pid=process.pid, reason="timeout")
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                process.kill()
            await process.wait()


class StdioServerTransport(BaseTransport):
    """Server-side transport over this process's stdin/stdout."""

    def __init__(self, stdin: IO[bytes] | None = None, stdout: IO[bytes] | None = None) -> None:
        super().__init__()
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._reader_task: asyncio.Task[None] | None = None
        self._pipe_transport: asyncio.BaseTransport | None = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        protocol = asyncio.StreamReaderProtocol(reader)
        self._pipe_transport, _ = await loop.connect_read_pipe(lambda: protocol, self._stdin)
        self._reader_task = asyncio.create_task(self._read_loop(reader), name="stdio-server-reader")

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError("Stdio server transport is closed")
        self._stdout.write(encode_line(message))
        self._stdout.flush()

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        error: BaseException | None = None
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as e:
                    log.warning("stdio_invalid_json", error=str(e), line=line[:200])
                    continue
                self._dispatch_payload(payload)
        except asyncio.CancelledError:
            return
        except (OSError, ValueError) as e:
            error = e
        self._dispatch_close(error)

    async def close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._pipe_transport is not None:
            self._pipe_transport.close()
        self._dispatch_close(None)
