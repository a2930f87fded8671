"""``test`` and ``call`` commands."""

from __future__ import annotations

import asyncio
import json
import shlex
import sys
from typing import Any

import click
import structlog

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.exceptions import McpException
from mcp_runtime.runtime import McpRuntime

log = structlog.get_logger(__name__)


def parse_arguments(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a dict, decoding JSON values when possible."""
    arguments: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--arg")
        try:
            arguments[key] = json.loads(raw)
        except json.JSONDecodeError:
            arguments[key] = raw
    return arguments


@click.command("test")
@click.argument("target")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "http"]),
    default=None,
    help="Transport type (detected from TARGET if omitted)",
)
@click.option("--timeout", default=10.0, type=float, help="Timeout in seconds")
@click.pass_context
def test_target(ctx: click.Context, target: str, transport: str | None, timeout: float) -> None:
    """Test a server connection.

    TARGET is a configured client name, a URL, or a command line.
    """
    settings: RuntimeSettings = ctx.obj["settings"]
    args: list[str] = []

    configured = settings.clients.get(target)
    if configured is not None:
        target = configured.transport.target or ""
        transport = transport or (configured.transport.type.value if configured.transport.type else None)
        args = list(configured.transport.args)
    elif not target.startswith(("http://", "https://")):
        target, *args = shlex.split(target)

    click.echo(f"Testing MCP server: {target}\n")
    report = asyncio.run(_test(settings, target, transport, args, timeout))

    if not report.get("success"):
        click.echo(f"  Error ({report.get('error_kind')}): {report.get('error')}")
        sys.exit(1)

    server_info = report.get("server_info") or {}
    click.echo(f"  Server: {server_info.get('name', 'unknown')} {server_info.get('version', '')}".rstrip())
    click.echo(f"  Protocol: {report.get('protocol_version')}")
    click.echo(f"  Capabilities: {', '.join(sorted(report.get('server_capabilities') or {})) or 'none'}")
    tools = report.get("tools") or []
    click.echo(f"  Found {len(tools)} tools:")
    for name in tools[:10]:
        click.echo(f"    - {name}")
    if len(tools) > 10:
        click.echo(f"    ... and {len(tools) - 10} more")
    click.echo(f"\nConnection OK ({report.get('response_time')} ms)")


async def _test(
    settings: RuntimeSettings, target: str, transport: str | None, args: list[str], timeout: float
) -> dict[str, Any]:
    async with McpRuntime(settings) as runtime:
        return await runtime.clients.test_connection(target, transport, args, timeout=timeout)


@click.command("call")
@click.argument("client_name")
@click.argument("tool")
@click.option("--arg", "-a", "pairs", multiple=True, help="Tool argument as key=value (JSON values decoded)")
@click.option("--timeout", type=float, default=None, help="Timeout in seconds")
@click.pass_context
def call_tool(ctx: click.Context, client_name: str, tool: str, pairs: tuple[str, ...], timeout: float | None) -> None:
    """Call TOOL through configured client CLIENT_NAME and print the result."""
    settings: RuntimeSettings = ctx.obj["settings"]
    arguments = parse_arguments(pairs)
    try:
        result = asyncio.run(_call(settings, client_name, tool, arguments, timeout))
    except McpException as e:
        click.echo(json.dumps(e.to_dict(), indent=2), err=True)
        log.debug("call_error", exc_info=True)
        sys.exit(1)

    click.echo(json.dumps(result, indent=2))
    if result.get("isError"):
        sys.exit(1)


async def _call(
    settings: RuntimeSettings, client_name: str, tool: str, arguments: dict[str, Any], timeout: float | None
) -> dict[str, Any]:
    async with McpRuntime(settings) as runtime:
        await runtime.clients.start(client_name)
        return await runtime.clients.call_tool(client_name, tool, arguments, timeout=timeout)
