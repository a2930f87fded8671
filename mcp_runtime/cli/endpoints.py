"""``list`` and ``serve`` commands."""

from __future__ import annotations

import asyncio
import sys

import click
import structlog

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.exceptions import McpException
from mcp_runtime.runtime import McpRuntime
from mcp_runtime.transport import StdioServerTransport

log = structlog.get_logger(__name__)


@click.command("list")
@click.option("--verbose", "-v", is_flag=True, help="Show discovery locations and timeouts")
@click.pass_context
def list_endpoints(ctx: click.Context, verbose: bool) -> None:
    """List configured servers and clients."""
    settings: RuntimeSettings = ctx.obj["settings"]

    click.echo("Servers")
    if not settings.servers:
        click.echo("  (none configured)")
    for name, server in sorted(settings.servers.items()):
        marker = "*" if name == settings.default_server else " "
        transport = server.transport.type.value if server.transport.type else "memory"
        click.echo(f" {marker}{name:16} {transport:7} {server.name or ''}")
        if verbose:
            for kind in ("tools", "resources", "prompts"):
                discovery = getattr(server, kind)
                if discovery.discover:
                    auto = " (auto)" if discovery.auto_register else ""
                    click.echo(f"                   {kind}: {', '.join(discovery.discover)}{auto}")

    click.echo("\nClients")
    if not settings.clients:
        click.echo("  (none configured)")
    for name, client in sorted(settings.clients.items()):
        marker = "*" if name == settings.default_client else " "
        transport = client.transport.resolved_type().value
        click.echo(f" {marker}{name:16} {transport:7} {client.transport.target or ''}")
        if verbose:
            click.echo(f"                   timeout: {client.timeout}ms, retries: {client.retry.max_retries}")


@click.command("serve")
@click.argument("name", required=False)
@click.pass_context
def serve(ctx: click.Context, name: str | None) -> None:
    """Run server NAME (or the default server) over stdio."""
    settings: RuntimeSettings = ctx.obj["settings"]
    try:
        asyncio.run(_serve(settings, name))
    except McpException as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("serve_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


async def _serve(settings: RuntimeSettings, name: str | None) -> None:
    async with McpRuntime(settings) as runtime:
        server = runtime.servers.get(name)
        await server.start(StdioServerTransport())

        report = server.last_discovery
        if report is not None:
            for failure in report.failures:
                log.warning("discovery_failure", endpoint=server.name, source=failure.source, error=failure.error)

        log.info("server_serving", endpoint=server.name, **server.registry.counts())
        await server.wait_closed()
