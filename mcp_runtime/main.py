"""CLI entry point for the MCP runtime."""

import sys
from pathlib import Path

import click
import structlog

from mcp_runtime.cli.client import call_tool, test_target
from mcp_runtime.cli.endpoints import list_endpoints, serve
from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.exceptions import ConfigurationError
from mcp_runtime.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "mcp.yaml"


@click.group()
@click.option(
    "--config",
    default=DEFAULT_CONFIG,
    help="Path to configuration file (skipped if the default file is absent)",
)
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Log format on stderr")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """mcp-runtime: host and connect to Model Context Protocol endpoints."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    if not config_path.exists():
        if config != DEFAULT_CONFIG:
            click.echo(f"Error: Configuration file not found: {config}", err=True)
            sys.exit(1)
        ctx.obj = {"settings": RuntimeSettings()}
        return

    try:
        settings = RuntimeSettings.from_yaml(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


cli.add_command(list_endpoints)
cli.add_command(serve)
cli.add_command(test_target)
cli.add_command(call_tool)


if __name__ == "__main__":
    cli()
