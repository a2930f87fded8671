"""CLI commands for the MCP runtime.

The entry point ``mcp-runtime`` (``mcp_runtime.main:cli``) loads settings
and dispatches to the commands defined here.

Key Commands:
    list (mcp_runtime.cli.endpoints):
        Show configured servers and clients with their transports.

    serve (mcp_runtime.cli.endpoints):
        Run a configured server over this process's stdin/stdout.

    test (mcp_runtime.cli.client):
        Connect to a server once and report its capabilities and tools.

    call (mcp_runtime.cli.client):
        Call a tool through a configured client and print the result.
"""
