"""JSON-RPC 2.0 message helpers for the MCP protocol.

Messages travel as plain dictionaries; transports are responsible for
encoding and framing them. This module only builds and classifies them.
"""

from __future__ import annotations

from typing import Any

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2025-06-18"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# MCP SDK convention for a dropped connection
CONNECTION_CLOSED = -32000
REQUEST_TIMEOUT = -32001


class Method:
    """MCP method names."""

    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    CANCELLED = "notifications/cancelled"
    PROGRESS = "notifications/progress"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    RESOURCES_LIST = "resources/list"
    RESOURCES_READ = "resources/read"
    PROMPTS_LIST = "prompts/list"
    PROMPTS_GET = "prompts/get"
    COMPLETION_COMPLETE = "completion/complete"
    ROOTS_LIST = "roots/list"
    ROOTS_LIST_CHANGED = "notifications/roots/list_changed"

    @staticmethod
    def list_changed(prefix: str) -> str:
        """Notification sent when a server's ``tools``/``resources``/``prompts`` change."""
        return f"notifications/{prefix}/list_changed"


def make_request(request_id: int | str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: int | str | None, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(
    request_id: int | str | None,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def is_request(message: dict[str, Any]) -> bool:
    return "method" in message and "id" in message


def is_notification(message: dict[str, Any]) -> bool:
    return "method" in message and "id" not in message


def is_response(message: dict[str, Any]) -> bool:
    return "method" not in message and "id" in message and ("result" in message or "error" in message)


def is_connection_closed_error(error: dict[str, Any]) -> bool:
    """Check whether a JSON-RPC error object reports a dropped connection.

    Peers built on the MCP SDKs report a closed upstream connection as code
    ``-32000`` with a "Connection closed" message.
    """
    if error.get("code") == CONNECTION_CLOSED:
        return True
    message = str(error.get("message", "")).lower()
    return "connection closed" in message
