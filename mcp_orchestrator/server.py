"""
MCP tool server base class.

A tool server is a standalone process that:
1. Reads JSON-RPC requests from stdin, one per line
2. Dispatches tools/call to registered ToolHandlers
3. Writes MCP-shaped JSON-RPC responses to stdout

To create a tool server:

    from mcp_orchestrator.server import StdioToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = StdioToolServer("my-server")
        server.register(MyTool())
        server.run()

stdout carries protocol messages only; log to stderr.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import IO, Any

from .errors import INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, PARSE_ERROR

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: tuple[str, ...] = ()

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given arguments.

        Args:
            params: Dict of argument name → value

        Returns:
            A string (sent as a text item) or any JSON value (sent as
            its JSON text).
        """
        ...

    def get_schema(self) -> dict:
        """Return the MCP tool schema for discovery."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


@dataclass
class Resource:
    """A static text resource served through resources/list and resources/read."""
    uri: str
    name: str
    text: str
    mime_type: str = "text/plain"

    def listing(self) -> dict:
        return {"uri": self.uri, "name": self.name, "mimeType": self.mime_type}


class ToolServerError(Exception):
    """Raised inside dispatch to send a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        self.code = code
        super().__init__(message)


def text_content(result: Any, is_error: bool = False) -> dict:
    """Wrap a tool result in an MCP content envelope."""
    text = result if isinstance(result, str) else json.dumps(result)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Supports methods:
        - "initialize"     → server info and capabilities
        - "tools/list"     → {"tools": [...]}
        - "tools/call"     → content envelope with isError
        - "resources/list" → {"resources": [...]}
        - "resources/read" → {"contents": [...]}
        - "ping"           → {}
    - Notifications (no id) never get a reply
    """

    def __init__(self, name: str = "mcp-tool-server", version: str = "0.1.0",
                 stdin: IO[str] | None = None, stdout: IO[str] | None = None):
        self.name = name
        self.version = version
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self._handlers: dict[str, ToolHandler] = {}
        self._resources: dict[str, Resource] = {}
        self._write_lock = threading.Lock()

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def add_resource(self, resource: Resource) -> None:
        self._resources[resource.uri] = resource

    def run(self) -> None:
        """
        Main loop: read requests from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        logger.info(f"Tool server {self.name} starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        for line in self.stdin:
            line = line.strip()
            if not line:
                continue

            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self.write_error(None, PARSE_ERROR, f"Parse error: {e}")
                continue

            self.handle_message(request)

    def handle_message(self, request: dict) -> None:
        """Dispatch one decoded message and write its reply (if it needs one)."""
        if "id" not in request:
            logger.debug(f"Notification: {request.get('method')}")
            return

        request_id = request.get("id")
        method = request.get("method", "")
        params = request.get("params") or {}

        try:
            result = self.dispatch(method, params)
        except ToolServerError as e:
            self.write_error(request_id, e.code, str(e))
            return
        except Exception as e:
            logger.exception(f"{method} failed")
            self.write_error(request_id, INTERNAL_ERROR, str(e))
            return
        self.write_result(request_id, result)

    def dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            return self.call_tool(params.get("name", ""), params.get("arguments") or {})

        if method == "resources/list":
            return {"resources": [r.listing() for r in self._resources.values()]}

        if method == "resources/read":
            resource = self._resources.get(params.get("uri", ""))
            if resource is None:
                raise ToolServerError(INVALID_PARAMS, f"Unknown resource: '{params.get('uri')}'")
            return {"contents": [{"uri": resource.uri, "mimeType": resource.mime_type, "text": resource.text}]}

        raise ToolServerError(METHOD_NOT_FOUND, f"Method not found: '{method}'")

    def call_tool(self, tool_name: str, arguments: dict) -> dict:
        handler = self._handlers.get(tool_name)
        if not handler:
            raise ToolServerError(
                INVALID_PARAMS,
                f"Unknown tool: '{tool_name}'. Available: {list(self._handlers.keys())}",
            )
        try:
            return text_content(handler.handle(arguments))
        except Exception as e:
            # Tool failures are results, not protocol errors
            logger.warning(f"Tool {tool_name} failed: {e}")
            return text_content(f"Error: {e}", is_error=True)

    def write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})

    def _write(self, message: dict) -> None:
        with self._write_lock:
            self.stdout.write(json.dumps(message) + "\n")
            self.stdout.flush()
