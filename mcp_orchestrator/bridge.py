"""
Bridge between MCP tool servers and LangChain.

Converts the tools a server advertises into LangChain StructuredTools
whose calls go through the ToolInvoker, so an agent can use them like any
other tool.

Usage:
    from mcp_orchestrator.bridge import mcp_to_langchain_tool, langchain_tools

    # Single tool
    lc_tool = mcp_to_langchain_tool(invoker, "docs", "microsoft_docs_search")

    # Every tool on a server
    tools = langchain_tools(invoker, "docs")
"""

from __future__ import annotations

from typing import Any

from langchain_core.tools import StructuredTool

from .errors import OrchestratorError
from .manager import ToolInvoker


def _args_schema(tool_name: str, tool_schema: dict | None) -> dict:
    schema = (tool_schema or {}).get("inputSchema")
    if not isinstance(schema, dict):
        schema = {}
    return {
        "title": tool_name,
        "type": "object",
        "properties": {},
        **schema,
    }


def mcp_to_langchain_tool(
    invoker: ToolInvoker,
    server: str,
    tool_name: str,
    description_override: str | None = None,
    tool_schema: dict | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps an MCP tool call.

    The returned tool, when invoked by an agent, calls tools/call on the
    given server and returns the normalized result as text.

    Args:
        invoker: The ToolInvoker that owns the server
        server: Which server the tool lives on
        tool_name: The tool name (as advertised by the server)
        description_override: Optional override for the tool description
        tool_schema: The tool's schema, if already discovered

    Returns:
        A LangChain StructuredTool that proxies calls to the MCP server.
    """
    if tool_schema is None:
        tool_schema = next((t for t in invoker.tools(server) if t.get("name") == tool_name), None)

    if tool_schema:
        description = description_override or tool_schema.get("description") or tool_name
    else:
        description = description_override or f"MCP tool: {server}/{tool_name}"

    def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to MCP tool server."""
        try:
            result = invoker.call_tool(server, tool_name, kwargs)
        except OrchestratorError as e:
            return f"Error calling {server}/{tool_name}: {e}"
        text = result.as_text()
        return f"Error from {server}/{tool_name}: {text}" if result.is_error else text

    return StructuredTool.from_function(
        func=_call_mcp,
        name=tool_name,
        description=description,
        args_schema=_args_schema(tool_name, tool_schema),
    )


def langchain_tools(invoker: ToolInvoker, server: str) -> list[StructuredTool]:
    """Wrap every tool a server advertises."""
    return [
        mcp_to_langchain_tool(invoker, server, schema["name"], tool_schema=schema)
        for schema in invoker.tools(server)
        if schema.get("name")
    ]
