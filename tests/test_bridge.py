from __future__ import annotations

import json

from langchain_core.tools import StructuredTool

from mcp_orchestrator.bridge import langchain_tools, mcp_to_langchain_tool


def test_server_tools_become_structured_tools(registry, invoker, echo_descriptor):
    registry.register(echo_descriptor("docs"))

    tools = {tool.name: tool for tool in langchain_tools(invoker, "docs")}
    assert set(tools) == {"echo", "report", "fail", "hang"}
    assert all(isinstance(tool, StructuredTool) for tool in tools.values())
    assert tools["echo"].description.startswith("Echoes back")

    output = tools["echo"].invoke({"message": "from langchain"})
    assert json.loads(output) == {"echoed": "from langchain", "length": 14}


def test_tool_errors_are_returned_as_text(registry, invoker, echo_descriptor):
    registry.register(echo_descriptor("docs"))

    fail = mcp_to_langchain_tool(invoker, "docs", "fail")
    assert fail.invoke({"reason": "no quota"}).startswith("Error from docs/fail")

    schema = {"name": "missing", "inputSchema": {"type": "object", "properties": {"message": {"type": "string"}}}}
    missing = mcp_to_langchain_tool(invoker, "docs", "missing", description_override="Not there", tool_schema=schema)
    assert missing.description == "Not there"
    assert missing.invoke({"message": "x"}).startswith("Error calling docs/missing")
