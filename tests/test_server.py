"""The StdioToolServer base class, driven in-process through StringIO pipes."""

from __future__ import annotations

import io
import json

from mcp_orchestrator.errors import INVALID_PARAMS, METHOD_NOT_FOUND, PARSE_ERROR
from mcp_orchestrator.server import StdioToolServer, ToolHandler
from mcp_orchestrator.servers.echo import EchoTool, FailTool, ReportTool


class UpperTool(ToolHandler):
    name = "upper"
    description = "Uppercases text"
    parameters = {"text": {"type": "string"}}

    def handle(self, params: dict) -> str:
        return params["text"].upper()


def _run(*messages) -> list[dict]:
    lines = [m if isinstance(m, str) else json.dumps(m) for m in messages]
    stdout = io.StringIO()
    server = StdioToolServer("test-server", "9.9.9", stdin=io.StringIO("\n".join(lines) + "\n"), stdout=stdout)
    for handler in (UpperTool(), EchoTool(), ReportTool(), FailTool()):
        server.register(handler)
    server.run()
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


def test_initialize_reports_server_info():
    [reply] = _run({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}})
    assert reply["result"]["serverInfo"] == {"name": "test-server", "version": "9.9.9"}
    assert reply["result"]["protocolVersion"] == "2024-11-05"


def test_notifications_get_no_reply():
    replies = _run(
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": 2, "method": "ping"},
    )
    assert replies == [{"jsonrpc": "2.0", "id": 2, "result": {}}]


def test_tools_list_uses_input_schema():
    [reply] = _run({"jsonrpc": "2.0", "id": 3, "method": "tools/list"})
    tools = {t["name"]: t for t in reply["result"]["tools"]}
    assert set(tools) == {"upper", "echo", "report", "fail"}
    assert tools["echo"]["inputSchema"]["required"] == ["message"]
    assert tools["upper"]["inputSchema"]["properties"] == {"text": {"type": "string"}}


def test_tools_call_wraps_result_in_content_envelope():
    replies = _run(
        {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "upper", "arguments": {"text": "abc"}}},
        {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "echo", "arguments": {"message": "hi"}}},
    )
    assert replies[0]["result"] == {"content": [{"type": "text", "text": "ABC"}], "isError": False}
    assert json.loads(replies[1]["result"]["content"][0]["text"]) == {"echoed": "hi", "length": 2}


def test_tool_failure_is_an_error_result():
    [reply] = _run({"jsonrpc": "2.0", "id": 6, "method": "tools/call", "params": {"name": "fail", "arguments": {"reason": "nope"}}})
    assert reply["result"]["isError"] is True
    assert "nope" in reply["result"]["content"][0]["text"]


def test_unknown_tool_and_method_errors():
    replies = _run(
        {"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {"name": "missing"}},
        {"jsonrpc": "2.0", "id": 8, "method": "bogus/method"},
        "this is not json",
    )
    assert replies[0]["error"]["code"] == INVALID_PARAMS
    assert replies[1]["error"]["code"] == METHOD_NOT_FOUND
    assert replies[2]["error"]["code"] == PARSE_ERROR
    assert replies[2]["id"] is None


def test_report_tool_prefixes_json_with_log_line():
    [reply] = _run({"jsonrpc": "2.0", "id": 9, "method": "tools/call",
                    "params": {"name": "report", "arguments": {"message": "two words"}}})
    text = reply["result"]["content"][0]["text"]
    assert text.startswith("Result for report - two words:")
    assert '"words": 2' in text
