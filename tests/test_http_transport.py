"""HttpTransport over httpx.MockTransport, with no network access."""

from __future__ import annotations

import json

import httpx
import pytest

from mcp_orchestrator.config import ServerDescriptor
from mcp_orchestrator.errors import (
    HttpTransportError,
    MethodNotFoundError,
    ProcessError,
    ProtocolError,
    RequestTimeoutError,
)
from mcp_orchestrator.kinds import ServerKind, TransportKind
from mcp_orchestrator.manager import ToolInvoker
from mcp_orchestrator.registry import ServerRegistry
from mcp_orchestrator.transport import HttpTransport

URL = "https://docs.test/api/mcp"


def _mcp_handler(seen: list[httpx.Request], sse: bool = False):
    """A tiny MCP server: initialize, tools/list, tools/call."""

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        message = json.loads(request.content)
        if "id" not in message:
            return httpx.Response(202)

        method = message["method"]
        if method == "initialize":
            result = {"protocolVersion": "2024-11-05", "capabilities": {"tools": {}},
                      "serverInfo": {"name": "docs-mock", "version": "2.0"}}
        elif method == "tools/list":
            result = {"tools": [{"name": "microsoft_docs_search", "inputSchema": {"type": "object"}}]}
        elif method == "tools/call":
            question = message["params"]["arguments"]["question"]
            result = {"content": [{"type": "text", "text": f"Docs about {question}"}]}
        else:
            body = {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "nope"}}
            return httpx.Response(200, json=body)

        body = {"jsonrpc": "2.0", "id": message["id"], "result": result}
        headers = {"Mcp-Session-Id": "session-123"}
        if sse:
            text = f"event: message\ndata: {json.dumps(body)}\n\n"
            headers["Content-Type"] = "text/event-stream"
            return httpx.Response(200, text=text, headers=headers)
        return httpx.Response(200, json=body, headers=headers)

    return handler


def _transport(handler) -> HttpTransport:
    transport = HttpTransport("docs", URL, client=httpx.Client(transport=httpx.MockTransport(handler)))
    transport.start()
    return transport


@pytest.mark.parametrize("sse", [False, True])
def test_request_roundtrip_and_session(sse):
    seen: list[httpx.Request] = []
    transport = _transport(_mcp_handler(seen, sse=sse))

    result = transport.request("initialize", {})
    assert result["serverInfo"]["name"] == "docs-mock"
    assert transport.session_id == "session-123"

    transport.notify("notifications/initialized", {})
    tools = transport.request("tools/list", {})
    assert tools["tools"][0]["name"] == "microsoft_docs_search"

    assert "Mcp-Session-Id" not in seen[0].headers
    assert all(r.headers["Mcp-Session-Id"] == "session-123" for r in seen[1:])
    assert "text/event-stream" in seen[0].headers["Accept"]


def test_send_normalizes_tool_result():
    transport = _transport(_mcp_handler([]))
    result = transport.send("tools/call", {"name": "microsoft_docs_search", "arguments": {"question": "Entra"}})
    assert result.as_text() == "Docs about Entra"


def test_rpc_error_is_typed():
    transport = _transport(_mcp_handler([]))
    with pytest.raises(MethodNotFoundError):
        transport.request("bogus/method", {})


def test_http_error_status():
    transport = _transport(lambda request: httpx.Response(503, text="maintenance"))
    with pytest.raises(HttpTransportError, match="503") as excinfo:
        transport.request("tools/list", {})
    assert isinstance(excinfo.value, ProcessError)


def test_timeout_maps_to_request_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    transport = _transport(handler)
    with pytest.raises(RequestTimeoutError):
        transport.request("ping", {})


def test_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(HttpTransportError):
        _transport(handler).request("ping", {})


def test_response_without_matching_id():
    transport = _transport(lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 999, "result": {}}))
    with pytest.raises(ProtocolError):
        transport.request("ping", {})


def test_not_started_and_stopped():
    transport = HttpTransport("docs", URL, client=httpx.Client(transport=httpx.MockTransport(_mcp_handler([]))))
    with pytest.raises(ProcessError):
        transport.request("ping", {})
    transport.start()
    assert transport.is_alive()
    transport.stop()
    assert not transport.is_alive()


class _MockHttpInvoker(ToolInvoker):
    def __init__(self, registry, handler):
        super().__init__(registry)
        self.handler = handler

    def _create_transport(self, descriptor):
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return HttpTransport(descriptor.name, descriptor.url, client=client)


def test_invoker_over_http():
    descriptor = ServerDescriptor(name="docs", kind=ServerKind.DOCS, transport=TransportKind.HTTP, url=URL)
    seen: list[httpx.Request] = []
    invoker = _MockHttpInvoker(ServerRegistry([descriptor]), _mcp_handler(seen, sse=True))
    try:
        result = invoker.call_tool("docs", "microsoft_docs_search", {"question": "conditional access"})
        assert result.as_text() == "Docs about conditional access"
        assert invoker.registry.runtime("docs").server_info["version"] == "2.0"
        pending = invoker.submit_tool("docs", "microsoft_docs_search", {"question": "MFA"})
        assert pending.done
        assert invoker.cancel("docs", pending) is False
        assert invoker.wait(pending).as_text() == "Docs about MFA"
        methods = [json.loads(r.content)["method"] for r in seen]
        assert methods == ["initialize", "notifications/initialized", "tools/call", "tools/call"]
    finally:
        invoker.stop_all()
