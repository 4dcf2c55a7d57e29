from __future__ import annotations

import pytest

from mcp_orchestrator.config import ServerDescriptor
from mcp_orchestrator.errors import ServerNotFoundError
from mcp_orchestrator.kinds import GraphQueryStrategy, ServerKind
from mcp_orchestrator.registry import ServerRegistry, ServerRuntime


class _StubTransport:
    def __init__(self, alive: bool = True):
        self.alive = alive

    def is_alive(self) -> bool:
        return self.alive


def _descriptor(name: str, **kwargs) -> ServerDescriptor:
    return ServerDescriptor(name=name, command="run-" + name, **kwargs)


def test_register_and_lookup_in_order():
    registry = ServerRegistry([_descriptor("b"), _descriptor("a"), _descriptor("off", enabled=False)])
    assert registry.names() == ["b", "a", "off"]
    assert [d.name for d in registry.list_enabled()] == ["b", "a"]
    assert registry.get("a").command == "run-a"
    assert "off" in registry
    assert len(registry) == 3


def test_unknown_name_raises():
    registry = ServerRegistry()
    with pytest.raises(ServerNotFoundError) as excinfo:
        registry.get("nope")
    assert isinstance(excinfo.value, ValueError)
    with pytest.raises(ServerNotFoundError):
        registry.strategy("nope")


def test_kind_is_resolved_to_a_strategy_at_registration():
    registry = ServerRegistry([_descriptor("graph", kind=ServerKind.GRAPH_QUERY)])
    strategy = registry.strategy("graph")
    assert isinstance(strategy, GraphQueryStrategy)
    assert strategy.default_tool == "Lokka-Microsoft"


def test_reregistering_replaces_descriptor_but_keeps_runtime():
    registry = ServerRegistry([_descriptor("svc")])
    runtime = ServerRuntime(transport=_StubTransport(), descriptor=registry.get("svc"))
    registry.attach("svc", runtime)

    registry.register(_descriptor("svc", args=("--new",)))
    assert registry.get("svc").args == ("--new",)
    assert registry.runtime("svc") is runtime


def test_runtime_bookkeeping():
    registry = ServerRegistry([_descriptor("svc")])
    with pytest.raises(ServerNotFoundError):
        registry.attach("ghost", ServerRuntime(transport=_StubTransport(), descriptor=registry.get("svc")))

    runtime = ServerRuntime(transport=_StubTransport(alive=False), descriptor=registry.get("svc"))
    registry.attach("svc", runtime)
    assert registry.runtimes() == {"svc": runtime}
    assert not registry.runtime("svc").is_alive()
    assert registry.detach("svc") is runtime
    assert registry.detach("svc") is None
    assert registry.runtime("svc") is None
