from __future__ import annotations

import threading

import pytest

from mcp_orchestrator.config import ServerDescriptor
from mcp_orchestrator.errors import (
    ConfigurationError,
    MissingEnvironmentError,
    ProcessError,
    ProcessStartError,
    ServerDisabledError,
)
from mcp_orchestrator.kinds import ServerKind
from mcp_orchestrator.supervisor import ProcessEvent, ProcessState, ProcessSupervisor, resolve_command

SLEEPER = "import time; time.sleep(30)"


def _wait_for_event(supervisor: ProcessSupervisor, kind: str) -> tuple[list[ProcessEvent], threading.Event]:
    events: list[ProcessEvent] = []
    seen = threading.Event()

    def listener(event: ProcessEvent) -> None:
        events.append(event)
        if event.kind == kind:
            seen.set()

    supervisor.subscribe(listener)
    return events, seen


def test_start_and_stop_twice(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor(SLEEPER), grace_period=2.0)
    handle = supervisor.start()
    assert handle.state == ProcessState.RUNNING
    assert handle.pid is not None
    assert supervisor.is_running()

    supervisor.stop()
    assert supervisor.state == ProcessState.STOPPED
    supervisor.stop()
    assert supervisor.state == ProcessState.STOPPED
    assert supervisor.handle.pid is None


def test_stop_before_start_is_a_noop(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor(SLEEPER))
    supervisor.stop()
    assert supervisor.state == ProcessState.NOT_STARTED


def test_start_while_running_fails(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor(SLEEPER), grace_period=2.0)
    supervisor.start()
    try:
        with pytest.raises(ProcessError, match="already running"):
            supervisor.start()
    finally:
        supervisor.stop()


def test_stopping_is_published_before_the_handle_is_cleared(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor(SLEEPER), grace_period=2.0)
    states = []
    supervisor.subscribe(lambda event: states.append((event.kind, supervisor.state, supervisor.handle.pid)))
    supervisor.start()
    supervisor.stop()

    kind, state, pid = states[0]
    assert kind == "stopping"
    assert state == ProcessState.STOPPING
    assert pid is not None


def test_missing_executable_is_a_start_error():
    descriptor = ServerDescriptor(name="ghost", command="definitely-not-a-real-mcp-binary")
    supervisor = ProcessSupervisor(descriptor)
    with pytest.raises(ProcessStartError) as excinfo:
        supervisor.start()
    assert excinfo.value.server == "ghost"
    assert supervisor.state == ProcessState.FAILED


def test_disabled_descriptor_is_refused():
    descriptor = ServerDescriptor(name="off", command="python", enabled=False)
    with pytest.raises(ServerDisabledError):
        ProcessSupervisor(descriptor).start()


def test_missing_required_environment(monkeypatch):
    monkeypatch.delenv("TENANT_ID", raising=False)
    monkeypatch.delenv("CLIENT_ID", raising=False)
    descriptor = ServerDescriptor(
        name="graph", kind=ServerKind.GRAPH_QUERY, command="npx",
        environment={"TENANT_ID": "tenant"},
    )
    supervisor = ProcessSupervisor(descriptor)
    with pytest.raises(MissingEnvironmentError) as excinfo:
        supervisor.start()
    assert excinfo.value.missing == ["CLIENT_ID"]
    assert isinstance(excinfo.value, ConfigurationError)
    assert supervisor.state == ProcessState.NOT_STARTED


def test_descriptor_environment_wins_over_inherited(monkeypatch):
    monkeypatch.setenv("MCP_TEST_SHARED", "inherited")
    monkeypatch.setenv("MCP_TEST_INHERITED_ONLY", "yes")
    descriptor = ServerDescriptor(name="env", command="x", environment={"MCP_TEST_SHARED": "descriptor"})
    env = ProcessSupervisor(descriptor).build_environment()
    assert env["MCP_TEST_SHARED"] == "descriptor"
    assert env["MCP_TEST_INHERITED_ONLY"] == "yes"


def test_crash_is_published_as_unexpected_exit(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor("import sys; sys.exit(3)"))
    events, seen = _wait_for_event(supervisor, "exited")
    supervisor.start()
    assert seen.wait(10)

    [event] = events
    assert event.returncode == 3
    assert event.expected is False
    assert supervisor.state == ProcessState.FAILED
    assert not supervisor.is_running()
    # Nothing left to stop
    supervisor.stop()
    assert supervisor.state == ProcessState.FAILED


def test_clean_exit_ends_stopped(python_descriptor):
    supervisor = ProcessSupervisor(python_descriptor("pass"))
    _, seen = _wait_for_event(supervisor, "exited")
    supervisor.start()
    assert seen.wait(10)
    assert supervisor.state == ProcessState.STOPPED
    assert supervisor.handle.returncode == 0


def test_resolve_command_finds_executables_on_path():
    resolved = resolve_command(["python3", "-V"])
    assert resolved[1:] == ["-V"]
    assert resolve_command(["no-such-binary-anywhere", "x"]) == ["no-such-binary-anywhere", "x"]
