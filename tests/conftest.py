"""Shared fixtures: descriptors for the echo mock server and a torn-down invoker."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from mcp_orchestrator import ServerDescriptor, ServerKind, ServerRegistry, ToolInvoker

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _pythonpath() -> str:
    return os.pathsep.join(p for p in (str(PROJECT_ROOT), os.environ.get("PYTHONPATH")) if p)


@pytest.fixture
def echo_descriptor():
    """Factory: descriptor that launches the echo mock server with optional flags."""

    def make(name: str = "docs", *flags: str, kind: ServerKind = ServerKind.DOCS,
             enabled: bool = True, environment: dict | None = None) -> ServerDescriptor:
        env = {"PYTHONPATH": _pythonpath()}
        env.update(environment or {})
        return ServerDescriptor(
            name=name,
            kind=kind,
            command=sys.executable,
            args=("-m", "mcp_orchestrator.servers.echo", *flags),
            environment=env,
            enabled=enabled,
        )

    return make


@pytest.fixture
def python_descriptor():
    """Factory: descriptor that runs an inline Python snippet."""

    def make(code: str, name: str = "snippet") -> ServerDescriptor:
        return ServerDescriptor(
            name=name,
            kind=ServerKind.GENERIC_STDIO,
            command=sys.executable,
            args=("-c", code),
        )

    return make


@pytest.fixture
def registry():
    return ServerRegistry()


@pytest.fixture
def invoker(registry):
    invoker = ToolInvoker(registry, request_timeout=10.0, probe_timeout=5.0, grace_period=2.0)
    yield invoker
    invoker.stop_all()
