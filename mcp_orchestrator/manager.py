"""
Tool Invoker — the public façade over registered MCP tool servers.

Usage:
    registry = ServerRegistry(load_server_configs("servers.json"))
    invoker = ToolInvoker(registry)

    # Servers start lazily on first use
    tools = invoker.tools("docs")
    result = invoker.call_tool("docs", "microsoft_docs_search", {"question": "What is Entra ID?"})
    print(result.as_text())

    # A call the caller may give up on
    pending = invoker.submit_tool("docs", "microsoft_docs_search", {"question": "What is PIM?"})
    invoker.cancel("docs", pending)

    # Stop everything
    invoker.stop_all()
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from . import __version__
from .config import ServerDescriptor
from .errors import OrchestratorError, ServerDisabledError
from .kinds import TransportKind
from .normalizer import NormalizedResult, normalize
from .registry import ServerRegistry, ServerRuntime
from .supervisor import DEFAULT_GRACE_PERIOD, ProcessSupervisor
from .transport import (
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    HttpTransport,
    PendingRequest,
    StdioTransport,
    Transport,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-orchestrator", "version": __version__}


class ToolInvoker:
    """
    Routes list/call/read requests to the right tool server.

    Responsibilities:
    - Refuse unknown or disabled servers before touching any process
    - Lazily start servers (transport + MCP initialize handshake)
    - Issue JSON-RPC methods and normalize their results
    - Graceful shutdown
    """

    def __init__(
        self,
        registry: ServerRegistry,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ):
        self.registry = registry
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.grace_period = grace_period
        self._start_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- public API ----------------------------------------------------

    def list_tools(self, server: str) -> NormalizedResult:
        """Return the server's ``tools/list`` result, normalized."""
        return self._send(server, "tools/list", {})

    def tools(self, server: str) -> list[dict]:
        """The tool schemas a server advertises."""
        payload = self.list_tools(server).as_json()
        if isinstance(payload, dict):
            return list(payload.get("tools") or [])
        return list(payload)

    def call_tool(self, server: str, tool: str, arguments: dict[str, Any] | None = None) -> NormalizedResult:
        """
        Call a tool on a specific server.

        Args:
            server: Which server to call
            tool: Which tool on that server
            arguments: Tool parameters

        Returns:
            The normalized tool result.
        """
        return self.wait(self.submit_tool(server, tool, arguments))

    def submit_tool(self, server: str, tool: str, arguments: dict[str, Any] | None = None) -> PendingRequest:
        """
        Start a tool call without waiting for it.

        Pass the returned PendingRequest to wait() for the result, or to
        cancel() when the caller no longer wants it (e.g. the query was
        superseded). Other calls on the same server are unaffected.
        """
        transport = self._ensure_running(server)
        logger.info(f"Calling tool {server}/{tool}")
        return transport.submit("tools/call", {"name": tool, "arguments": arguments or {}})

    def wait(self, pending: PendingRequest) -> NormalizedResult:
        """
        Block until a submitted call resolves and normalize its result.
        Stopping the server while waiting fails the call too.
        """
        return normalize(pending.future.result())

    def cancel(self, server: str, pending: PendingRequest) -> bool:
        """
        Withdraw a submitted call; its waiter gets RequestCancelledError.

        Returns:
            True if the call was still pending.
        """
        self.registry.get(server)
        runtime = self.registry.runtime(server)
        return runtime.transport.cancel(pending) if runtime else False

    def list_resources(self, server: str) -> NormalizedResult:
        return self._send(server, "resources/list", {})

    def read_resource(self, server: str, uri: str) -> NormalizedResult:
        return self._send(server, "resources/read", {"uri": uri})

    def ping(self, server: str) -> bool:
        """Liveness probe with the short timeout."""
        transport = self._ensure_running(server)
        transport.request("ping", {}, timeout=self.probe_timeout)
        return True

    # -- lifecycle -----------------------------------------------------

    def start(self, server: str) -> ServerRuntime:
        """Start a server (if needed) and return its runtime."""
        self._ensure_running(server)
        return self.registry.runtime(server)

    def start_all(self) -> dict[str, bool]:
        """Start every enabled server. Returns {name: started}."""
        results = {}
        for descriptor in self.registry.list_enabled():
            try:
                self._ensure_running(descriptor.name)
                results[descriptor.name] = True
            except OrchestratorError as e:
                logger.error(f"Failed to start {descriptor.name}: {e}")
                results[descriptor.name] = False
        return results

    def stop(self, server: str) -> None:
        """Stop a server. Pending requests on it fail; stopping twice is a no-op."""
        runtime = self.registry.detach(server)
        if runtime:
            runtime.transport.stop()
            logger.info(f"Stopped {server}")

    def restart(self, server: str) -> ServerRuntime:
        """Stop a server and start it again with its current descriptor."""
        self.stop(server)
        return self.start(server)

    def stop_all(self) -> None:
        """Stop all running servers."""
        for server in list(self.registry.runtimes()):
            self.stop(server)

    def list_servers(self) -> dict[str, bool]:
        """List all registered servers and their running status."""
        return {name: self.is_running(name) for name in self.registry.names()}

    def is_running(self, server: str) -> bool:
        runtime = self.registry.runtime(server)
        return runtime is not None and runtime.is_alive()

    # -- internals -----------------------------------------------------

    def _send(self, server: str, method: str, params: dict[str, Any]) -> NormalizedResult:
        transport = self._ensure_running(server)
        raw = transport.request(method, params)
        return normalize(raw)

    def _lock_for(self, server: str) -> threading.Lock:
        with self._locks_guard:
            return self._start_locks.setdefault(server, threading.Lock())

    def _ensure_running(self, server: str) -> Transport:
        # Unknown or disabled names fail here, before any process work
        descriptor = self.registry.get(server)
        if not descriptor.enabled:
            raise ServerDisabledError(server)

        runtime = self.registry.runtime(server)
        if runtime and runtime.is_alive():
            return runtime.transport

        with self._lock_for(server):
            runtime = self.registry.runtime(server)
            if runtime and runtime.is_alive():
                return runtime.transport
            if runtime:
                logger.warning(f"Server {server} is no longer running; starting it again")
                self.registry.detach(server)
                runtime.transport.stop()

            descriptor = self.registry.get(server)
            transport = self._create_transport(descriptor)
            transport.start()
            try:
                runtime = self._handshake(descriptor, transport)
            except OrchestratorError:
                transport.stop()
                raise
            self.registry.attach(server, runtime)
            return transport

    def _create_transport(self, descriptor: ServerDescriptor) -> Transport:
        if descriptor.transport == TransportKind.HTTP:
            return HttpTransport(
                descriptor.name,
                descriptor.url,
                request_timeout=self.request_timeout,
                probe_timeout=self.probe_timeout,
            )
        supervisor = ProcessSupervisor(
            descriptor,
            grace_period=self.grace_period,
            strategy=self.registry.strategy(descriptor.name),
        )
        return StdioTransport(
            supervisor,
            request_timeout=self.request_timeout,
            probe_timeout=self.probe_timeout,
        )

    def _handshake(self, descriptor: ServerDescriptor, transport: Transport) -> ServerRuntime:
        result = transport.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        result = result if isinstance(result, dict) else {}
        transport.notify("notifications/initialized", {})

        runtime = ServerRuntime(
            transport=transport,
            descriptor=descriptor,
            server_info=result.get("serverInfo") or {},
            capabilities=result.get("capabilities") or {},
        )
        info = runtime.server_info
        logger.info(
            f"Started {descriptor.name}: {info.get('name', 'unknown')} {info.get('version', '')}".rstrip()
        )
        return runtime
