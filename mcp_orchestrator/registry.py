"""
Server Registry — the single source of truth for tool server configuration.

Maps a logical server name to its ServerDescriptor, the KindStrategy the
descriptor's kind resolved to, and (once started) its live runtime.
Re-registering a name replaces the descriptor but leaves a running process
alone; stop it first if the new settings should apply.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from .config import ServerDescriptor
from .errors import ServerNotFoundError
from .kinds import KindStrategy, strategy_for
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class ServerRuntime:
    """A started transport plus what the server told us during the handshake."""
    transport: Transport
    descriptor: ServerDescriptor
    server_info: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    def is_alive(self) -> bool:
        return self.transport.is_alive()


class ServerRegistry:
    """Name → descriptor (+ strategy, + live runtime)."""

    def __init__(self, descriptors: list[ServerDescriptor] | None = None):
        self._descriptors: dict[str, ServerDescriptor] = {}
        self._strategies: dict[str, KindStrategy] = {}
        self._runtimes: dict[str, ServerRuntime] = {}
        self._lock = threading.RLock()
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: ServerDescriptor) -> None:
        """Register a tool server (does not start it)."""
        with self._lock:
            replaced = descriptor.name in self._descriptors
            self._descriptors[descriptor.name] = descriptor
            self._strategies[descriptor.name] = strategy_for(descriptor.kind)
            running = descriptor.name in self._runtimes
        verb = "Replaced" if replaced else "Registered"
        logger.info(f"{verb} server: {descriptor.describe()}")
        if replaced and running:
            logger.info(f"Server {descriptor.name} is running; new settings apply after it is restarted")

    def get(self, name: str) -> ServerDescriptor:
        with self._lock:
            descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise ServerNotFoundError(name)
        return descriptor

    def strategy(self, name: str) -> KindStrategy:
        with self._lock:
            strategy = self._strategies.get(name)
        if strategy is None:
            raise ServerNotFoundError(name)
        return strategy

    def list_enabled(self) -> list[ServerDescriptor]:
        """Enabled descriptors in registration order."""
        with self._lock:
            return [d for d in self._descriptors.values() if d.enabled]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._descriptors)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._descriptors

    def __len__(self) -> int:
        with self._lock:
            return len(self._descriptors)

    # -- runtimes ------------------------------------------------------

    def attach(self, name: str, runtime: ServerRuntime) -> None:
        self.get(name)
        with self._lock:
            self._runtimes[name] = runtime

    def runtime(self, name: str) -> ServerRuntime | None:
        with self._lock:
            return self._runtimes.get(name)

    def detach(self, name: str) -> ServerRuntime | None:
        with self._lock:
            return self._runtimes.pop(name, None)

    def runtimes(self) -> dict[str, ServerRuntime]:
        with self._lock:
            return dict(self._runtimes)
