"""
Process supervision for stdio tool servers.

A ProcessSupervisor owns exactly one child process. It is the only
component that spawns or signals that process; the transport only reads
and writes its pipes. Lifecycle changes are published on a single
notification channel:

    supervisor.subscribe(listener)   # listener(ProcessEvent)

    NOT_STARTED → STARTING → RUNNING → STOPPING → STOPPED
                      │          │
                      └──────────┴──────→ FAILED
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import IO, Callable

from .config import ServerDescriptor
from .errors import (
    MissingEnvironmentError,
    ProcessError,
    ProcessStartError,
    ServerDisabledError,
)
from .kinds import KindStrategy, strategy_for

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ProcessHandle:
    """Runtime state of a supervised process."""
    pid: int | None
    state: ProcessState
    started_at: float | None = None
    returncode: int | None = None


@dataclass(frozen=True)
class ProcessEvent:
    """
    Lifecycle notification.

    kind is "stopping" (stop() was called, the process is still alive) or
    "exited" (the process went away; expected is False for crashes).
    """
    server: str
    kind: str
    returncode: int | None = None
    expected: bool = True


ProcessListener = Callable[[ProcessEvent], None]


def resolve_command(argv: list[str]) -> list[str]:
    """Resolve the executable on PATH (``npx`` → ``npx.cmd`` on Windows)."""
    if not argv:
        return argv
    first = argv[0]
    resolved = shutil.which(first)
    if not resolved and os.name == "nt" and not first.lower().endswith(".cmd"):
        resolved = shutil.which(f"{first}.cmd")
    if resolved:
        return [resolved, *argv[1:]]
    return argv


class ProcessSupervisor:
    """Spawns, watches and stops one tool server process."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        strategy: KindStrategy | None = None,
    ):
        self.descriptor = descriptor
        self.grace_period = grace_period
        # Normally the strategy the registry resolved when the server was registered
        self.strategy = strategy or strategy_for(descriptor.kind)
        self._process: subprocess.Popen | None = None
        self._handle = ProcessHandle(pid=None, state=ProcessState.NOT_STARTED)
        self._stopping = False
        self._lock = threading.Lock()
        self._listeners: list[ProcessListener] = []
        self._watcher: threading.Thread | None = None
        # A crashed process whose pipes are still open for the transport to drain
        self._exited: subprocess.Popen | None = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def state(self) -> ProcessState:
        return self._handle.state

    @property
    def handle(self) -> ProcessHandle:
        return self._handle

    @property
    def stdin(self) -> IO[bytes] | None:
        return self._process.stdin if self._process else None

    @property
    def stdout(self) -> IO[bytes] | None:
        return self._process.stdout if self._process else None

    @property
    def stderr(self) -> IO[bytes] | None:
        return self._process.stderr if self._process else None

    def subscribe(self, listener: ProcessListener) -> None:
        self._listeners.append(listener)

    def is_running(self) -> bool:
        return (
            self._handle.state == ProcessState.RUNNING
            and self._process is not None
            and self._process.poll() is None
        )

    def build_environment(self) -> dict[str, str]:
        """Inherited environment overlaid with the descriptor's (descriptor wins)."""
        env = dict(os.environ)
        env.update(self.descriptor.environment)
        return env

    def start(self) -> ProcessHandle:
        """
        Spawn the configured command with stdin/stdout/stderr piped.

        Raises:
            ServerDisabledError: the descriptor is disabled.
            MissingEnvironmentError: a variable the kind needs is absent.
            ProcessError: the process is already starting or running.
            ProcessStartError: the executable could not be launched.
        """
        if not self.descriptor.enabled:
            raise ServerDisabledError(self.name)

        env = self.build_environment()
        missing = self.strategy.missing_environment(env)
        if missing:
            raise MissingEnvironmentError(self.name, missing)

        with self._lock:
            if self._handle.state in (ProcessState.STARTING, ProcessState.RUNNING):
                raise ProcessError(f"MCP server '{self.name}' is already {self._handle.state.value}")
            self._handle = ProcessHandle(pid=None, state=ProcessState.STARTING)
            self._stopping = False
            exited, self._exited = self._exited, None
        if exited:
            _close_pipes(exited)

        argv = resolve_command(self.descriptor.argv)
        logger.info(f"Starting MCP server {self.name}: {' '.join(self.descriptor.argv)}")
        logger.debug(f"[{self.name}] environment keys from descriptor: {sorted(self.descriptor.environment)}")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except (FileNotFoundError, PermissionError, OSError) as e:
            with self._lock:
                self._handle = ProcessHandle(pid=None, state=ProcessState.FAILED)
            raise ProcessStartError(self.name, self.descriptor.argv, str(e)) from e

        with self._lock:
            self._process = process
            self._handle = ProcessHandle(
                pid=process.pid,
                state=ProcessState.RUNNING,
                started_at=time.time(),
            )

        self._watcher = threading.Thread(
            target=self._watch, args=(process,), name=f"mcp-watch-{self.name}", daemon=True,
        )
        self._watcher.start()
        logger.info(f"MCP server {self.name} running (pid {process.pid})")
        return self._handle

    def stop(self) -> None:
        """
        Stop the process: notify subscribers, terminate, wait up to the
        grace period, then kill. Calling it on a stopped process is a no-op.
        """
        with self._lock:
            process = self._process
            exited, self._exited = self._exited, None
            if process is None or self._stopping:
                if exited:
                    _close_pipes(exited)
                return
            self._stopping = True
            self._handle.state = ProcessState.STOPPING

        # Subscribers fail their pending requests before the handle goes away
        self._notify(ProcessEvent(self.name, "stopping"))

        logger.info(f"Stopping MCP server {self.name}...")
        try:
            if process.stdin:
                process.stdin.close()
        except OSError:
            pass

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"MCP server {self.name} did not exit within {self.grace_period:g}s, killing")
                process.kill()
                process.wait()

        if self._watcher and self._watcher is not threading.current_thread():
            self._watcher.join(timeout=self.grace_period)

        _close_pipes(process, stdin=False)

        with self._lock:
            self._handle = ProcessHandle(
                pid=None,
                state=ProcessState.STOPPED,
                started_at=None,
                returncode=process.returncode,
            )
            self._process = None
        logger.info(f"MCP server {self.name} stopped")

    def _watch(self, process: subprocess.Popen) -> None:
        returncode = process.wait()
        with self._lock:
            expected = self._stopping
            if not expected and self._process is process:
                state = ProcessState.STOPPED if returncode == 0 else ProcessState.FAILED
                self._handle = ProcessHandle(pid=None, state=state, returncode=returncode)
                self._process = None
                self._exited = process

        if expected:
            logger.debug(f"MCP server {self.name} exited with code {returncode}")
        else:
            logger.error(f"MCP server {self.name} exited unexpectedly with code {returncode}")
        self._notify(ProcessEvent(self.name, "exited", returncode=returncode, expected=expected))

    def _notify(self, event: ProcessEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"[{self.name}] process listener failed on {event.kind}")


def _close_pipes(process: subprocess.Popen, stdin: bool = True) -> None:
    streams = [process.stdout, process.stderr]
    if stdin:
        streams.append(process.stdin)
    for stream in streams:
        try:
            if stream:
                stream.close()
        except OSError:
            pass
