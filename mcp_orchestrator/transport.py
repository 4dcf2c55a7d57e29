"""
Transport layer for MCP tool communication.

Implements:
  - StdioTransport: JSON-RPC over the stdin/stdout pipes of a supervised
    subprocess, with concurrent requests multiplexed by id
  - HttpTransport: JSON-RPC over MCP's streamable HTTP (JSON or SSE replies)

Both expose the same request/send/notify interface, so the invoker does
not care where a tool server lives.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Iterator

import httpx

from .errors import (
    HttpTransportError,
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    OrchestratorError,
    ProcessError,
    ProcessTerminatedError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    RpcError,
)
from .normalizer import NormalizedResult, normalize
from .supervisor import ProcessEvent, ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_PROBE_TIMEOUT = 10.0
PROBE_METHODS = frozenset({"ping"})
READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 50
READER_DRAIN_TIMEOUT = 1.0

_decoder = json.JSONDecoder()


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request. A request without an id is a notification."""
    method: str
    params: dict[str, Any] | None = None
    id: int | str | None = None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.id is not None:
            message["id"] = self.id
        if self.params is not None:
            message["params"] = self.params
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, message: dict[str, Any]) -> JsonRpcResponse:
        error = message.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"code": INTERNAL_ERROR, "message": str(error)}
        return cls(id=message.get("id"), result=message.get("result"), error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def unwrap(self) -> Any:
        """Return the result, or raise the typed RpcError for an error response."""
        if self.error is not None:
            raise RpcError.from_error(self.error)
        return self.result


@dataclass
class PendingRequest:
    """Correlation record for one in-flight request."""
    id: int
    method: str
    issued_at: float
    deadline: float
    future: Future = field(default_factory=Future, repr=False)
    timer: threading.Timer | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()


class LineBuffer:
    """Accumulates raw bytes and yields complete newline-terminated lines."""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        if b"\n" not in data:
            return []
        *lines, rest = bytes(self._buffer).split(b"\n")
        self._buffer = bytearray(rest)
        return lines

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)


def decode_messages(line: str) -> Iterator[Any]:
    """
    Decode every JSON value on one line.

    Several independent values may arrive back to back on a single line.
    Raises ProtocolError at the first position that is not JSON; values
    decoded before that point have already been yielded.
    """
    index = 0
    length = len(line)
    while index < length:
        while index < length and line[index].isspace():
            index += 1
        if index >= length:
            return
        try:
            value, index = _decoder.raw_decode(line, index)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Non-JSON output: {line[index:index + 100]!r}") from e
        yield value


class Transport(ABC):
    """Abstract transport layer for MCP communication."""

    name: str = ""

    @abstractmethod
    def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the transport (e.g., terminate subprocess)."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...

    @abstractmethod
    def request(self, method: str, params: dict[str, Any] | None = None,
                timeout: float | None = None) -> Any:
        """Send a request and return the raw JSON-RPC result."""
        ...

    @abstractmethod
    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no reply is expected."""
        ...

    def send(self, method: str, params: dict[str, Any] | None = None,
             timeout: float | None = None) -> NormalizedResult:
        """Send a request and return its normalized result."""
        return normalize(self.request(method, params, timeout))

    def submit(self, method: str, params: dict[str, Any] | None = None,
               timeout: float | None = None) -> PendingRequest:
        """
        Issue a request and return its PendingRequest.

        Transports without a pending table run the request to completion
        here, so the handle comes back already resolved.
        """
        now = time.monotonic()
        pending = PendingRequest(id=0, method=method, issued_at=now, deadline=now)
        try:
            pending.future.set_result(self.request(method, params, timeout))
        except OrchestratorError as e:
            pending.future.set_exception(e)
        return pending

    def wait(self, pending: PendingRequest) -> Any:
        """Block until the request is resolved; return its result or raise its error."""
        return pending.future.result()

    def cancel(self, pending: PendingRequest) -> bool:
        """Withdraw one request. Returns True if it was still pending."""
        return False


class StdioTransport(Transport):
    """
    JSON-RPC over the stdin/stdout pipes of a supervised subprocess.

    Any number of callers may have requests in flight. Each request gets a
    fresh id and a PendingRequest entry; a background reader thread matches
    responses to entries by id, regardless of arrival order.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self.supervisor = supervisor
        self.name = supervisor.name
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._closed = True
        supervisor.subscribe(self._on_process_event)

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Start the supervised process and the reader threads."""
        self.supervisor.start()
        self._closed = False
        self._stderr_tail.clear()
        self._reader = threading.Thread(
            target=self._read_stdout, args=(self.supervisor.stdout,),
            name=f"mcp-stdout-{self.name}", daemon=True,
        )
        self._stderr_reader = threading.Thread(
            target=self._read_stderr, args=(self.supervisor.stderr,),
            name=f"mcp-stderr-{self.name}", daemon=True,
        )
        self._reader.start()
        self._stderr_reader.start()

    def stop(self) -> None:
        """Fail every pending request and stop the process."""
        self.supervisor.stop()
        self._closed = True
        # A process that already crashed has no "stopping" event to fire
        self._fail_all(ProcessTerminatedError(self.name, stderr=self.stderr_tail))

    def is_alive(self) -> bool:
        return not self._closed and self.supervisor.is_running()

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def next_id(self) -> int:
        """Generate the next request ID."""
        return next(self._ids)

    # -- requests ------------------------------------------------------

    def submit(self, method: str, params: dict[str, Any] | None = None,
               timeout: float | None = None) -> PendingRequest:
        """
        Write a request and register it as pending without waiting.

        Args:
            method: JSON-RPC method name
            params: Method parameters
            timeout: Seconds until the request expires. Defaults to the
                     probe timeout for liveness probes, otherwise the
                     request timeout.

        Returns:
            The PendingRequest; pass it to wait() or cancel().
        """
        if not self.is_alive():
            raise ProcessError(f"MCP server '{self.name}' is not running. Call start() first.")

        if timeout is None:
            timeout = self.probe_timeout if method in PROBE_METHODS else self.request_timeout

        now = time.monotonic()
        with self._pending_lock:
            request_id = self.next_id()
            pending = PendingRequest(
                id=request_id, method=method, issued_at=now, deadline=now + timeout,
            )
            self._pending[request_id] = pending

        pending.timer = threading.Timer(timeout, self._expire, args=(request_id, timeout))
        pending.timer.daemon = True
        pending.timer.start()

        request = JsonRpcRequest(method=method, params=params, id=request_id)
        try:
            self._write(request)
        except ProcessError as e:
            self._settle(request_id, error=e)
        return pending

    def cancel(self, pending: PendingRequest) -> bool:
        """
        Withdraw one request. Other requests and the process are unaffected.

        Returns:
            True if the request was still pending.
        """
        cancelled = self._settle(pending.id, error=RequestCancelledError(self.name, pending.method))
        if cancelled:
            logger.debug(f"[{self.name}] cancelled request {pending.id} ({pending.method})")
            try:
                self.notify("notifications/cancelled", {"requestId": pending.id, "reason": "cancelled"})
            except ProcessError as e:
                logger.debug(f"[{self.name}] could not send cancellation: {e}")
        return cancelled

    def request(self, method: str, params: dict[str, Any] | None = None,
                timeout: float | None = None) -> Any:
        return self.wait(self.submit(method, params, timeout))

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self.is_alive():
            raise ProcessError(f"MCP server '{self.name}' is not running. Call start() first.")
        self._write(JsonRpcRequest(method=method, params=params))

    # -- internals -----------------------------------------------------

    def _write(self, message: JsonRpcRequest | dict) -> None:
        line = message.to_json() if isinstance(message, JsonRpcRequest) else json.dumps(message)
        stdin = self.supervisor.stdin
        if stdin is None:
            raise ProcessTerminatedError(self.name, stderr=self.stderr_tail)
        logger.debug(f"[{self.name}] SENT: {line}")
        try:
            with self._write_lock:
                stdin.write(line.encode("utf-8") + b"\n")
                stdin.flush()
        except (OSError, ValueError) as e:
            raise ProcessTerminatedError(self.name, stderr=self.stderr_tail) from e

    def _settle(self, request_id: Any, result: Any = None, error: BaseException | None = None) -> bool:
        """Resolve a pending entry exactly once. Returns False if it was already gone."""
        with self._pending_lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer:
            pending.timer.cancel()
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _expire(self, request_id: int, timeout: float) -> None:
        with self._pending_lock:
            pending = self._pending.get(request_id)
        if pending is None:
            return
        if self._settle(request_id, error=RequestTimeoutError(self.name, pending.method, timeout)):
            logger.warning(f"[{self.name}] request {request_id} ({pending.method}) timed out after {timeout:g}s")

    def _fail_all(self, error: BaseException) -> None:
        with self._pending_lock:
            ids = list(self._pending)
        failed = sum(1 for request_id in ids if self._settle(request_id, error=error))
        if failed:
            logger.warning(f"[{self.name}] failed {failed} pending request(s): {error}")

    def _on_process_event(self, event: ProcessEvent) -> None:
        if event.kind == "stopping":
            self._closed = True
            self._fail_all(ProcessTerminatedError(self.name, stderr=self.stderr_tail))
            return
        # The process is gone; let the reader drain what it already wrote
        reader = self._reader
        if reader and reader is not threading.current_thread():
            reader.join(timeout=READER_DRAIN_TIMEOUT)
        self._closed = True
        self._fail_all(ProcessTerminatedError(self.name, event.returncode, self.stderr_tail))

    def _read_stdout(self, stream) -> None:
        buffer = LineBuffer()
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for raw in buffer.feed(chunk):
                    self._handle_line(raw)
        except (OSError, ValueError) as e:
            logger.debug(f"[{self.name}] stdout reader stopped: {e}")
        if buffer.pending.strip():
            self._handle_line(buffer.pending)
        logger.debug(f"[{self.name}] stdout closed")

    def _read_stderr(self, stream) -> None:
        try:
            for raw in iter(stream.readline, b""):
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._stderr_tail.append(text)
                    logger.debug(f"[{self.name} stderr]: {text}")
        except (OSError, ValueError):
            pass

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            for message in decode_messages(line):
                self._dispatch(message)
        except ProtocolError as e:
            logger.debug(f"[{self.name} stdout]: {e}")

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"[{self.name}] ignoring non-object message: {message!r:.100}")
            return

        if "method" in message:
            self._handle_server_message(message)
            return

        if "result" not in message and "error" not in message:
            logger.warning(f"[{self.name}] ignoring message without result or error: {message!r:.200}")
            return

        response = JsonRpcResponse.from_dict(message)
        request_id = response.id
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)

        logger.debug(f"[{self.name}] RECEIVED response for id={request_id}")
        if response.is_error:
            delivered = self._settle(request_id, error=RpcError.from_error(response.error))
        else:
            delivered = self._settle(request_id, result=response.result)
        if not delivered:
            logger.warning(f"[{self.name}] discarding response for unknown or expired request id {response.id}")

    def _handle_server_message(self, message: dict) -> None:
        method = message.get("method")
        if "id" not in message:
            logger.debug(f"[{self.name}] notification from server: {method}")
            return
        if method == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        try:
            self._write(reply)
        except ProcessError as e:
            logger.debug(f"[{self.name}] could not answer server request {method}: {e}")


class HttpTransport(Transport):
    """
    JSON-RPC over MCP streamable HTTP.

    Each request is a POST to the server URL. The reply is either a JSON
    body or a text/event-stream whose data lines carry JSON-RPC messages.
    """

    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.name = name
        self.url = url
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **(headers or {}),
        }
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.session_id: str | None = None
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._alive = False

    def start(self) -> None:
        if self._client is None:
            self._client = httpx.Client(timeout=self.request_timeout)
        self._alive = True
        logger.info(f"HTTP transport ready for {self.name}: {self.url}")

    def stop(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self._alive = False
        self.session_id = None

    def is_alive(self) -> bool:
        return self._alive and self._client is not None

    def next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def request(self, method: str, params: dict[str, Any] | None = None,
                timeout: float | None = None) -> Any:
        if timeout is None:
            timeout = self.probe_timeout if method in PROBE_METHODS else self.request_timeout
        request = JsonRpcRequest(method=method, params=params, id=self.next_id())
        response = self._post(request, timeout)
        return self._parse_response(response, request.id).unwrap()

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._post(JsonRpcRequest(method=method, params=params), self.probe_timeout)

    def _post(self, request: JsonRpcRequest, timeout: float) -> httpx.Response:
        if not self.is_alive():
            raise ProcessError(f"MCP server '{self.name}' is not running. Call start() first.")

        headers = dict(self.headers)
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id

        logger.debug(f"[{self.name}] POST {self.url}: {request.to_json()[:200]}")
        try:
            response = self._client.post(
                self.url, content=request.to_json(), headers=headers, timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.name, request.method, timeout) from e
        except httpx.HTTPError as e:
            raise HttpTransportError(f"HTTP request to MCP server '{self.name}' failed: {e}") from e

        session_id = response.headers.get("Mcp-Session-Id")
        if session_id and not self.session_id:
            self.session_id = session_id

        if response.status_code >= 400:
            raise HttpTransportError(
                f"MCP server '{self.name}' returned HTTP {response.status_code}: {response.text[:300]}"
            )
        return response

    def _parse_response(self, response: httpx.Response, request_id: int) -> JsonRpcResponse:
        content_type = response.headers.get("Content-Type", "")
        if "text/event-stream" in content_type:
            messages = list(_iter_sse_messages(response.text))
        else:
            try:
                body = response.json()
            except ValueError as e:
                raise ProtocolError(f"MCP server '{self.name}' sent a non-JSON body") from e
            messages = body if isinstance(body, list) else [body]

        for message in messages:
            if isinstance(message, dict) and message.get("id") == request_id:
                return JsonRpcResponse.from_dict(message)
        raise ProtocolError(f"MCP server '{self.name}' sent no response for request id {request_id}")


def _iter_sse_messages(text: str) -> Iterator[Any]:
    """Yield the JSON payload of each server-sent event."""
    data: list[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data.append(line[5:].lstrip())
        elif not line.strip() and data:
            payload = "\n".join(data)
            data = []
            try:
                yield json.loads(payload)
            except json.JSONDecodeError:
                logger.warning(f"Skipping non-JSON event data: {payload[:100]}")
