"""
Error taxonomy for the tool orchestration layer.

    OrchestratorError
    ├── ConfigurationError        unknown/disabled server, missing env (never retried)
    │   ├── ServerNotFoundError
    │   ├── ServerDisabledError
    │   └── MissingEnvironmentError
    ├── ProcessError              spawn failure or unexpected exit
    │   ├── ProcessStartError
    │   ├── ProcessTerminatedError
    │   └── HttpTransportError
    ├── ProtocolError             malformed line / unknown id (logged, dropped)
    ├── RpcError                  JSON-RPC error object from the server
    │   └── MethodNotFoundError
    ├── RequestTimeoutError
    ├── RequestCancelledError
    └── NormalizationError        unrecognized result shape

Configuration errors are also ValueErrors and process errors are also
RuntimeErrors, so callers catching the builtin types keep working.
"""

from __future__ import annotations

from typing import Any

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
PARSE_ERROR = -32700


class OrchestratorError(Exception):
    """Base class for every error raised by mcp_orchestrator."""


class ConfigurationError(OrchestratorError, ValueError):
    """The request names a server that cannot be used as configured."""


class ServerNotFoundError(ConfigurationError):
    def __init__(self, name: str):
        self.server = name
        super().__init__(f"MCP server '{name}' not found")


class ServerDisabledError(ConfigurationError):
    def __init__(self, name: str):
        self.server = name
        super().__init__(f"MCP server '{name}' is disabled")


class MissingEnvironmentError(ConfigurationError):
    def __init__(self, name: str, missing: list[str]):
        self.server = name
        self.missing = list(missing)
        super().__init__(
            f"MCP server '{name}' requires environment variables: {', '.join(self.missing)}"
        )


class ProcessError(OrchestratorError, RuntimeError):
    """A tool server process could not be started or went away."""


class ProcessStartError(ProcessError):
    def __init__(self, name: str, command: list[str], reason: str):
        self.server = name
        self.command = list(command)
        super().__init__(f"Failed to start MCP server '{name}' ({' '.join(command)}): {reason}")


class ProcessTerminatedError(ProcessError):
    def __init__(self, name: str, returncode: int | None = None, stderr: str = ""):
        self.server = name
        self.returncode = returncode
        self.stderr = stderr
        message = f"MCP server '{name}' process terminated"
        if returncode is not None:
            message += f" (exit code {returncode})"
        if stderr:
            message += f". stderr: {stderr[-500:]}"
        super().__init__(message)


class HttpTransportError(ProcessError):
    """The HTTP endpoint of a tool server could not be reached or refused the request."""


class ProtocolError(OrchestratorError):
    """A line on the wire that is not a usable JSON-RPC message."""


class RpcError(OrchestratorError):
    """A well-formed JSON-RPC error object returned by a tool server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP Error {code}: {message}")

    @classmethod
    def from_error(cls, error: dict) -> RpcError:
        code = error.get("code", INTERNAL_ERROR)
        message = str(error.get("message", "Unknown error"))
        data = error.get("data")
        if code == METHOD_NOT_FOUND:
            return MethodNotFoundError(code, message, data)
        return cls(code, message, data)


class MethodNotFoundError(RpcError):
    pass


class RequestTimeoutError(OrchestratorError, TimeoutError):
    def __init__(self, server: str, method: str, timeout: float):
        self.server = server
        self.method = method
        self.timeout = timeout
        super().__init__(f"MCP request timeout for method '{method}' on '{server}' after {timeout:g}s")


class RequestCancelledError(OrchestratorError):
    def __init__(self, server: str, method: str):
        self.server = server
        self.method = method
        super().__init__(f"MCP request '{method}' on '{server}' was cancelled")


class NormalizationError(OrchestratorError):
    """The result payload matched none of the known envelope shapes."""

    def __init__(self, reason: str, raw: Any):
        self.reason = reason
        self.raw = raw
        preview = repr(raw)
        if len(preview) > 300:
            preview = preview[:300] + "..."
        super().__init__(f"Unrecognized result shape: {reason}. Raw payload: {preview}")
