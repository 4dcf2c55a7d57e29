"""
MCP tool orchestration — supervised tool servers behind one invoker.

Architecture:
    ┌──────────────┐            ┌──────────────┐   stdio / HTTP   ┌──────────────┐
    │  Classifier  │ ─────────→ │  ToolInvoker │ ───────────────→ │  Tool Server  │
    │ (heuristic + │  server,   │  (registry,  │     JSON-RPC     │ (subprocess)  │
    │  LLM refine) │  tool,args │  transports) │ ←─────────────── │               │
    └──────────────┘            └──────────────┘   normalized     └──────────────┘

Each stdio tool server is a child process owned by a ProcessSupervisor.
Its StdioTransport multiplexes concurrent JSON-RPC requests by id over
the process's stdin/stdout. Every reply is run through the Response
Normalizer before it reaches the caller.

The bridge (LangChain StructuredTools) is imported on demand so tool
servers built on StdioToolServer stay light.
"""

__version__ = "0.1.0"

from mcp_orchestrator.classifier import (
    LLMRefiner,
    QueryClassification,
    QueryClassifier,
    RefiningClassifier,
)
from mcp_orchestrator.config import (
    Credentials,
    ServerDescriptor,
    descriptor_from_record,
    load_server_configs,
)
from mcp_orchestrator.errors import (
    ConfigurationError,
    MethodNotFoundError,
    MissingEnvironmentError,
    NormalizationError,
    OrchestratorError,
    ProcessError,
    ProcessStartError,
    ProcessTerminatedError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    RpcError,
    ServerDisabledError,
    ServerNotFoundError,
)
from mcp_orchestrator.kinds import ServerKind, TransportKind
from mcp_orchestrator.manager import ToolInvoker
from mcp_orchestrator.normalizer import NormalizedResult, normalize
from mcp_orchestrator.registry import ServerRegistry
from mcp_orchestrator.supervisor import ProcessState, ProcessSupervisor
from mcp_orchestrator.transport import HttpTransport, PendingRequest, StdioTransport


# Bridge requires langchain tools, imported lazily
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_orchestrator.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def langchain_tools(*args, **kwargs):
    from mcp_orchestrator.bridge import langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "ConfigurationError",
    "Credentials",
    "HttpTransport",
    "LLMRefiner",
    "MethodNotFoundError",
    "MissingEnvironmentError",
    "NormalizationError",
    "NormalizedResult",
    "OrchestratorError",
    "PendingRequest",
    "ProcessError",
    "ProcessStartError",
    "ProcessState",
    "ProcessSupervisor",
    "ProcessTerminatedError",
    "ProtocolError",
    "QueryClassification",
    "QueryClassifier",
    "RefiningClassifier",
    "RequestCancelledError",
    "RequestTimeoutError",
    "RpcError",
    "ServerDescriptor",
    "ServerDisabledError",
    "ServerKind",
    "ServerNotFoundError",
    "ServerRegistry",
    "StdioTransport",
    "ToolInvoker",
    "TransportKind",
    "descriptor_from_record",
    "langchain_tools",
    "load_server_configs",
    "mcp_to_langchain_tool",
    "normalize",
]
