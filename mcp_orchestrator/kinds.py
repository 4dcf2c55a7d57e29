"""
Server kinds and their per-kind strategies.

A descriptor's kind is resolved once, when it is registered, into a
KindStrategy. The strategy knows which tool a routed query should call,
which environment the server needs, and how to turn extracted query
details into tool arguments.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from urllib.parse import quote_plus

from .errors import ConfigurationError


class ServerKind(str, Enum):
    FETCH = "fetch"
    GRAPH_QUERY = "graph-query"
    DOCS = "docs"
    GENERIC_STDIO = "generic-stdio"


class TransportKind(str, Enum):
    STDIO = "stdio"
    HTTP = "http"


# Type strings found in existing configuration files
KIND_ALIASES: dict[str, ServerKind] = {
    "fetch": ServerKind.FETCH,
    "graph-query": ServerKind.GRAPH_QUERY,
    "graph": ServerKind.GRAPH_QUERY,
    "lokka": ServerKind.GRAPH_QUERY,
    "external-lokka": ServerKind.GRAPH_QUERY,
    "docs": ServerKind.DOCS,
    "microsoft-docs": ServerKind.DOCS,
    "generic-stdio": ServerKind.GENERIC_STDIO,
    "custom": ServerKind.GENERIC_STDIO,
    "stdio": ServerKind.GENERIC_STDIO,
}

DEFAULT_SEARCH_URL = "https://www.bing.com/search?q={query}"


class KindStrategy:
    """Behaviour that differs by server kind."""

    kind: ServerKind = ServerKind.GENERIC_STDIO
    default_tool: str | None = None
    required_env: tuple[str, ...] = ()

    def build_arguments(self, text: str, details: dict[str, Any]) -> dict[str, Any]:
        """Turn a query and the details extracted from it into tool arguments."""
        return dict(details)

    def missing_environment(self, environment: dict[str, str]) -> list[str]:
        return [key for key in self.required_env if not environment.get(key)]


class FetchStrategy(KindStrategy):
    kind = ServerKind.FETCH
    default_tool = "fetch"

    def __init__(self, search_url: str = DEFAULT_SEARCH_URL):
        self.search_url = search_url

    def build_arguments(self, text: str, details: dict[str, Any]) -> dict[str, Any]:
        url = details.get("url") or self.search_url.format(query=quote_plus(text.strip()))
        return {"url": url}


class GraphQueryStrategy(KindStrategy):
    kind = ServerKind.GRAPH_QUERY
    default_tool = "Lokka-Microsoft"
    required_env = ("TENANT_ID", "CLIENT_ID")

    def build_arguments(self, text: str, details: dict[str, Any]) -> dict[str, Any]:
        arguments: dict[str, Any] = {
            "apiType": "graph",
            "method": str(details.get("method") or "get").lower(),
            "path": details.get("path") or "/me",
        }
        params = details.get("query_params")
        if params:
            # The graph tool only accepts string-valued query parameters
            arguments["queryParams"] = {k: str(v) for k, v in params.items()}
        return arguments


class DocsStrategy(KindStrategy):
    kind = ServerKind.DOCS
    default_tool = "microsoft_docs_search"

    def build_arguments(self, text: str, details: dict[str, Any]) -> dict[str, Any]:
        return {"question": details.get("question") or text.strip()}


_STRATEGIES: dict[ServerKind, type[KindStrategy]] = {
    ServerKind.FETCH: FetchStrategy,
    ServerKind.GRAPH_QUERY: GraphQueryStrategy,
    ServerKind.DOCS: DocsStrategy,
    ServerKind.GENERIC_STDIO: KindStrategy,
}


def parse_kind(value: str | ServerKind) -> ServerKind:
    """Map a configuration type string onto a ServerKind."""
    if isinstance(value, ServerKind):
        return value
    kind = KIND_ALIASES.get(str(value).strip().lower())
    if kind is None:
        raise ConfigurationError(
            f"Unsupported MCP server type: '{value}'. "
            f"Known types: {sorted(KIND_ALIASES)}"
        )
    return kind


def strategy_for(kind: ServerKind) -> KindStrategy:
    return _STRATEGIES[kind]()
