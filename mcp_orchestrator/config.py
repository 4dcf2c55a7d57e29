"""
Server descriptors and configuration loading.

The config-loading collaborator hands over an ordered set of records, one
per tool server:

    {"name": "graph-query", "type": "lokka", "enabled": true,
     "command": "npx", "args": ["-y", "@merill/lokka"],
     "env": {"TENANT_ID": "...", "CLIENT_ID": "..."}}

Each record becomes an immutable ServerDescriptor that is registered with
the ServerRegistry at startup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .errors import ConfigurationError
from .kinds import ServerKind, TransportKind, parse_kind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerDescriptor:
    """Identity and launch recipe for one tool server."""
    name: str
    kind: ServerKind = ServerKind.GENERIC_STDIO
    transport: TransportKind = TransportKind.STDIO
    command: str | None = None
    args: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    enabled: bool = True
    url: str | None = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Server descriptor needs a name")
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(
            self, "environment",
            MappingProxyType({str(k): str(v) for k, v in self.environment.items()}),
        )
        if self.transport == TransportKind.STDIO and not self.command:
            raise ConfigurationError(f"MCP server '{self.name}' (stdio) needs a command")
        if self.transport == TransportKind.HTTP and not self.url:
            raise ConfigurationError(f"MCP server '{self.name}' (http) needs a url")

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args] if self.command else []

    def with_environment(self, extra: Mapping[str, str]) -> ServerDescriptor:
        """Return a copy whose environment is overlaid with ``extra``."""
        merged = dict(self.environment)
        merged.update(extra)
        return replace(self, environment=merged)

    def describe(self) -> str:
        """One-line summary that is safe to log (no environment values)."""
        target = " ".join(self.argv) if self.transport == TransportKind.STDIO else self.url
        keys = ",".join(sorted(self.environment)) or "-"
        state = "enabled" if self.enabled else "disabled"
        return f"{self.name} [{self.kind.value}/{self.transport.value}, {state}] {target} env={keys}"


@dataclass(frozen=True)
class Credentials:
    """Identifiers and bearer token supplied by the authentication collaborator."""
    tenant_id: str | None = None
    client_id: str | None = None
    access_token: str | None = None

    def as_environment(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.tenant_id:
            env["TENANT_ID"] = self.tenant_id
        if self.client_id:
            env["CLIENT_ID"] = self.client_id
        if self.access_token:
            env["ACCESS_TOKEN"] = self.access_token
            env["USE_CLIENT_TOKEN"] = "true"
        return env


def descriptor_from_record(record: Mapping[str, Any]) -> ServerDescriptor:
    """
    Validate one configuration record and build its descriptor.

    Args:
        record: {name, type, enabled, command?, args?, url?, env?}

    Returns:
        The immutable ServerDescriptor.

    Raises:
        ConfigurationError: missing name, unknown type, or a transport
            without its command/url.
    """
    if not isinstance(record, Mapping):
        raise ConfigurationError(f"Server record must be an object, got {type(record).__name__}")

    name = record.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"Server record is missing a name: {dict(record)}")

    kind = parse_kind(record.get("type", ServerKind.GENERIC_STDIO.value))

    command = record.get("command")
    url = record.get("url")
    if "transport" in record:
        try:
            transport = TransportKind(str(record["transport"]).lower())
        except ValueError:
            raise ConfigurationError(
                f"MCP server '{name}' has unknown transport '{record['transport']}'"
            ) from None
    else:
        transport = TransportKind.HTTP if url and not command else TransportKind.STDIO

    args = record.get("args") or []
    if not isinstance(args, (list, tuple)):
        raise ConfigurationError(f"MCP server '{name}' args must be a list")

    env = record.get("env") or {}
    if not isinstance(env, Mapping):
        raise ConfigurationError(f"MCP server '{name}' env must be an object")

    return ServerDescriptor(
        name=name,
        kind=kind,
        transport=transport,
        command=command,
        args=tuple(args),
        environment=env,
        enabled=bool(record.get("enabled", True)),
        url=url,
    )


def _records_from_document(document: Any) -> list[dict]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        if isinstance(document.get("servers"), list):
            return document["servers"]
        # Desktop-client style: {"mcpServers": {name: {...}}}
        if isinstance(document.get("mcpServers"), dict):
            return [
                {"name": name, **(entry or {})}
                for name, entry in document["mcpServers"].items()
            ]
    raise ConfigurationError(
        "Server config must be a list of records, {\"servers\": [...]} "
        "or {\"mcpServers\": {...}}"
    )


def load_server_configs(path: str | Path) -> list[ServerDescriptor]:
    """Read a JSON config file and return its descriptors in file order."""
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Server config not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Server config {path} is not valid JSON: {e}") from e

    descriptors = [descriptor_from_record(r) for r in _records_from_document(document)]

    names = [d.name for d in descriptors]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate server names in {path}: {duplicates}")

    logger.info(f"Loaded {len(descriptors)} server configs from {path}")
    return descriptors
