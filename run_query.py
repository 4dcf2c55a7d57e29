"""
Run Query — end-to-end: question → classifier → MCP server → normalized answer.

This is the script that closes the loop. It:
1. Registers the MCP tool servers (built-in table or a JSON config)
2. Classifies the question to pick a server, tool and arguments
3. Starts the chosen server lazily and calls the tool
4. Prints the normalized result

Usage:
    # List configured servers
    python run_query.py --list

    # List the tools a server advertises
    python run_query.py --tools docs

    # Ask a question
    python run_query.py --query "How do I authenticate to Microsoft Graph?"

    # Only show the routing decision
    python run_query.py --query "How many guest users do we have?" --dry-run

    # Bypass the classifier
    python run_query.py --query "hello" --server echo --tool echo
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import logging

from mcp_orchestrator import (
    Credentials,
    OrchestratorError,
    QueryClassifier,
    ServerDescriptor,
    ServerKind,
    ServerRegistry,
    ToolInvoker,
    descriptor_from_record,
    load_server_configs,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


# ============================================================
# MCP SERVER DEFINITIONS
# ============================================================
# Same record shape as a JSON config file. Add new servers here
# or pass --config.

MCP_SERVERS = [
    {
        "name": "graph-query",
        "type": "graph-query",
        "command": "npx",
        "args": ["-y", "@merill/lokka"],
    },
    {
        "name": "docs",
        "type": "docs",
        "url": "https://learn.microsoft.com/api/mcp",
    },
    {
        "name": "fetch",
        "type": "fetch",
        "command": "uvx",
        "args": ["mcp-server-fetch"],
    },
    {
        "name": "echo",
        "type": "generic-stdio",
        "command": sys.executable,
        "args": ["-m", "mcp_orchestrator.servers.echo"],
    },
]


def credentials_from_environment() -> Credentials:
    """Stand-in for the auth collaborator: identifiers and token from the environment."""
    return Credentials(
        tenant_id=os.environ.get("TENANT_ID"),
        client_id=os.environ.get("CLIENT_ID"),
        access_token=os.environ.get("ACCESS_TOKEN"),
    )


def build_registry(config_path: str | None, credentials: Credentials) -> ServerRegistry:
    """Load descriptors and inject credentials into the graph-query servers."""
    if config_path:
        descriptors = load_server_configs(config_path)
    else:
        descriptors = [descriptor_from_record(record) for record in MCP_SERVERS]

    registry = ServerRegistry()
    extra = credentials.as_environment()
    for descriptor in descriptors:
        if descriptor.kind == ServerKind.GRAPH_QUERY and extra:
            descriptor = descriptor.with_environment(extra)
        registry.register(descriptor)
    return registry


def print_servers(registry: ServerRegistry) -> None:
    print(f"\nConfigured MCP servers ({len(registry)}):\n")
    for name in registry.names():
        descriptor: ServerDescriptor = registry.get(name)
        target = " ".join(descriptor.argv) if descriptor.command else descriptor.url
        state = "enabled" if descriptor.enabled else "disabled"
        print(f"  {name:<15} {descriptor.kind.value:<14} {state:<9} {target}")
    print()


def print_tools(invoker: ToolInvoker, server: str) -> None:
    tools = invoker.tools(server)
    print(f"\nTools on {server} ({len(tools)}):\n")
    for tool in tools:
        description = (tool.get("description") or "").strip().splitlines()
        print(f"  {tool.get('name', '?'):<30} {description[0] if description else ''}")
    print()


def main():
    parser = argparse.ArgumentParser(
        description="Route a natural-language query to an MCP tool server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_query.py --list
  python run_query.py --tools echo
  python run_query.py --query "List all groups" --dry-run
  python run_query.py --query "What is the weather today?"
        """,
    )
    parser.add_argument("--query", "-q", type=str, help="Question to answer")
    parser.add_argument("--config", "-c", type=str, default=None, help="JSON server config file")
    parser.add_argument("--list", action="store_true", help="List configured servers and exit")
    parser.add_argument("--tools", type=str, metavar="SERVER", help="List a server's tools and exit")
    parser.add_argument("--dry-run", action="store_true", help="Classify the query, but don't call any server")
    parser.add_argument("--server", type=str, default=None, help="Skip classification and use this server")
    parser.add_argument("--tool", type=str, default=None, help="Tool to call with --server")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        registry = build_registry(args.config, credentials_from_environment())
    except OrchestratorError as e:
        print(f"Error: {e}")
        sys.exit(2)

    if args.list:
        print_servers(registry)
        return

    invoker = ToolInvoker(registry)

    # Graceful shutdown on Ctrl+C
    def shutdown(sig, frame):
        print("\nShutting down MCP servers...")
        invoker.stop_all()
        sys.exit(0)
    signal.signal(signal.SIGINT, shutdown)

    try:
        if args.tools:
            print_tools(invoker, args.tools)
            return

        if not args.query:
            parser.error("--query is required (or use --list / --tools)")

        if args.server:
            if not args.tool:
                parser.error("--tool is required with --server")
            server, tool = args.server, args.tool
            arguments = _override_arguments(args.query)
            print(f"Routing (override): {server}/{tool}")
        else:
            classification = QueryClassifier.from_registry(registry).classify(args.query)
            server = classification.target_server
            tool = classification.target_tool
            arguments = classification.extracted_arguments
            print(f"Routing: {server}/{tool} (confidence {classification.confidence:.2f})")
            print(f"  Reason:    {classification.reasoning}")
        print(f"  Arguments: {json.dumps(arguments)}")

        if args.dry_run:
            return

        result = invoker.call_tool(server, tool, arguments)
        print("\n" + "=" * 60)
        if result.is_error:
            print("Tool reported an error:")
        print(result.as_text())
        print("=" * 60)
    except OrchestratorError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        invoker.stop_all()


def _override_arguments(query: str) -> dict:
    """With --server/--tool the query is either JSON arguments or a plain message."""
    try:
        arguments = json.loads(query)
    except json.JSONDecodeError:
        return {"message": query}
    return arguments if isinstance(arguments, dict) else {"message": query}


if __name__ == "__main__":
    main()
