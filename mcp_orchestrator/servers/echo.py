"""
Echo MCP Tool Server — minimal reference implementation.

Use this as a template for building new tool servers. It is also the
mock server the test suite drives, so a few flags make it misbehave on
purpose:

    --exit-on-call CODE   exit with CODE on the first tools/call, before replying
    --reverse-batch N     hold tools/call replies until N arrived, then answer newest first
    --noisy               print a non-JSON banner on stdout and chatter on stderr

Launch:
    python -m mcp_orchestrator.servers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m mcp_orchestrator.servers.echo
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from mcp_orchestrator.server import Resource, StdioToolServer, ToolHandler

logger = logging.getLogger(__name__)


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ("message",)

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class ReportTool(ToolHandler):
    """Answers the way log-happy servers do: a header line, then the JSON."""
    name = "report"
    description = "Returns the message as a JSON report prefixed with a log line."
    parameters = {
        "message": {"type": "string", "description": "What to report on"},
    }

    def handle(self, params: dict) -> str:
        message = params.get("message", "")
        body = json.dumps({"subject": message, "words": len(message.split())}, indent=2)
        return f"Result for report - {message}:\n\n{body}"


class FailTool(ToolHandler):
    name = "fail"
    description = "Always fails. The failure comes back as an isError result."
    parameters = {
        "reason": {"type": "string", "description": "Text of the failure"},
    }

    def handle(self, params: dict) -> dict:
        raise RuntimeError(params.get("reason", "requested failure"))


class HangTool(ToolHandler):
    name = "hang"
    description = "Never answers. Useful for timeout and cancellation tests."

    def handle(self, params: dict) -> dict:
        raise AssertionError("hang is answered by the server loop, not the handler")


class EchoServer(StdioToolServer):
    """StdioToolServer with the test-only misbehaviours switched by flags."""

    def __init__(self, exit_on_call: int | None = None, reverse_batch: int = 0):
        super().__init__("echo", "1.0.0")
        self.exit_on_call = exit_on_call
        self.reverse_batch = reverse_batch
        self._held: list[dict] = []

    def handle_message(self, request: dict) -> None:
        if request.get("method") != "tools/call" or "id" not in request:
            super().handle_message(request)
            return

        if self.exit_on_call is not None:
            logger.error(f"Exiting with code {self.exit_on_call} as requested")
            sys.exit(self.exit_on_call)

        if (request.get("params") or {}).get("name") == HangTool.name:
            logger.info(f"Ignoring request {request['id']}")
            return

        if self.reverse_batch > 1:
            self._held.append(request)
            if len(self._held) < self.reverse_batch:
                return
            held, self._held = self._held, []
            for message in reversed(held):
                super().handle_message(message)
            return

        super().handle_message(request)


def build_server(args: argparse.Namespace) -> EchoServer:
    server = EchoServer(exit_on_call=args.exit_on_call, reverse_batch=args.reverse_batch)
    for handler in (EchoTool(), ReportTool(), FailTool(), HangTool()):
        server.register(handler)
    server.add_resource(Resource(
        uri="echo://readme",
        name="readme",
        text="The echo server repeats whatever it is sent.",
    ))
    return server


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Echo MCP tool server")
    parser.add_argument("--exit-on-call", type=int, default=None, metavar="CODE")
    parser.add_argument("--reverse-batch", type=int, default=0, metavar="N")
    parser.add_argument("--noisy", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.noisy else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    server = build_server(args)
    if args.noisy:
        print("Echo MCP server ready (this line is not JSON)", flush=True)
        logger.info("noisy mode on")
    server.run()


if __name__ == "__main__":
    main()
