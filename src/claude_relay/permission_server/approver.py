#!/usr/bin/env python3
"""Embedded MCP server for permission approval via stdio.

This module is spawned by Claude Code when it runs with
``--permission-prompt-tool mcp__permsrv__permission_prompt``. It forwards
each request to the relay process over loopback HTTP.

Usage:
    python -m claude_relay.permission_server.approver [--port PORT] [--host HOST] [--timeout SECONDS]

The server exposes a single MCP tool 'permission_prompt'. The tool:
1. Receives tool_use_id, tool_name and input from Claude Code
2. POSTs them to the relay's IPC server
3. The relay asks the user for a decision
4. Returns {"behavior": "allow", ...} or {"behavior": "deny", ...} to Claude Code

Stdout carries the MCP protocol, so everything is logged to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import mcp.types as types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from pydantic import ValidationError

from ..config import Settings
from ..logging_config import configure_logging
from ..models.permissions import PermissionDecision, PermissionRequest
from .ipc_client import forward_permission_request

logger = logging.getLogger(__name__)

TOOL_NAME = "permission_prompt"


def build_request(arguments: dict[str, Any]) -> PermissionRequest:
    """Build a PermissionRequest from the tool arguments Claude Code sends.

    Raises:
        ValidationError: If tool_use_id or tool_name is missing
    """
    return PermissionRequest.model_validate(
        {
            "tool_use_id": arguments.get("tool_use_id"),
            "tool_name": arguments.get("tool_name"),
            "input": arguments.get("input"),
        }
    )


def create_approver_server(port: int, timeout_seconds: float, host: str = "127.0.0.1") -> Server:
    """Create the low-level MCP server exposing the permission tool.

    Args:
        port: IPC server port in the relay process
        timeout_seconds: Client ceiling for one decision
        host: Loopback host of the IPC server
    """
    server = Server("permsrv")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name=TOOL_NAME,
                description="Ask the relay whether a tool call may run",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "tool_use_id": {
                            "type": "string",
                            "description": "ID of the tool use awaiting permission",
                        },
                        "tool_name": {
                            "type": "string",
                            "description": "Name of tool requesting permission",
                        },
                        "input": {
                            "type": "object",
                            "description": "Tool input parameters",
                            "additionalProperties": True,
                        },
                    },
                    "required": ["tool_use_id", "tool_name"],
                    "additionalProperties": True,
                },
            )
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
        if name != TOOL_NAME:
            logger.warning(f"[Approver] Unknown tool requested: {name}")
            decision = PermissionDecision.deny("Unknown tool")
        else:
            try:
                request = build_request(arguments)
            except ValidationError as e:
                logger.error(f"[Approver] Invalid permission arguments: {e}")
                decision = PermissionDecision.deny("Invalid permission request")
            else:
                decision = await forward_permission_request(
                    port, request, timeout=timeout_seconds, host=host
                )
                logger.info(f"[Approver] {request.tool_name}: {decision.behavior.value}")

        return [types.TextContent(type="text", text=json.dumps(decision.to_wire()))]

    return server


async def run_approver_server(port: int, timeout_seconds: float, host: str = "127.0.0.1") -> None:
    """Run the permission approver over stdio until Claude Code closes it."""
    server = create_approver_server(port, timeout_seconds, host=host)
    logger.info(f"[Approver] Starting MCP server, ipc={host}:{port}, timeout={timeout_seconds}s")

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments, defaulting to the environment settings."""
    settings = Settings()
    parser = argparse.ArgumentParser(
        description="MCP permission approver server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.ipc_port,
        help="IPC server port in the relay process (env CLAUDE_RELAY_IPC_PORT)",
    )
    parser.add_argument(
        "--host",
        default=settings.ipc_host,
        help="IPC server host in the relay process (env CLAUDE_RELAY_IPC_HOST)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.ipc_client_timeout_seconds,
        help="Timeout in seconds for one permission decision",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Log level for stderr output",
    )
    return parser.parse_args(argv)


def main() -> None:
    """Main entry point."""
    args = parse_args()
    configure_logging(args.log_level)

    try:
        asyncio.run(run_approver_server(port=args.port, timeout_seconds=args.timeout, host=args.host))
    except KeyboardInterrupt:
        logger.info("[Approver] Interrupted")
    except Exception as e:
        logger.error(f"[Approver] Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
