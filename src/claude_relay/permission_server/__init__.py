"""Permission bridge between the relay process and Claude Code.

Claude Code runs with --permission-prompt-tool pointing at an MCP server
this package provides. It consists of:

- IpcServer: loopback HTTP server running in the relay process, receives
  permission requests and hands them to a listener for a decision.

- forward_permission_request: HTTP client used by the approver to reach
  the IpcServer. Any failure becomes a deny.

- run_approver_server: stdio MCP server spawned by Claude Code, exposes the
  permission_prompt tool and forwards each call to the IpcServer.
"""

from .approver import run_approver_server
from .ipc_client import forward_permission_request
from .ipc_server import IpcServer

__all__ = ["IpcServer", "forward_permission_request", "run_approver_server"]
