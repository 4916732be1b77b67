"""Claude Relay - persistent Claude Code CLI sessions with human-approved tools.

This package keeps long-running Claude Code CLI processes alive behind a
front end, streams their NDJSON output as events, and routes every tool
permission prompt to a human decision-maker over a loopback HTTP bridge.

Core pieces:
    ClaudeSession: owns one CLI process and its event stream
    SessionRegistry: maps conversations to sessions
    IpcServer: receives permission requests from the approver subprocess
    BridgeRouter: drives turns and routes permission requests

Example:
    >>> from claude_relay.server import main
    >>> main()
"""

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = ["__version__"]
