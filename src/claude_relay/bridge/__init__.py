"""Orchestration between conversations, Claude sessions and permission prompts.

- SessionRegistry: owns one ClaudeSession per conversation.
- BridgeRouter: runs turns and routes permission requests to a conversation.
- PermissionHandler: applies the decision timeout to a front-end prompt.
"""

from .permission_handler import PermissionHandler
from .router import BridgeRouter, TurnConsumer
from .session_registry import ManagedSession, SessionRegistry

__all__ = [
    "BridgeRouter",
    "ManagedSession",
    "PermissionHandler",
    "SessionRegistry",
    "TurnConsumer",
]
