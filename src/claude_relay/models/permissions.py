"""Permission wire models shared by the IPC server, client and approver.

The approver subprocess and the relay process exchange exactly one message
type in each direction:

- PermissionRequest: ``{"tool_use_id", "tool_name", "input"}``
- PermissionDecision: ``{"behavior": "allow"|"deny", "updatedInput"?, "message"?}``

Every path that cannot produce an explicit allow must produce a deny.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PermissionBehavior(str, Enum):
    """Outcome of a permission decision."""

    ALLOW = "allow"
    DENY = "deny"


class PermissionRequest(BaseModel):
    """A tool permission request forwarded by the approver.

    Attributes:
        request_id: Tool use ID; correlates the request with one decision
        tool_name: Tool Claude wants to run (Bash, Edit, ...)
        tool_input: Tool input parameters as sent by Claude
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    request_id: str = Field(alias="tool_use_id", min_length=1)
    tool_name: str = Field(min_length=1)
    tool_input: Any = Field(default=None, alias="input")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class PermissionDecision(BaseModel):
    """Decision returned to the approver.

    Use the ``allow``/``deny`` constructors rather than building it directly.

    Examples:
        >>> PermissionDecision.deny("No active session").to_wire()
        {'behavior': 'deny', 'message': 'No active session'}
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    behavior: PermissionBehavior
    updated_input: Any = Field(default=None, alias="updatedInput")
    message: str | None = None

    @classmethod
    def allow(cls, updated_input: Any = None) -> "PermissionDecision":
        return cls(behavior=PermissionBehavior.ALLOW, updated_input=updated_input)

    @classmethod
    def deny(cls, message: str) -> "PermissionDecision":
        return cls(behavior=PermissionBehavior.DENY, message=message)

    @property
    def is_allowed(self) -> bool:
        return self.behavior == PermissionBehavior.ALLOW

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the HTTP response and the MCP tool result."""
        if self.is_allowed:
            wire: dict[str, Any] = {"behavior": PermissionBehavior.ALLOW.value}
            if self.updated_input is not None:
                wire["updatedInput"] = self.updated_input
            return wire
        return {
            "behavior": PermissionBehavior.DENY.value,
            "message": self.message or "Permission denied",
        }


# Deny messages, kept in one place so front ends and tests match them exactly
NO_HANDLER_MESSAGE = "No permission handler registered"
NO_ACTIVE_SESSION_MESSAGE = "No active session"
SHUTTING_DOWN_MESSAGE = "IPC server shutting down"
IPC_FAILED_MESSAGE = "IPC communication failed"
PROMPT_FAILED_MESSAGE = "Failed to send permission prompt"
USER_DENIED_MESSAGE = "User denied this action"
NO_QUESTIONS_MESSAGE = "No questions provided"
QUESTION_DECLINED_MESSAGE = "User declined to answer"
DUPLICATE_REQUEST_MESSAGE = "Duplicate permission request"
