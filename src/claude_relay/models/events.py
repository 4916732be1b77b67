"""Event models for Claude Code CLI stream-json output."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ClaudeEventType(Enum):
    """Top-level event types from Claude Code CLI."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    STREAM_EVENT = "stream_event"
    RESULT = "result"
    UNKNOWN = "unknown"


class StreamEventType(Enum):
    """Partial-message event types wrapped in a ``stream_event`` record."""

    MESSAGE_START = "message_start"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    UNKNOWN = "unknown"


@dataclass
class ContentBlock:
    """A content block within a message.

    Attributes:
        type: Block type ("text", "tool_use", "tool_result", "thinking")
        text: Text content (for text blocks)
        id: Tool use ID (for tool_use blocks)
        name: Tool name (for tool_use blocks)
        input: Tool input parameters (for tool_use blocks)
        tool_use_id: Reference to tool use (for tool_result blocks)
    """

    type: str
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    tool_use_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentBlock":
        """Create ContentBlock from dictionary.

        Args:
            data: Dictionary with content block data

        Returns:
            Parsed ContentBlock
        """
        return cls(
            type=data.get("type", ""),
            text=data.get("text"),
            id=data.get("id"),
            name=data.get("name"),
            input=data.get("input"),
            tool_use_id=data.get("tool_use_id"),
        )


@dataclass
class Message:
    """A message with content blocks.

    Attributes:
        role: Message role ("assistant" or "user")
        content: List of content blocks
    """

    role: str
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        content = data.get("content", [])
        if not isinstance(content, list):
            content = []
        return cls(
            role=data.get("role", ""),
            content=[ContentBlock.from_dict(c) for c in content if isinstance(c, dict)],
        )


@dataclass
class StreamDelta:
    """One partial-message event from a ``stream_event`` record.

    Attributes:
        type: Partial event type
        index: Content block index (content_block_* events)
        content_block: Block being opened (content_block_start)
        delta: Raw delta payload (content_block_delta, message_delta)
    """

    type: StreamEventType
    index: int | None = None
    content_block: ContentBlock | None = None
    delta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamDelta":
        try:
            event_type = StreamEventType(data.get("type", "unknown"))
        except ValueError:
            event_type = StreamEventType.UNKNOWN

        block = data.get("content_block")
        delta = data.get("delta")
        return cls(
            type=event_type,
            index=data.get("index"),
            content_block=ContentBlock.from_dict(block) if isinstance(block, dict) else None,
            delta=delta if isinstance(delta, dict) else {},
        )

    @property
    def text(self) -> str | None:
        """Text of a ``text_delta``, if this is one."""
        if self.delta.get("type") == "text_delta":
            return self.delta.get("text", "")
        return None

    @property
    def partial_json(self) -> str | None:
        """Fragment of tool input JSON from an ``input_json_delta``, if this is one."""
        if self.delta.get("type") == "input_json_delta":
            return self.delta.get("partial_json", "")
        return None


def _as_int(value: Any) -> int | None:
    """Integer field from the CLI, or None when absent or not numeric."""
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class ResultEvent:
    """End-of-turn result reported by Claude Code.

    Attributes:
        subtype: "success", "error_max_turns", "error_during_execution", ...
        is_error: Whether the turn failed or was aborted
        session_id: CLI conversation ID
        num_turns: Number of agent turns the CLI ran
        total_cost_usd: Running cost of the CLI process (cumulative, not per turn)
        duration_ms: Turn duration in milliseconds
        result: Final text or error message
        input_tokens: Input tokens used by this turn
        output_tokens: Output tokens used by this turn
    """

    subtype: str
    is_error: bool
    session_id: str | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    result: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResultEvent":
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        subtype = data.get("subtype", "")
        return cls(
            subtype=subtype,
            is_error=bool(data.get("is_error", subtype != "success")),
            session_id=data.get("session_id"),
            num_turns=_as_int(data.get("num_turns")),
            total_cost_usd=_as_float(data.get("total_cost_usd")),
            duration_ms=_as_int(data.get("duration_ms")),
            result=data.get("result"),
            input_tokens=_as_int(usage.get("input_tokens")) or 0,
            output_tokens=_as_int(usage.get("output_tokens")) or 0,
        )


@dataclass
class ClaudeEvent:
    """Parsed event from Claude Code stream.

    Attributes:
        type: Type of event (system, assistant, stream_event, result, ...)
        data: Raw event data dictionary
        raw_line: Original NDJSON line
        message: Parsed message (for assistant/user events)
    """

    type: ClaudeEventType
    data: dict[str, Any]
    raw_line: str
    message: Message | None = None

    @classmethod
    def from_json_line(cls, line: str) -> "ClaudeEvent":
        """Parse a single NDJSON line into an event.

        Unrecognized ``type`` values produce an UNKNOWN event rather than an
        error, so newer CLI versions do not break the stream.

        Args:
            line: JSON string from Claude Code output

        Returns:
            Parsed ClaudeEvent

        Raises:
            ValueError: If the line is not a JSON object

        Examples:
            >>> event = ClaudeEvent.from_json_line('{"type":"system","subtype":"init"}')
            >>> event.is_init
            True
        """
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

        try:
            event_type = ClaudeEventType(data.get("type", "unknown"))
        except ValueError:
            event_type = ClaudeEventType.UNKNOWN

        message = None
        if isinstance(data.get("message"), dict):
            message = Message.from_dict(data["message"])

        return cls(type=event_type, data=data, raw_line=line, message=message)

    @property
    def is_init(self) -> bool:
        return self.type == ClaudeEventType.SYSTEM and self.data.get("subtype") == "init"

    @property
    def is_result(self) -> bool:
        return self.type == ClaudeEventType.RESULT

    @property
    def session_id(self) -> str | None:
        return self.data.get("session_id")

    @property
    def model(self) -> str | None:
        """Model name announced by a system/init event."""
        return self.data.get("model")

    @property
    def tools(self) -> list[str]:
        """Tool names announced by a system/init event."""
        tools = self.data.get("tools", [])
        return tools if isinstance(tools, list) else []

    def get_stream_delta(self) -> StreamDelta | None:
        """Unwrap the partial-message event of a ``stream_event`` record.

        Returns:
            StreamDelta, or None for any other event type
        """
        if self.type != ClaudeEventType.STREAM_EVENT:
            return None
        inner = self.data.get("event")
        if not isinstance(inner, dict):
            return None
        return StreamDelta.from_dict(inner)

    def get_result(self) -> ResultEvent | None:
        """Structured view of a result event, or None for other types."""
        if not self.is_result:
            return None
        return ResultEvent.from_dict(self.data)

    def get_text_content(self) -> str:
        """Extract text content from message.

        Returns:
            Concatenated text from all text content blocks
        """
        if not self.message:
            return ""
        return "".join(b.text for b in self.message.content if b.type == "text" and b.text)

    def get_tool_uses(self) -> list[ContentBlock]:
        """Extract tool_use blocks from message.

        Returns:
            List of ContentBlock objects with type="tool_use"
        """
        if not self.message:
            return []
        return [b for b in self.message.content if b.type == "tool_use"]
