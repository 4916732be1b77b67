"""Stream parser for Claude Code CLI NDJSON output."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

from ..models.events import ClaudeEvent

logger = logging.getLogger(__name__)


# Verb shown in tool activity summaries
TOOL_VERBS = {
    "Read": "Reading",
    "Edit": "Editing",
    "Write": "Writing",
    "Bash": "Running",
    "Glob": "Searching for",
    "Grep": "Searching for",
    "WebFetch": "Fetching",
    "WebSearch": "Searching the web for",
    "Task": "Delegating",
    "TodoWrite": "Updating todos:",
    "NotebookEdit": "Editing notebook",
}


class StreamParser:
    """Parses NDJSON stream from Claude Code CLI.

    Reads lines from a stdout asyncio stream, parses each line as JSON,
    and yields structured ClaudeEvent objects. Lines that are not JSON
    objects are logged and skipped; they never end the stream.

    Attributes:
        stdout_stream: Asyncio StreamReader from subprocess stdout
        dropped_lines: Number of malformed lines skipped so far
    """

    def __init__(self, stdout_stream: Any) -> None:
        """Initialize parser.

        Args:
            stdout_stream: Asyncio StreamReader from subprocess
        """
        self.stdout_stream = stdout_stream
        self.dropped_lines = 0

    async def parse_events(self) -> AsyncIterator[ClaudeEvent]:
        """Async generator that yields parsed events until EOF.

        Yields:
            ClaudeEvent objects as they arrive from stream

        Examples:
            >>> async for event in parser.parse_events():
            ...     if event.is_result:
            ...         print("Done!")
        """
        async for line in self._read_lines():
            line = line.strip()
            if not line:
                continue

            try:
                yield ClaudeEvent.from_json_line(line)
            except (ValueError, RecursionError) as e:
                # json.JSONDecodeError is a ValueError too; RecursionError comes from deep nesting
                self.dropped_lines += 1
                logger.warning(f"[StreamParser] Dropping malformed line ({e}): {line[:200]}")

    async def _read_lines(self) -> AsyncIterator[str]:
        """Read lines from stdout stream.

        Yields:
            Decoded string lines from stream
        """
        while True:
            try:
                line = await self.stdout_stream.readline()
            except ValueError:
                # Line exceeded the StreamReader limit; skip past it
                logger.warning("[StreamParser] Line exceeds buffer limit, skipping")
                continue
            except (ConnectionError, OSError) as e:
                logger.error(f"[StreamParser] Error reading from stdout: {e}")
                break

            if not line:
                break
            yield line.decode("utf-8", errors="replace")


def _truncate_path(path: str, max_len: int = 60) -> str:
    """Truncate path showing filename and parent directory.

    Args:
        path: Full file path
        max_len: Maximum length of output

    Returns:
        Truncated path like "...parent/filename.py"
    """
    if not path:
        return ""
    if len(path) <= max_len:
        return path
    parts = path.split("/")
    if len(parts) >= 2:
        short = f".../{parts[-2]}/{parts[-1]}"
        if len(short) <= max_len:
            return short
    return "..." + path[-(max_len - 3):]


def extract_tool_detail(tool_name: str, input_data: dict[str, Any] | None) -> str | None:
    """Extract human-readable detail from tool input.

    Args:
        tool_name: Name of the tool
        input_data: Tool input parameters

    Returns:
        Human-readable detail string or None

    Examples:
        >>> extract_tool_detail("Read", {"file_path": "/home/user/main.py"})
        '/home/user/main.py'
        >>> extract_tool_detail("Bash", {"command": "npm install"})
        'npm install'
    """
    if not input_data or not isinstance(input_data, dict):
        return None

    if tool_name in ("Read", "Edit", "Write", "NotebookEdit"):
        path = input_data.get("file_path") or input_data.get("notebook_path", "")
        return _truncate_path(path) if path else None

    elif tool_name == "Bash":
        cmd = input_data.get("command", "")
        if cmd:
            return cmd[:80] + "..." if len(cmd) > 80 else cmd
        return None

    elif tool_name in ("Glob", "Grep"):
        pattern = input_data.get("pattern", "")
        if not pattern:
            return None
        path = input_data.get("path", "")
        if path:
            return f"{pattern} in {_truncate_path(path)}"
        return pattern

    elif tool_name == "WebFetch":
        url = input_data.get("url", "")
        if url:
            domain = urlparse(url).netloc
            return domain or url[:60]
        return None

    elif tool_name == "WebSearch":
        query = input_data.get("query", "")
        return f'"{query[:60]}"' if query else None

    elif tool_name == "Task":
        desc = input_data.get("description", "")
        return f'"{desc}"' if desc else None

    elif tool_name == "TodoWrite":
        todos = input_data.get("todos", [])
        if todos and isinstance(todos, list):
            count = len(todos)
            return f"{count} item{'s' if count != 1 else ''}"
        return None

    return None


def format_tool_activity(tool_name: str, input_data: dict[str, Any] | None = None) -> str:
    """Summarize a tool invocation for display while it runs.

    Args:
        tool_name: Name of the tool (MCP tools as mcp__server__tool)
        input_data: Tool input parameters, possibly still empty while streaming

    Returns:
        Short summary such as "Reading src/main.py..."

    Examples:
        >>> format_tool_activity("Bash", {"command": "ls"})
        'Running ls...'
        >>> format_tool_activity("mcp__ide__getDiagnostics")
        'Using getDiagnostics...'
    """
    display_name = tool_name.split("__")[-1] if "__" in tool_name else tool_name
    detail = extract_tool_detail(tool_name, input_data)
    verb = TOOL_VERBS.get(tool_name)

    if detail and verb:
        return f"{verb} {detail}..."
    if detail:
        return f"Using {display_name}: {detail}..."
    return f"Using {display_name}..."


def try_parse_tool_input(partial_json: str) -> dict[str, Any] | None:
    """Parse accumulated ``input_json_delta`` fragments once they form an object.

    Args:
        partial_json: Concatenated JSON fragments received so far

    Returns:
        The input dict, or None while the JSON is still incomplete
    """
    if not partial_json:
        return None
    try:
        parsed = json.loads(partial_json)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None
