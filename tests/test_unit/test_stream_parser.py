"""Unit tests for stream_parser.

Formatting helpers are pure functions; the parser is fed through a real
asyncio.StreamReader.
"""

import asyncio

import pytest

from claude_relay.executor.stream_parser import (
    TOOL_VERBS,
    StreamParser,
    _truncate_path,
    extract_tool_detail,
    format_tool_activity,
    try_parse_tool_input,
)
from claude_relay.models.events import ClaudeEventType


def _reader(*lines: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line)
    reader.feed_eof()
    return reader


class TestStreamParser:
    """Test StreamParser.parse_events."""

    @pytest.mark.asyncio
    async def test_yields_events_in_order(self):
        parser = StreamParser(_reader(
            b'{"type":"system","subtype":"init","session_id":"s1"}\n',
            b'{"type":"result","subtype":"success"}\n',
        ))
        events = [e async for e in parser.parse_events()]
        assert [e.type for e in events] == [ClaudeEventType.SYSTEM, ClaudeEventType.RESULT]
        assert events[0].is_init

    @pytest.mark.asyncio
    async def test_malformed_lines_are_dropped(self):
        """Bad lines are skipped without ending the stream."""
        parser = StreamParser(_reader(
            b"not json {\n",
            b"[1, 2, 3]\n",
            b'{"type":"assistant","message":{"role":"assistant","content":[]}}\n',
        ))
        events = [e async for e in parser.parse_events()]
        assert len(events) == 1
        assert events[0].type == ClaudeEventType.ASSISTANT
        assert parser.dropped_lines == 2

    @pytest.mark.asyncio
    async def test_deeply_nested_line_is_dropped(self):
        reader = asyncio.StreamReader(limit=1024 * 1024)
        reader.feed_data(b"[" * 200000 + b"]" * 200000 + b"\n")
        reader.feed_data(b'{"type":"result","subtype":"success"}\n')
        reader.feed_eof()

        parser = StreamParser(reader)
        events = [e async for e in parser.parse_events()]

        assert [e.type for e in events] == [ClaudeEventType.RESULT]
        assert parser.dropped_lines == 1

    @pytest.mark.asyncio
    async def test_blank_lines_ignored(self):
        parser = StreamParser(_reader(b"\n", b"   \n", b'{"type":"user"}\n'))
        events = [e async for e in parser.parse_events()]
        assert len(events) == 1
        assert parser.dropped_lines == 0

    @pytest.mark.asyncio
    async def test_unknown_type_is_delivered(self):
        parser = StreamParser(_reader(b'{"type":"brand_new_event"}\n'))
        events = [e async for e in parser.parse_events()]
        assert events[0].type == ClaudeEventType.UNKNOWN

    @pytest.mark.asyncio
    async def test_final_line_without_newline(self):
        parser = StreamParser(_reader(b'{"type":"result","subtype":"success"}'))
        events = [e async for e in parser.parse_events()]
        assert len(events) == 1


class TestTruncatePath:
    """Test _truncate_path function."""

    def test_short_path_unchanged(self):
        path = "src/main.py"
        assert _truncate_path(path, max_len=35) == path

    def test_long_path_shows_parent_and_file(self):
        path = "/home/user/projects/myproject/src/components/Header.tsx"
        assert _truncate_path(path, max_len=35) == ".../components/Header.tsx"

    def test_empty_path(self):
        assert _truncate_path("") == ""

    def test_falls_back_to_tail(self):
        path = "/a/" + "x" * 80 + ".py"
        result = _truncate_path(path, max_len=20)
        assert result.startswith("...")
        assert len(result) == 20
        assert result.endswith(".py")


class TestExtractToolDetail:
    """Test extract_tool_detail function."""

    def test_read_tool_shows_file_path(self):
        assert extract_tool_detail("Read", {"file_path": "/src/main.py"}) == "/src/main.py"

    def test_notebook_edit_uses_notebook_path(self):
        assert extract_tool_detail("NotebookEdit", {"notebook_path": "/nb.ipynb"}) == "/nb.ipynb"

    def test_bash_tool_shows_command(self):
        assert extract_tool_detail("Bash", {"command": "npm install"}) == "npm install"

    def test_bash_tool_truncates_long_command(self):
        long_cmd = "x" * 100
        detail = extract_tool_detail("Bash", {"command": long_cmd})
        assert detail == "x" * 80 + "..."

    def test_glob_tool_shows_pattern(self):
        assert extract_tool_detail("Glob", {"pattern": "**/*.py"}) == "**/*.py"

    def test_grep_tool_shows_pattern_and_path(self):
        assert extract_tool_detail("Grep", {"pattern": "error", "path": "/logs"}) == "error in /logs"

    def test_webfetch_shows_domain(self):
        assert extract_tool_detail("WebFetch", {"url": "https://api.example.com/data"}) == "api.example.com"

    def test_websearch_shows_query(self):
        assert extract_tool_detail("WebSearch", {"query": "python asyncio"}) == '"python asyncio"'

    def test_task_shows_description(self):
        assert extract_tool_detail("Task", {"description": "Explore codebase"}) == '"Explore codebase"'

    def test_todowrite_shows_count(self):
        assert extract_tool_detail("TodoWrite", {"todos": [1, 2, 3]}) == "3 items"
        assert extract_tool_detail("TodoWrite", {"todos": [1]}) == "1 item"

    def test_unknown_tool_returns_none(self):
        assert extract_tool_detail("UnknownTool", {"some": "data"}) is None

    def test_empty_input_returns_none(self):
        assert extract_tool_detail("Read", None) is None
        assert extract_tool_detail("Read", {}) is None


class TestFormatToolActivity:
    """Test format_tool_activity function."""

    def test_known_tool_with_detail(self):
        assert format_tool_activity("Bash", {"command": "ls"}) == "Running ls..."
        assert format_tool_activity("Read", {"file_path": "/a.py"}) == "Reading /a.py..."

    def test_known_tool_without_detail(self):
        assert format_tool_activity("Bash", {}) == "Using Bash..."

    def test_mcp_tool_uses_short_name(self):
        assert format_tool_activity("mcp__ide__getDiagnostics") == "Using getDiagnostics..."

    def test_common_tools_have_verbs(self):
        for tool in ["Read", "Edit", "Write", "Bash", "Glob", "Grep"]:
            assert tool in TOOL_VERBS


class TestTryParseToolInput:
    """Test try_parse_tool_input function."""

    def test_incomplete_json_returns_none(self):
        assert try_parse_tool_input('{"command": ') is None

    def test_complete_object(self):
        assert try_parse_tool_input('{"command": "ls"}') == {"command": "ls"}

    def test_non_object_returns_none(self):
        assert try_parse_tool_input("[1]") is None

    def test_empty_returns_none(self):
        assert try_parse_tool_input("") is None
