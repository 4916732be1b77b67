"""Unit tests for the permission wire models and the decision timeout wrapper."""

import asyncio
from pathlib import Path

import pytest
from pydantic import ValidationError

from claude_relay.bridge.permission_handler import (
    PermissionHandler,
    extract_questions,
    format_permission_message,
    format_question_message,
    format_timeout,
    question_options,
)
from claude_relay.bridge.session_registry import ManagedSession
from claude_relay.models.permissions import (
    NO_QUESTIONS_MESSAGE,
    PROMPT_FAILED_MESSAGE,
    PermissionBehavior,
    PermissionDecision,
    PermissionRequest,
)


def _session() -> ManagedSession:
    return ManagedSession(driver=None, conversation_id="conv-1", cwd=Path("."))


class TestPermissionRequest:
    """Test PermissionRequest wire format."""

    def test_parses_wire_names(self):
        request = PermissionRequest.model_validate(
            {"tool_use_id": "t1", "tool_name": "Bash", "input": {"command": "ls"}}
        )
        assert request.request_id == "t1"
        assert request.tool_input == {"command": "ls"}

    def test_to_wire_uses_wire_names(self):
        request = PermissionRequest(request_id="t1", tool_name="Bash", tool_input={"a": 1})
        assert request.to_wire() == {"tool_use_id": "t1", "tool_name": "Bash", "input": {"a": 1}}

    def test_missing_tool_name_rejected(self):
        with pytest.raises(ValidationError):
            PermissionRequest.model_validate({"tool_use_id": "t1"})

    def test_empty_request_id_rejected(self):
        with pytest.raises(ValidationError):
            PermissionRequest.model_validate({"tool_use_id": "", "tool_name": "Bash"})


class TestPermissionDecision:
    """Test PermissionDecision wire format."""

    def test_allow_with_updated_input(self):
        decision = PermissionDecision.allow({"command": "ls"})
        assert decision.is_allowed
        assert decision.to_wire() == {"behavior": "allow", "updatedInput": {"command": "ls"}}

    def test_allow_without_input(self):
        assert PermissionDecision.allow().to_wire() == {"behavior": "allow"}

    def test_deny(self):
        decision = PermissionDecision.deny("No active session")
        assert not decision.is_allowed
        assert decision.to_wire() == {"behavior": "deny", "message": "No active session"}

    def test_parses_wire_response(self):
        decision = PermissionDecision.model_validate({"behavior": "allow", "updatedInput": {"x": 1}})
        assert decision.behavior == PermissionBehavior.ALLOW
        assert decision.updated_input == {"x": 1}

    def test_unknown_behavior_rejected(self):
        with pytest.raises(ValidationError):
            PermissionDecision.model_validate({"behavior": "maybe"})


class TestFormatting:
    """Test prompt text helpers."""

    def test_format_timeout(self):
        assert format_timeout(300) == "5 minutes"
        assert format_timeout(60) == "1 minute"
        assert format_timeout(45) == "45 seconds"
        assert format_timeout(0.5) == "0.5 seconds"

    def test_permission_message_with_detail(self):
        request = PermissionRequest(request_id="t1", tool_name="Bash", tool_input={"command": "ls"})
        assert format_permission_message(request) == "Allow Bash: ls?"

    def test_permission_message_without_detail(self):
        request = PermissionRequest(request_id="t1", tool_name="mcp__x__y", tool_input=None)
        assert format_permission_message(request) == "Allow mcp__x__y?"


class TestQuestions:
    """Test AskUserQuestion helpers."""

    def test_extract_questions_skips_malformed_entries(self):
        request = PermissionRequest(
            request_id="t1",
            tool_name="AskUserQuestion",
            tool_input={"questions": [{"question": "Which?"}, {"header": "No text"}, "bare"]},
        )
        assert extract_questions(request) == [{"question": "Which?"}]

    def test_extract_questions_without_list(self):
        for tool_input in (None, {}, {"questions": "Which?"}):
            request = PermissionRequest(request_id="t1", tool_name="AskUserQuestion", tool_input=tool_input)
            assert extract_questions(request) == []

    def test_question_options(self):
        question = {"options": [{"label": "Postgres"}, {"label": "SQLite"}, {"label": "Postgres"}, {}, "Other"]}
        assert question_options(question) == ["Postgres", "SQLite", "Other"]
        assert question_options({"question": "Free text?"}) == []

    def test_question_message(self):
        assert format_question_message({"header": "Tests", "question": "Add tests?"}) == "[Tests] Add tests?"
        assert format_question_message({"question": "Add tests?"}) == "Add tests?"


class TestPermissionHandler:
    """Test PermissionHandler.decide."""

    @pytest.mark.asyncio
    async def test_returns_prompt_decision(self):
        async def prompt(request, session):
            return PermissionDecision.allow(request.tool_input)

        handler = PermissionHandler(prompt, timeout_seconds=5)
        request = PermissionRequest(request_id="t1", tool_name="Bash", tool_input={"command": "ls"})
        decision = await handler.decide(request, _session())
        assert decision.to_wire() == {"behavior": "allow", "updatedInput": {"command": "ls"}}

    @pytest.mark.asyncio
    async def test_timeout_denies(self):
        async def prompt(request, session):
            await asyncio.sleep(10)

        handler = PermissionHandler(prompt, timeout_seconds=0.05)
        request = PermissionRequest(request_id="t1", tool_name="Bash")
        decision = await handler.decide(request, _session())
        assert not decision.is_allowed
        assert decision.message == "Permission request timed out (0.05 seconds)"

    def test_default_timeout_message(self):
        handler = PermissionHandler(lambda r, s: None)
        assert handler.timeout_message == "Permission request timed out (5 minutes)"

    @pytest.mark.asyncio
    async def test_prompt_failure_denies(self):
        async def prompt(request, session):
            raise RuntimeError("front end unavailable")

        handler = PermissionHandler(prompt)
        decision = await handler.decide(PermissionRequest(request_id="t1", tool_name="Bash"), _session())
        assert decision.to_wire() == {"behavior": "deny", "message": PROMPT_FAILED_MESSAGE}

    @pytest.mark.asyncio
    async def test_auto_allow_skips_prompt(self):
        calls = []

        async def prompt(request, session):
            calls.append(request)
            return PermissionDecision.deny("no")

        handler = PermissionHandler(prompt, auto_allow=["Read"])
        request = PermissionRequest(request_id="t1", tool_name="Read", tool_input={"file_path": "/a"})
        decision = await handler.decide(request, _session())
        assert decision.is_allowed
        assert decision.updated_input == {"file_path": "/a"}
        assert calls == []

    @pytest.mark.asyncio
    async def test_empty_questions_denied_without_prompt(self):
        calls = []

        async def prompt(request, session):
            calls.append(request)
            return PermissionDecision.allow()

        handler = PermissionHandler(prompt)
        request = PermissionRequest(request_id="t1", tool_name="AskUserQuestion", tool_input={"questions": []})
        decision = await handler.decide(request, _session())
        assert decision.to_wire() == {"behavior": "deny", "message": NO_QUESTIONS_MESSAGE}
        assert calls == []

    @pytest.mark.asyncio
    async def test_question_timeout_denies(self):
        async def prompt(request, session):
            await asyncio.sleep(10)

        handler = PermissionHandler(prompt, timeout_seconds=0.05)
        request = PermissionRequest(
            request_id="t1",
            tool_name="AskUserQuestion",
            tool_input={"questions": [{"question": "Which?"}]},
        )
        decision = await handler.decide(request, _session())
        assert decision.message == "Question timed out (0.05 seconds)"

    def test_questions_never_auto_allowed(self):
        handler = PermissionHandler(lambda r, s: None, auto_allow=["Read", "AskUserQuestion"])
        assert handler.auto_allow == frozenset({"Read"})
