"""Bounds a human permission decision in time and turns failures into denies."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ..executor.stream_parser import extract_tool_detail
from ..models.permissions import (
    NO_QUESTIONS_MESSAGE,
    PROMPT_FAILED_MESSAGE,
    PermissionDecision,
    PermissionRequest,
)
from .session_registry import ManagedSession

logger = logging.getLogger(__name__)

PermissionPrompt = Callable[[PermissionRequest, ManagedSession], Awaitable[PermissionDecision]]

ASK_USER_QUESTION_TOOL = "AskUserQuestion"


def format_timeout(seconds: float) -> str:
    """Human-readable timeout, e.g. "5 minutes" or "45 seconds"."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    whole = int(seconds) if seconds == int(seconds) else seconds
    return f"{whole} second{'s' if whole != 1 else ''}"


def format_permission_message(request: PermissionRequest) -> str:
    """Question shown to the user for a permission request.

    Examples:
        >>> format_permission_message(PermissionRequest(request_id="t1", tool_name="Bash", tool_input={"command": "ls"}))
        'Allow Bash: ls?'
    """
    tool_input = request.tool_input if isinstance(request.tool_input, dict) else None
    detail = extract_tool_detail(request.tool_name, tool_input)
    if detail:
        return f"Allow {request.tool_name}: {detail}?"
    return f"Allow {request.tool_name}?"


def extract_questions(request: PermissionRequest) -> list[dict[str, Any]]:
    """Questions of an AskUserQuestion request, skipping entries without question text."""
    tool_input = request.tool_input if isinstance(request.tool_input, dict) else {}
    questions = tool_input.get("questions")
    if not isinstance(questions, list):
        return []
    return [q for q in questions if isinstance(q, dict) and isinstance(q.get("question"), str) and q["question"]]


def question_options(question: dict[str, Any]) -> list[str]:
    """Distinct option labels of one question, in order."""
    options = question.get("options")
    if not isinstance(options, list):
        return []
    labels: list[str] = []
    for option in options:
        label = option.get("label") if isinstance(option, dict) else option
        if isinstance(label, str) and label and label not in labels:
            labels.append(label)
    return labels


def format_question_message(question: dict[str, Any]) -> str:
    """Prompt text for one question.

    Examples:
        >>> format_question_message({"header": "Database", "question": "Which database?"})
        '[Database] Which database?'
    """
    header = question.get("header")
    if isinstance(header, str) and header:
        return f"[{header}] {question['question']}"
    return question["question"]


def answered_decision(questions: list[dict[str, Any]], answers: dict[str, str]) -> PermissionDecision:
    """Allow an AskUserQuestion call with the user's answers, keyed by question text."""
    return PermissionDecision.allow({"questions": questions, "answers": answers})


class PermissionHandler:
    """Asks the user about a tool call and guarantees an answer.

    The prompt callable renders the question in the front end and returns the
    user's decision. This wrapper applies the decision timeout and converts
    every failure into a deny.

    Attributes:
        timeout_seconds: How long the user has to answer
        auto_allow: Tools allowed without asking
    """

    def __init__(
        self,
        prompt: PermissionPrompt,
        timeout_seconds: float = 300.0,
        auto_allow: Iterable[str] | None = None,
    ) -> None:
        self._prompt = prompt
        self.timeout_seconds = timeout_seconds
        # Questions always go to the user
        self.auto_allow = frozenset(auto_allow or ()) - {ASK_USER_QUESTION_TOOL}

    @property
    def timeout_message(self) -> str:
        return f"Permission request timed out ({format_timeout(self.timeout_seconds)})"

    @property
    def question_timeout_message(self) -> str:
        return f"Question timed out ({format_timeout(self.timeout_seconds)})"

    async def decide(self, request: PermissionRequest, session: ManagedSession) -> PermissionDecision:
        """Get a decision for one request on behalf of a session.

        Args:
            request: The permission request
            session: Session the request was routed to

        Returns:
            The user's decision, or a deny on timeout or failure
        """
        is_question = request.tool_name == ASK_USER_QUESTION_TOOL
        if is_question and not extract_questions(request):
            logger.warning(f"[PermissionHandler] AskUserQuestion without questions ({request.request_id})")
            return PermissionDecision.deny(NO_QUESTIONS_MESSAGE)

        if request.tool_name in self.auto_allow:
            logger.info(f"[PermissionHandler] Auto-allowing {request.tool_name} ({request.request_id})")
            return PermissionDecision.allow(request.tool_input)

        try:
            decision = await asyncio.wait_for(
                self._prompt(request, session),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[PermissionHandler] {request.tool_name} ({request.request_id}) timed out "
                f"after {self.timeout_seconds}s, denying"
            )
            return PermissionDecision.deny(self.question_timeout_message if is_question else self.timeout_message)
        except Exception:
            logger.exception(f"[PermissionHandler] Failed to prompt for {request.tool_name}")
            return PermissionDecision.deny(PROMPT_FAILED_MESSAGE)

        logger.info(
            f"[PermissionHandler] {request.tool_name} ({request.request_id}) "
            f"{decision.behavior.value} for session {session.id}"
        )
        return decision
