"""FastMCP server relaying conversations to persistent Claude Code sessions."""

import asyncio
import logging
import os
import shlex
import signal
import sys
from pathlib import Path
from typing import Annotated, Any

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from pydantic import Field

from .bridge.permission_handler import (
    ASK_USER_QUESTION_TOOL,
    PermissionHandler,
    answered_decision,
    extract_questions,
    format_permission_message,
    format_question_message,
    question_options,
)
from .bridge.router import BridgeRouter, format_result_summary
from .bridge.session_registry import ManagedSession, SessionRegistry
from .config import Settings
from .errors import SessionError
from .executor.session_process import SessionOptions
from .logging_config import configure_logging
from .models.events import ResultEvent
from .models.permissions import (
    QUESTION_DECLINED_MESSAGE,
    USER_DENIED_MESSAGE,
    PermissionDecision,
    PermissionRequest,
)
from .permission_server.ipc_server import IpcServer

logger = logging.getLogger(__name__)

ALLOW_OPTION = "Allow"
DENY_OPTION = "Deny"
START_FRESH_OPTION = "Start Fresh"
CLEAN_UP_OPTION = "Clean Up"

# How long the user has to choose what happens to an expired session
CONTINUE_CHOICE_TIMEOUT = 60.0

mcp = FastMCP("claude-relay")
settings = Settings()


class McpTurnConsumer:
    """Collects a turn's output for the tool result and reports tool activity as progress."""

    def __init__(self, ctx: Context | None) -> None:
        self.ctx = ctx
        self.text_parts: list[str] = []
        self.activities: list[str] = []
        self.result: ResultEvent | None = None
        self.incomplete = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    async def on_text(self, text: str) -> None:
        self.text_parts.append(text)

    async def on_tool_activity(self, summary: str) -> None:
        self.activities.append(summary)
        if self.ctx:
            await self.ctx.report_progress(
                progress=len(self.activities),
                total=None,
                message=summary,
            )

    async def on_result(self, result: ResultEvent) -> None:
        self.result = result

    async def on_incomplete(self) -> None:
        self.incomplete = True


class RelayApp:
    """Wires the registry, IPC server, router and permission prompts together.

    Attributes:
        settings: Application settings
        ipc_server: Permission IPC server
        registry: Session registry
        router: Turn and permission router
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.ipc_server = IpcServer(port=settings.ipc_port, host=settings.ipc_host)
        self.registry: SessionRegistry | None = None
        self.router: BridgeRouter | None = None
        self.permission_handler = PermissionHandler(
            prompt=self._elicit_permission,
            timeout_seconds=settings.permission_timeout_seconds,
            auto_allow=settings.auto_allow_tools,
        )
        # MCP context of the tool call currently running a turn, per conversation
        self._contexts: dict[str, Context] = {}
        self._started = False

    async def start(self) -> None:
        """Bind the IPC server, then build the components that need its port."""
        if self._started:
            return
        await self.ipc_server.start()

        options = SessionOptions(
            cwd=self.settings.get_working_directory(),
            ipc_port=self.ipc_server.port,
            ipc_host=self.settings.ipc_host,
            claude_command=shlex.split(self.settings.claude_code_path),
            dangerously_skip_permissions=self.settings.dangerously_skip_permissions,
            allowed_tools=list(self.settings.allowed_tools),
            kill_grace_seconds=self.settings.process_kill_grace_seconds,
        )
        self.registry = SessionRegistry(options)
        self.router = BridgeRouter(
            self.registry,
            self.ipc_server,
            decision_maker=self.permission_handler.decide,
        )
        self._started = True
        logger.info(f"[RelayApp] Started (ipc_port={self.ipc_server.port}, cwd={options.cwd})")

    async def aclose(self) -> None:
        """Destroy every session and stop the IPC server."""
        if not self._started:
            return
        self._started = False

        assert self.registry is not None and self.router is not None
        count = await self.registry.aclose(timeout=self.settings.process_kill_grace_seconds + 1)
        logger.info(f"[RelayApp] Destroyed {count} session(s)")
        self.router.close()
        await self.ipc_server.stop()

    def bind_context(self, conversation_id: str, ctx: Context | None) -> None:
        if ctx is None:
            self._contexts.pop(conversation_id, None)
        else:
            self._contexts[conversation_id] = ctx

    async def _elicit_permission(self, request: PermissionRequest, session: ManagedSession) -> PermissionDecision:
        ctx = self._contexts.get(session.conversation_id)
        if ctx is None:
            raise RuntimeError(f"No MCP client attached to conversation {session.conversation_id}")

        if request.tool_name == ASK_USER_QUESTION_TOOL:
            return await self._elicit_answers(ctx, request)

        message = format_permission_message(request)
        logger.info(f"[RelayApp] Asking user: {message}")
        result = await ctx.elicit(message, response_type=[ALLOW_OPTION, DENY_OPTION])

        if result.action == "accept" and result.data == ALLOW_OPTION:
            return PermissionDecision.allow(request.tool_input)
        return PermissionDecision.deny(USER_DENIED_MESSAGE)

    async def _elicit_answers(self, ctx: Context, request: PermissionRequest) -> PermissionDecision:
        """Ask each AskUserQuestion question in turn; any decline denies the whole call."""
        answers: dict[str, str] = {}
        for question in extract_questions(request):
            options = question_options(question)
            message = format_question_message(question)
            logger.info(f"[RelayApp] Asking question: {message}")
            result = await ctx.elicit(message, response_type=options or str)
            if result.action != "accept":
                logger.info(f"[RelayApp] Question {question['question']!r} not answered ({result.action})")
                return PermissionDecision.deny(QUESTION_DECLINED_MESSAGE)
            answers[question["question"]] = str(result.data)

        return answered_decision(request.tool_input["questions"], answers)

    async def continue_latest(self, ctx: Context | None) -> dict[str, Any]:
        """Bring back the most recently active session.

        A live session is returned as is. When its process has died the user
        chooses between a fresh session for the same conversation and
        removing it; without an answer nothing changes.
        """
        assert self.registry is not None
        session = self.registry.most_recently_active()
        if session is None:
            return {"status": "none", "message": "No previous session found. Use new_session to start one."}

        if session.driver.is_alive:
            logger.info(f"[RelayApp] Resuming session for {session.conversation_id}")
            return {"status": "resumed", "session": session.to_dict()}

        choice = await self._ask_expired_session_choice(ctx)
        if choice is None:
            return {
                "status": "expired",
                "message": "The Claude process for this session has died. No session changed.",
                "session": session.to_dict(),
            }

        self.registry.destroy(session.conversation_id)
        if choice == CLEAN_UP_OPTION:
            logger.info(f"[RelayApp] Cleaned up expired session for {session.conversation_id}")
            return {"status": "cleaned_up", "conversation_id": session.conversation_id}

        fresh = await self.registry.create(
            session.conversation_id,
            conversation_url=session.conversation_url,
            cwd=session.cwd,
        )
        logger.info(f"[RelayApp] Started fresh session for {session.conversation_id}")
        return {"status": "restarted", "session": fresh.to_dict()}

    async def _ask_expired_session_choice(self, ctx: Context | None) -> str | None:
        if ctx is None:
            return None
        try:
            result = await asyncio.wait_for(
                ctx.elicit(
                    "The Claude process for this session has died. Start a fresh session or clean up?",
                    response_type=[START_FRESH_OPTION, CLEAN_UP_OPTION],
                ),
                timeout=CONTINUE_CHOICE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("[RelayApp] No answer for expired session, leaving it")
            return None
        if result.action != "accept" or result.data not in (START_FRESH_OPTION, CLEAN_UP_OPTION):
            return None
        return result.data


_app = RelayApp(settings)
_start_lock = asyncio.Lock()


async def _get_app() -> RelayApp:
    async with _start_lock:
        await _app.start()
    return _app


@mcp.tool(annotations={"title": "New Claude session", "destructiveHint": False})
async def new_session(
    conversation_id: Annotated[str, Field(description="Conversation to bind the session to")],
    cwd: Annotated[str | None, Field(
        default=None,
        description="Working directory (default: CLAUDE_RELAY_WORKING_DIRECTORY)"
    )] = None,
    conversation_url: Annotated[str | None, Field(
        default=None,
        description="Optional link back to the conversation"
    )] = None,
) -> dict[str, Any]:
    """Start a Claude Code session for a conversation, replacing any existing one."""
    app = await _get_app()
    assert app.registry is not None
    try:
        session = await app.registry.create(
            conversation_id,
            conversation_url=conversation_url,
            cwd=Path(cwd).expanduser().resolve() if cwd else None,
        )
    except SessionError as e:
        raise ToolError(str(e)) from e
    return session.to_dict()


@mcp.tool(
    annotations={
        "title": "Send message to Claude",
        "readOnlyHint": False,
        "destructiveHint": True,
        "openWorldHint": True,
    }
)
async def send_message(
    conversation_id: Annotated[str, Field(description="Conversation with an existing session")],
    text: Annotated[str, Field(description="Message for Claude")],
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Send one message to the conversation's Claude session and wait for the reply.
    Tool calls that need permission are confirmed with you interactively.
    """
    app = await _get_app()
    assert app.router is not None and app.registry is not None

    existing = app.registry.get(conversation_id)
    if existing is not None and existing.is_processing:
        # Leaves the running turn's context bound
        raise ToolError(f"Conversation {conversation_id} already has a turn in progress")

    consumer = McpTurnConsumer(ctx)
    app.bind_context(conversation_id, ctx)
    try:
        result = await app.router.handle_message(conversation_id, text, consumer)
    except SessionError as e:
        raise ToolError(str(e)) from e
    finally:
        app.bind_context(conversation_id, None)

    session = app.registry.get(conversation_id)
    response: dict[str, Any] = {
        "conversation_id": conversation_id,
        "text": consumer.text,
        "tool_activity": consumer.activities,
        "completed": result is not None,
        "summary": format_result_summary(result) if result else "Turn ended without a result",
        "session": session.to_dict() if session else None,
    }
    if result is not None:
        response["is_error"] = result.is_error
        response["total_cost_usd"] = result.total_cost_usd
    return response


@mcp.tool(annotations={"title": "Continue latest Claude session"})
async def continue_session(ctx: Context | None = None) -> dict[str, Any]:
    """Resume the most recently active session.
    If its Claude process has died you are asked whether to start fresh or clean up.
    """
    app = await _get_app()
    try:
        return await app.continue_latest(ctx)
    except SessionError as e:
        raise ToolError(str(e)) from e


@mcp.tool(annotations={"title": "Abort Claude turn"})
async def abort_turn(
    conversation_id: Annotated[str, Field(description="Conversation whose turn to interrupt")],
) -> dict[str, Any]:
    """Interrupt the turn currently running in a conversation."""
    app = await _get_app()
    assert app.router is not None
    return {"conversation_id": conversation_id, "aborted": app.router.abort(conversation_id)}


@mcp.tool(annotations={"title": "End Claude session", "destructiveHint": True})
async def end_session(
    conversation_id: Annotated[str, Field(description="Conversation whose session to end")],
) -> dict[str, Any]:
    """Kill the conversation's Claude process and forget the session."""
    app = await _get_app()
    assert app.registry is not None
    session = app.registry.destroy(conversation_id)
    if session is None:
        raise ToolError(f"No session for conversation {conversation_id}")
    return session.to_dict()


@mcp.tool(annotations={"title": "List Claude sessions", "readOnlyHint": True})
async def list_sessions() -> dict[str, Any]:
    """Show every session with its state, cost and token usage."""
    app = await _get_app()
    assert app.router is not None
    return app.router.status()


async def _graceful_shutdown(sig: signal.Signals) -> None:
    """Handle graceful shutdown on signal.

    Args:
        sig: Signal that triggered shutdown
    """
    logger.info(f"Received {sig.name}, initiating graceful shutdown...")
    try:
        await _app.aclose()
    except Exception:
        logger.exception("Error during shutdown")
    logger.info("Graceful shutdown complete")

    # Re-deliver the signal with the default disposition to exit
    signal.signal(sig, signal.SIG_DFL)
    os.kill(os.getpid(), sig)


def _setup_signal_handlers() -> None:
    """Setup signal handlers for graceful shutdown.

    Uses signal.signal() to work before the event loop is running.
    The handler schedules the async shutdown task on the running event loop.
    """
    def _signal_handler(sig: int, frame: Any) -> None:
        signal_enum = signal.Signals(sig)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop running, exiting without cleanup")
            sys.exit(1)
        loop.create_task(_graceful_shutdown(signal_enum))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            signal.signal(sig, _signal_handler)
        except (ValueError, OSError) as e:
            logger.debug(f"Signal handler for {sig.name} not supported: {e}")


def main() -> None:
    """Main entry point for MCP server."""
    configure_logging(settings.log_level)
    logger.info("Starting Claude Relay MCP server...")
    logger.info(
        f"Settings: ipc_port={settings.ipc_port}, "
        f"permission_timeout={settings.permission_timeout_seconds}s, "
        f"skip_permissions={settings.dangerously_skip_permissions}"
    )

    _setup_signal_handlers()
    mcp.run(show_banner=False)


if __name__ == "__main__":
    main()
