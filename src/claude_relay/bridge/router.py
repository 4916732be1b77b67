"""Routes conversation turns to Claude sessions and permission requests back.

BridgeRouter is the central orchestration class. It drives one turn at a time
per conversation, hands text and tool activity to a TurnConsumer provided by
the front end, and decides which conversation an incoming permission request
belongs to.

Permission requests carry no conversation ID, so they are routed to the
processing session with the most recent activity. With several turns in
flight at once a request can reach the wrong conversation.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Any, Protocol

from ..errors import SessionBusyError, SessionNotFoundError
from ..executor.stream_parser import format_tool_activity, try_parse_tool_input
from ..models.events import ClaudeEvent, ClaudeEventType, ResultEvent, StreamEventType
from ..models.permissions import (
    NO_ACTIVE_SESSION_MESSAGE,
    NO_HANDLER_MESSAGE,
    PROMPT_FAILED_MESSAGE,
    SHUTTING_DOWN_MESSAGE,
    PermissionDecision,
    PermissionRequest,
)
from ..permission_server.ipc_server import IpcServer, ResolveCallback
from .session_registry import ManagedSession, SessionRegistry

logger = logging.getLogger(__name__)

DecisionMaker = Callable[[PermissionRequest, ManagedSession], Awaitable[PermissionDecision]]


class TurnConsumer(Protocol):
    """Receives the visible output of one turn."""

    async def on_text(self, text: str) -> None: ...

    async def on_tool_activity(self, summary: str) -> None: ...

    async def on_result(self, result: ResultEvent) -> None: ...

    async def on_incomplete(self) -> None: ...


class _ToolInputTracker:
    """Accumulates input_json_delta fragments of the tool block being streamed."""

    def __init__(self) -> None:
        self.tool_name: str | None = None
        self.partial_json = ""
        self.last_summary: str | None = None

    def start(self, tool_name: str) -> None:
        self.tool_name = tool_name
        self.partial_json = ""

    def stop(self) -> None:
        self.tool_name = None
        self.partial_json = ""


def format_result_summary(result: ResultEvent) -> str:
    """One-line footer for a finished turn.

    Examples:
        >>> format_result_summary(ResultEvent(subtype="success", is_error=False, num_turns=2, total_cost_usd=0.0123))
        'Completed in 2 turn(s) ($0.0123)'
    """
    if result.is_error:
        return f"Error from Claude: {result.result or 'Unknown error'}"
    if result.num_turns is not None and result.total_cost_usd is not None:
        return f"Completed in {result.num_turns} turn(s) (${result.total_cost_usd:.4f})"
    return "Completed"


class BridgeRouter:
    """Connects the session registry, the IPC server and a decision maker.

    Attributes:
        registry: Sessions by conversation ID
        ipc_server: Permission IPC server this router listens on
    """

    def __init__(
        self,
        registry: SessionRegistry,
        ipc_server: IpcServer,
        decision_maker: DecisionMaker | None = None,
    ) -> None:
        """Initialize router and register it as the permission listener.

        Args:
            registry: Session registry
            ipc_server: IPC server receiving permission requests
            decision_maker: Async callable producing a decision for a request
                routed to a session; without one every request is denied
        """
        self.registry = registry
        self.ipc_server = ipc_server
        self._decision_maker = decision_maker
        ipc_server.on_permission_request(self._on_permission_request)

    def set_decision_maker(self, decision_maker: DecisionMaker | None) -> None:
        self._decision_maker = decision_maker

    def close(self) -> None:
        """Stop receiving permission requests."""
        self.ipc_server.remove_listener(self._on_permission_request)

    # ── Turns ──────────────────────────────────────────────────────────────

    async def handle_message(
        self,
        conversation_id: str,
        text: str,
        consumer: TurnConsumer,
    ) -> ResultEvent | None:
        """Run one turn for a conversation.

        Args:
            conversation_id: Conversation the message belongs to
            text: User message
            consumer: Receives text, tool activity and the outcome

        Returns:
            The turn's result, or None if the turn ended without one

        Raises:
            SessionNotFoundError: If no session exists for the conversation
            SessionBusyError: If a turn is already running for it
            SessionSpawnError: If the session had to respawn and could not
            SessionWriteError: If the message could not be delivered
        """
        session = self.registry.get(conversation_id)
        if session is None:
            raise SessionNotFoundError(f"No session for conversation {conversation_id}")
        if session.is_processing:
            raise SessionBusyError(f"Conversation {conversation_id} already has a turn in progress")

        session.is_processing = True
        session.message_count += 1
        session.touch()
        logger.info(f"[BridgeRouter] Turn {session.message_count} started for {conversation_id}")

        result: ResultEvent | None = None
        tracker = _ToolInputTracker()
        try:
            async with aclosing(session.driver.send_message(text)) as events:
                async for event in events:
                    turn_result = await self._dispatch(conversation_id, event, consumer, tracker)
                    if turn_result is not None:
                        result = turn_result

            if result is None:
                logger.warning(f"[BridgeRouter] Turn for {conversation_id} ended without a result")
                await self._notify(consumer.on_incomplete())
        finally:
            session.is_processing = False
            session.touch()

        return result

    async def _dispatch(
        self,
        conversation_id: str,
        event: ClaudeEvent,
        consumer: TurnConsumer,
        tracker: _ToolInputTracker,
    ) -> ResultEvent | None:
        if event.is_init:
            logger.info(
                f"[BridgeRouter] Claude session {event.session_id} initialized "
                f"for {conversation_id} (model={event.model})"
            )
            return None

        if event.is_result:
            result = event.get_result()
            assert result is not None
            self.registry.record_turn_result(conversation_id, result)
            await self._notify(consumer.on_result(result))
            return result

        if event.type != ClaudeEventType.STREAM_EVENT:
            return None

        delta = event.get_stream_delta()
        if delta is None:
            return None

        if delta.type == StreamEventType.CONTENT_BLOCK_START:
            block = delta.content_block
            if block is not None and block.type == "tool_use" and block.name:
                tracker.start(block.name)
                await self._report_tool(consumer, tracker, format_tool_activity(block.name, block.input))

        elif delta.type == StreamEventType.CONTENT_BLOCK_DELTA:
            if delta.text:
                await self._notify(consumer.on_text(delta.text))
            elif delta.partial_json is not None and tracker.tool_name:
                tracker.partial_json += delta.partial_json
                parsed = try_parse_tool_input(tracker.partial_json)
                if parsed is not None:
                    await self._report_tool(consumer, tracker, format_tool_activity(tracker.tool_name, parsed))

        elif delta.type == StreamEventType.CONTENT_BLOCK_STOP:
            tracker.stop()

        return None

    async def _report_tool(self, consumer: TurnConsumer, tracker: _ToolInputTracker, summary: str) -> None:
        if summary == tracker.last_summary:
            return
        tracker.last_summary = summary
        await self._notify(consumer.on_tool_activity(summary))

    async def _notify(self, callback: Awaitable[None]) -> None:
        # Consumer errors are logged, never raised into the turn
        try:
            await callback
        except Exception as e:
            logger.warning(f"[BridgeRouter] Consumer callback failed: {e!r}")

    def abort(self, conversation_id: str) -> bool:
        """Interrupt the running turn of a conversation.

        Returns:
            True if an interrupt was sent
        """
        session = self.registry.get(conversation_id)
        if session is None:
            return False
        aborted = session.driver.abort_current_turn()
        if aborted:
            logger.info(f"[BridgeRouter] Aborted turn for {conversation_id}")
        return aborted

    def status(self) -> dict[str, Any]:
        """Snapshot of every session and the permission bridge."""
        sessions = self.registry.all_sessions()
        return {
            "session_count": len(sessions),
            "processing": [s.conversation_id for s in sessions if s.is_processing],
            "ipc_port": self.ipc_server.port,
            "pending_permissions": self.ipc_server.pending_count,
            "sessions": [s.to_dict() for s in sessions],
        }

    # ── Permissions ────────────────────────────────────────────────────────

    def route_permission(self, request: PermissionRequest) -> ManagedSession | None:
        """Pick the session a permission request belongs to.

        Returns:
            The processing session with the latest activity, or None
        """
        processing = self.registry.processing_sessions()
        if not processing:
            return None
        return max(processing, key=lambda s: s.last_activity_at)

    async def _on_permission_request(self, request: PermissionRequest, resolve: ResolveCallback) -> None:
        session = self.route_permission(request)
        if session is None:
            logger.warning(f"[BridgeRouter] No processing session for {request.tool_name}, denying")
            resolve(PermissionDecision.deny(NO_ACTIVE_SESSION_MESSAGE))
            return

        if self._decision_maker is None:
            resolve(PermissionDecision.deny(NO_HANDLER_MESSAGE))
            return

        logger.info(
            f"[BridgeRouter] Routing {request.tool_name} ({request.request_id}) "
            f"to {session.conversation_id}"
        )
        try:
            decision = await self._decision_maker(request, session)
        except asyncio.CancelledError:
            resolve(PermissionDecision.deny(SHUTTING_DOWN_MESSAGE))
            raise
        except Exception:
            logger.exception(f"[BridgeRouter] Decision maker failed for {request.request_id}")
            decision = PermissionDecision.deny(PROMPT_FAILED_MESSAGE)

        resolve(decision)
