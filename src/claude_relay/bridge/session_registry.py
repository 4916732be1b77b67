"""Registry mapping front-end conversations to Claude sessions.

The registry is the only component that creates or destroys ClaudeSession
instances. Each ManagedSession exclusively owns its driver.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..executor.session_process import ClaudeSession, SessionOptions
from ..models.events import ResultEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ManagedSession:
    """One conversation's binding to a ClaudeSession.

    Attributes:
        id: Unique session ID
        driver: The owned ClaudeSession
        conversation_id: Front-end conversation identifier (thread, chat, ...)
        conversation_url: Optional link back to the conversation
        cwd: Working directory of the CLI process
        started_at: Creation time
        last_activity_at: Last time a turn started or finished
        message_count: Number of messages sent to Claude
        total_cost_usd: Running CLI cost (as reported, not summed)
        total_input_tokens: Input tokens summed over turns
        total_output_tokens: Output tokens summed over turns
        is_processing: Whether a turn is in flight
    """

    driver: ClaudeSession
    conversation_id: str
    cwd: Path
    conversation_url: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=_now)
    last_activity_at: datetime = field(default_factory=_now)
    message_count: int = 0
    total_cost_usd: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    is_processing: bool = False

    def touch(self) -> None:
        self.last_activity_at = _now()

    def to_dict(self) -> dict[str, Any]:
        """Summary for status displays and MCP tool results."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "conversation_url": self.conversation_url,
            "cwd": str(self.cwd),
            "state": self.driver.state.value,
            "claude_session_id": self.driver.session_id,
            "started_at": self.started_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "message_count": self.message_count,
            "total_cost_usd": self.total_cost_usd,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "is_processing": self.is_processing,
        }


class SessionRegistry:
    """Creates, tracks and destroys ManagedSessions keyed by conversation ID.

    Attributes:
        session_options: Launch options shared by every session
    """

    def __init__(
        self,
        session_options: SessionOptions,
        session_factory: Callable[[SessionOptions], ClaudeSession] = ClaudeSession,
    ) -> None:
        """Initialize registry.

        Args:
            session_options: Default launch options for new sessions
            session_factory: Builds a driver from options (overridable in tests)
        """
        self.session_options = session_options
        self._session_factory = session_factory
        self._sessions: dict[str, ManagedSession] = {}
        self._create_lock = asyncio.Lock()

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def create(
        self,
        conversation_id: str,
        conversation_url: str | None = None,
        cwd: Path | None = None,
    ) -> ManagedSession:
        """Create and spawn a session for a conversation.

        An existing session for the same conversation is destroyed first.

        Args:
            conversation_id: Front-end conversation identifier
            conversation_url: Optional link back to the conversation
            cwd: Working directory override for this session

        Returns:
            The registered ManagedSession

        Raises:
            SessionSpawnError: If the CLI process could not be started
        """
        async with self._create_lock:
            if conversation_id in self._sessions:
                logger.warning(
                    f"[SessionRegistry] Session already exists for {conversation_id}, destroying old one"
                )
                self.destroy(conversation_id)

            options = self.session_options
            if cwd is not None:
                options = replace(options, cwd=cwd)

            driver = self._session_factory(options)
            await driver.spawn()

            session = ManagedSession(
                driver=driver,
                conversation_id=conversation_id,
                conversation_url=conversation_url,
                cwd=options.cwd,
            )
            self._sessions[conversation_id] = session

        logger.info(f"[SessionRegistry] Session {session.id} created for {conversation_id}")
        return session

    def destroy(self, conversation_id: str) -> ManagedSession | None:
        """Kill a session's process and forget it.

        Returns:
            The destroyed session, or None if none was registered
        """
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return None

        session.driver.destroy()
        logger.info(
            f"[SessionRegistry] Session {session.id} destroyed "
            f"(conversation={conversation_id}, messages={session.message_count})"
        )
        return session

    def destroy_all(self) -> int:
        """Destroy every session. Never raises.

        Returns:
            Number of sessions that were registered
        """
        sessions = list(self._sessions.items())
        self._sessions.clear()

        for conversation_id, session in sessions:
            try:
                session.driver.destroy()
            except Exception:
                logger.exception(f"[SessionRegistry] Error destroying session for {conversation_id}")
            else:
                logger.info(f"[SessionRegistry] Session {session.id} destroyed (bulk)")

        return len(sessions)

    async def aclose(self, timeout: float = 10.0) -> int:
        """Destroy every session and wait for the processes to exit.

        Args:
            timeout: Upper bound in seconds for process exit

        Returns:
            Number of sessions destroyed
        """
        drivers = [s.driver for s in self._sessions.values()]
        count = self.destroy_all()
        if drivers:
            results = await asyncio.gather(
                *(d.wait_closed(timeout) for d in drivers),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"[SessionRegistry] Error waiting for process exit: {result}")
        return count

    # ── Lookup ──────────────────────────────────────────────────────────────

    def get(self, conversation_id: str) -> ManagedSession | None:
        return self._sessions.get(conversation_id)

    def all_sessions(self) -> list[ManagedSession]:
        return list(self._sessions.values())

    def count(self) -> int:
        return len(self._sessions)

    def has_any(self) -> bool:
        return bool(self._sessions)

    def most_recently_active(self) -> ManagedSession | None:
        """Session with the latest activity, or None if there are none."""
        if not self._sessions:
            return None
        return max(self._sessions.values(), key=lambda s: s.last_activity_at)

    def processing_sessions(self) -> list[ManagedSession]:
        return [s for s in self._sessions.values() if s.is_processing]

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def touch(self, conversation_id: str) -> None:
        session = self._sessions.get(conversation_id)
        if session is not None:
            session.touch()

    def record_turn_result(self, conversation_id: str, result: ResultEvent) -> None:
        """Fold a turn's result into the session's usage counters.

        Cost is assigned because the CLI reports a running total; tokens are
        per turn and are summed. A result for a destroyed session is ignored.
        """
        session = self._sessions.get(conversation_id)
        if session is None:
            return

        if result.total_cost_usd is not None:
            session.total_cost_usd = result.total_cost_usd
        session.total_input_tokens += result.input_tokens
        session.total_output_tokens += result.output_tokens


