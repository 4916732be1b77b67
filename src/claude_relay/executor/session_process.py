"""Persistent Claude Code CLI process with a pull-based event stream.

A ClaudeSession keeps one ``claude -p --input-format stream-json`` process
alive across many turns. Each ``send_message()`` writes a user message to
stdin and yields the events the process emits until the ``result`` event
that ends the turn.

Every background task registered against a process captures the session's
generation number when it is created. ``spawn()`` and ``destroy()`` bump the
generation, so work tied to a retired process discards its effects and a
consumer of the old process ends its iteration instead of seeing events from
the new one.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import SessionBusyError, SessionSpawnError, SessionWriteError
from ..models.events import ClaudeEvent
from .stream_parser import StreamParser

logger = logging.getLogger(__name__)

PERMISSION_SERVER_NAME = "permsrv"
PERMISSION_PROMPT_TOOL = f"mcp__{PERMISSION_SERVER_NAME}__permission_prompt"
IPC_PORT_ENV = "CLAUDE_RELAY_IPC_PORT"
IPC_HOST_ENV = "CLAUDE_RELAY_IPC_HOST"

# Claude emits whole assistant messages on one line
STREAM_LIMIT = 16 * 1024 * 1024


class SessionState(Enum):
    """Lifecycle state of a ClaudeSession."""

    DEAD = "dead"
    IDLE = "idle"
    PROCESSING = "processing"


@dataclass
class SessionOptions:
    """How to launch the Claude CLI for a session.

    Attributes:
        cwd: Working directory of the CLI process
        ipc_port: Port of the relay's permission IPC server
        ipc_host: Loopback host the IPC server is bound to
        claude_command: Executable (and leading args) used to start the CLI
        dangerously_skip_permissions: Let Claude run every tool unprompted
        allowed_tools: Tools auto-approved without a permission prompt
        kill_grace_seconds: Time between SIGTERM and SIGKILL when retiring a process
    """

    cwd: Path
    ipc_port: int
    ipc_host: str = "127.0.0.1"
    claude_command: list[str] = field(default_factory=lambda: ["claude"])
    dangerously_skip_permissions: bool = False
    allowed_tools: list[str] = field(default_factory=lambda: ["Read", "Glob", "Grep"])
    kill_grace_seconds: float = 5.0


class ClaudeSession:
    """Owns one Claude CLI process across its lifetime, including respawns.

    State machine: DEAD -> IDLE -> PROCESSING -> IDLE -> ... -> DEAD.
    Only one consumer may iterate ``send_message()`` at a time.

    Attributes:
        options: Launch options
    """

    def __init__(self, options: SessionOptions) -> None:
        self.options = options

        self._process: asyncio.subprocess.Process | None = None
        self._state = SessionState.DEAD
        self._generation = 0
        self._session_id: str | None = None
        self._total_cost_usd = 0.0
        self._skip_until_result = False

        # Event pump internals
        self._events: deque[ClaudeEvent] = deque()
        self._wakeup = asyncio.Event()
        self._background: set[asyncio.Task[None]] = set()
        self._reapers: set[asyncio.Task[None]] = set()

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def session_id(self) -> str | None:
        """CLI conversation ID announced by the last system/init event."""
        return self._session_id

    @property
    def total_cost_usd(self) -> float:
        return self._total_cost_usd

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._state != SessionState.DEAD

    def info(self) -> dict[str, Any]:
        """Snapshot for status displays."""
        return {
            "state": self._state.value,
            "session_id": self._session_id,
            "total_cost_usd": self._total_cost_usd,
            "pid": self.pid,
            "generation": self._generation,
        }

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def spawn(self) -> None:
        """Start a fresh CLI process, retiring any existing one.

        Raises:
            SessionSpawnError: If the process could not be started
        """
        self._retire_process()

        self._generation += 1
        gen = self._generation
        self._events.clear()
        self._session_id = None
        self._total_cost_usd = 0.0
        self._skip_until_result = False
        self._state = SessionState.DEAD
        # A consumer of the previous generation must observe the change
        self._wake()

        cmd = self._build_command()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.options.cwd),
                env=self._build_env(),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"[ClaudeSession] Failed to start {cmd[0]}: {e}")
            raise SessionSpawnError(f"Failed to start Claude CLI ({cmd[0]}): {e}") from e

        if gen != self._generation:
            # destroy() or another spawn() ran while we were starting
            self._reap_in_background(process)
            return

        self._process = process
        self._state = SessionState.IDLE
        self._start_background(self._pump_stdout(process, gen))
        self._start_background(self._log_stderr(process, gen))

        logger.info(
            f"[ClaudeSession] Spawned pid={process.pid} generation={gen} "
            f"skip_permissions={self.options.dangerously_skip_permissions}"
        )

    def destroy(self) -> None:
        """Kill the process and invalidate any consumer. Safe to call repeatedly."""
        had_process = self._process is not None
        self._retire_process()

        self._state = SessionState.DEAD
        self._session_id = None
        self._total_cost_usd = 0.0
        self._skip_until_result = False
        self._events.clear()
        self._generation += 1
        self._wake()

        if had_process:
            logger.info(f"[ClaudeSession] Destroyed (generation now {self._generation})")

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait until every retired process has been reaped.

        Args:
            timeout: Upper bound in seconds; None waits indefinitely
        """
        if not self._reapers:
            return
        done, pending = await asyncio.wait(set(self._reapers), timeout=timeout)
        if pending:
            logger.warning(f"[ClaudeSession] {len(pending)} process(es) still exiting after {timeout}s")

    def abort_current_turn(self) -> bool:
        """Interrupt the in-flight turn with SIGINT.

        The CLI answers an interrupt with a ``result`` event and keeps running,
        so the consumer sees the abort as the end of its turn.

        Returns:
            True if an interrupt was sent
        """
        if self._process is None or self._state != SessionState.PROCESSING:
            return False
        try:
            self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        logger.info(f"[ClaudeSession] Sent SIGINT to pid={self._process.pid}")
        return True

    # ── Turns ───────────────────────────────────────────────────────────────

    async def send_message(self, text: str) -> AsyncIterator[ClaudeEvent]:
        """Send a user message and yield events until the turn ends.

        The sequence ends without error after the ``result`` event, when the
        process dies with nothing left buffered, or when the session is
        respawned or destroyed underneath the caller. Only the first case is
        a completed turn.

        Args:
            text: User message text

        Yields:
            ClaudeEvent objects in the order the process emitted them

        Raises:
            SessionBusyError: If a turn is already in flight
            SessionSpawnError: If an automatic respawn failed
            SessionWriteError: If the message could not be written
        """
        if self._state == SessionState.PROCESSING:
            raise SessionBusyError("A turn is already in progress for this session")

        if self._state == SessionState.DEAD:
            logger.info("[ClaudeSession] Session is dead, respawning before send")
            await self.spawn()

        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise SessionWriteError("Claude process stdin not available")

        gen = self._generation
        self._state = SessionState.PROCESSING
        try:
            await self._write_user_message(process, text)
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            if gen == self._generation and self._state == SessionState.PROCESSING:
                self._state = SessionState.IDLE if process.returncode is None else SessionState.DEAD
            raise SessionWriteError(f"Failed to write to Claude stdin: {e}") from e

        try:
            while gen == self._generation:
                while not self._events and self.is_alive and gen == self._generation:
                    self._wakeup.clear()
                    await self._wakeup.wait()

                if gen != self._generation:
                    logger.debug("[ClaudeSession] Generation changed, ending event stream")
                    break
                if not self._events:
                    # Dead with nothing buffered: the turn was abandoned
                    break

                event = self._events.popleft()

                if event.is_init:
                    self._session_id = event.session_id
                    logger.info(f"[ClaudeSession] Session initialized: {self._session_id} model={event.model}")

                if event.is_result:
                    self._record_result(event)
                    yield event
                    return

                yield event
        finally:
            if gen == self._generation and self._state == SessionState.PROCESSING:
                # Consumer stopped iterating before the result event
                self._abandon_turn()

    def _record_result(self, event: ClaudeEvent) -> None:
        result = event.get_result()
        if result is not None and result.total_cost_usd is not None:
            self._total_cost_usd = result.total_cost_usd
        if self.is_alive:
            self._state = SessionState.IDLE

    def _abandon_turn(self) -> None:
        """Discard the rest of a turn nobody is consuming any more."""
        logger.info("[ClaudeSession] Turn abandoned by consumer, discarding until result")
        while self._events:
            event = self._events.popleft()
            if event.is_result:
                self._record_result(event)
                return
        self._skip_until_result = True

    async def _write_user_message(self, process: asyncio.subprocess.Process, text: str) -> None:
        message = {
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "text", "text": text}],
            },
        }
        assert process.stdin is not None
        process.stdin.write((json.dumps(message) + "\n").encode())
        await process.stdin.drain()

    # ── Background work ─────────────────────────────────────────────────────

    async def _pump_stdout(self, process: asyncio.subprocess.Process, gen: int) -> None:
        """Buffer parsed stdout events, then mark the session dead on exit.

        All output is read to EOF before the exit is recorded, so events the
        process emitted before dying are still delivered.
        """
        parser = StreamParser(process.stdout)
        try:
            async for event in parser.parse_events():
                if gen != self._generation:
                    continue
                if self._skip_until_result:
                    if event.is_result:
                        self._skip_until_result = False
                        self._record_result(event)
                    continue
                self._events.append(event)
                self._wake()

            returncode = await process.wait()
            if gen == self._generation:
                logger.info(f"[ClaudeSession] Process pid={process.pid} exited with code {returncode}")
        except Exception:
            logger.exception(f"[ClaudeSession] stdout pump failed for pid={process.pid}")
            if gen == self._generation:
                # Nobody reads this process's output any more
                self._retire_process()
        finally:
            if gen == self._generation:
                self._state = SessionState.DEAD
                self._process = None
                self._wake()

    async def _log_stderr(self, process: asyncio.subprocess.Process, gen: int) -> None:
        assert process.stderr is not None
        while True:
            try:
                chunk = await process.stderr.readline()
            except (ValueError, OSError):
                break
            if not chunk:
                break
            if gen != self._generation:
                continue
            text = chunk.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug(f"[ClaudeSession] stderr: {text}")

    def _start_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _wake(self) -> None:
        self._wakeup.set()

    def _retire_process(self) -> None:
        """Send SIGTERM to the owned process and reap it in the background."""
        process = self._process
        self._process = None
        if process is None:
            return
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        self._reap_in_background(process)

    def _reap_in_background(self, process: asyncio.subprocess.Process) -> None:
        task = asyncio.create_task(self._reap(process))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Wait for a terminated process, escalating to SIGKILL after the grace period."""
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self.options.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[ClaudeSession] pid={process.pid} ignored SIGTERM, killing it")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    # ── Command line ────────────────────────────────────────────────────────

    def _build_command(self) -> list[str]:
        """Build Claude Code CLI command.

        Returns:
            Command list for subprocess
        """
        cmd = [
            *self.options.claude_command,
            "-p",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]

        if self.options.dangerously_skip_permissions:
            cmd.append("--dangerously-skip-permissions")
            return cmd

        if self.options.allowed_tools:
            cmd.extend(["--allowedTools", *self.options.allowed_tools])

        mcp_config = {
            "mcpServers": {
                PERMISSION_SERVER_NAME: {
                    "command": sys.executable,
                    "args": ["-m", "claude_relay.permission_server.approver"],
                    "env": {
                        IPC_PORT_ENV: str(self.options.ipc_port),
                        IPC_HOST_ENV: self.options.ipc_host,
                    },
                }
            }
        }
        cmd.extend([
            "--mcp-config", json.dumps(mcp_config),
            "--permission-prompt-tool", PERMISSION_PROMPT_TOOL,
        ])
        return cmd

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        # Claude refuses to start when it believes it is nested in another session
        env.pop("CLAUDECODE", None)
        return env
