"""Shared fixtures.

Integration tests run ``tests/fake_claude.py`` in place of the real Claude
Code CLI, so they need no network access and no API key.
"""

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from claude_relay.executor.session_process import ClaudeSession, SessionOptions
from claude_relay.models.events import ClaudeEvent
from claude_relay.permission_server.ipc_server import IpcServer

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

FAKE_CLAUDE = Path(__file__).parent / "fake_claude.py"

# Upper bound for any single wait in integration tests
WAIT_TIMEOUT = 15.0


async def _collect(events: AsyncIterator[ClaudeEvent], timeout: float = WAIT_TIMEOUT) -> list[ClaudeEvent]:
    async def _drain() -> list[ClaudeEvent]:
        return [event async for event in events]

    return await asyncio.wait_for(_drain(), timeout=timeout)


@pytest.fixture
def collect():
    """Drain a send_message() sequence into a list, bounded by a timeout."""
    return _collect


@pytest.fixture
def fake_claude_command() -> list[str]:
    return [sys.executable, str(FAKE_CLAUDE)]


@pytest.fixture
def session_options(tmp_path: Path, fake_claude_command: list[str]) -> SessionOptions:
    return SessionOptions(
        cwd=tmp_path,
        ipc_port=0,
        claude_command=fake_claude_command,
        kill_grace_seconds=2.0,
    )


@pytest_asyncio.fixture
async def claude_session(session_options: SessionOptions) -> AsyncIterator[ClaudeSession]:
    session = ClaudeSession(session_options)
    yield session
    session.destroy()
    await session.wait_closed(timeout=5.0)


@pytest_asyncio.fixture
async def ipc_server() -> AsyncIterator[IpcServer]:
    server = IpcServer(port=0)
    await server.start()
    yield server
    await server.stop()
