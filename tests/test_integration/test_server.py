"""Tests for the MCP front end wiring, using a stand-in for the MCP Context."""

import asyncio
import shlex
from types import SimpleNamespace

import pytest
import pytest_asyncio

from claude_relay.config import Settings
from claude_relay.server import (
    ALLOW_OPTION,
    CLEAN_UP_OPTION,
    DENY_OPTION,
    START_FRESH_OPTION,
    McpTurnConsumer,
    RelayApp,
)

WAIT_TIMEOUT = 15.0


class StubContext:
    """Records progress reports and answers elicitations with a fixed choice."""

    def __init__(self, action: str = "accept", data: str | None = ALLOW_OPTION) -> None:
        self.answer = SimpleNamespace(action=action, data=data)
        self.elicited: list[tuple[str, list[str]]] = []
        self.progress: list[str] = []

    async def elicit(self, message, response_type=None):
        self.elicited.append((message, response_type))
        return self.answer

    async def report_progress(self, progress, total=None, message=None):
        self.progress.append(message)


class LastOptionContext(StubContext):
    """Answers every elicitation with the last option offered."""

    async def elicit(self, message, response_type=None):
        self.elicited.append((message, response_type))
        return SimpleNamespace(action="accept", data=response_type[-1])


def _settings(tmp_path, fake_claude_command, **overrides) -> Settings:
    values = {
        "claude_code_path": shlex.join(fake_claude_command),
        "working_directory": str(tmp_path),
        "ipc_port": 0,
        "process_kill_grace_seconds": 2.0,
        "permission_timeout_seconds": 5,
        "ipc_client_timeout_seconds": 10,
    }
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def relay_app(tmp_path, fake_claude_command):
    app = RelayApp(_settings(tmp_path, fake_claude_command))
    await app.start()
    yield app
    await app.aclose()


async def _turn(app: RelayApp, conversation_id: str, text: str, ctx) -> McpTurnConsumer:
    consumer = McpTurnConsumer(ctx)
    app.bind_context(conversation_id, ctx)
    try:
        await asyncio.wait_for(
            app.router.handle_message(conversation_id, text, consumer),
            timeout=WAIT_TIMEOUT,
        )
    finally:
        app.bind_context(conversation_id, None)
    return consumer


@pytest.mark.asyncio
async def test_start_binds_ipc_server(relay_app: RelayApp):
    assert relay_app.ipc_server.port > 0
    assert relay_app.ipc_server.listener_count == 1
    assert relay_app.registry.session_options.ipc_port == relay_app.ipc_server.port


@pytest.mark.asyncio
async def test_allow_through_elicitation(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")
    ctx = StubContext()

    consumer = await _turn(relay_app, "conv-1", "permission", ctx)

    assert ctx.elicited == [("Allow Bash: rm -rf build?", [ALLOW_OPTION, DENY_OPTION])]
    assert consumer.text == "allowed {'command': 'rm -rf build'}"
    assert consumer.result is not None
    assert ctx.progress == ["Using Bash..."]


@pytest.mark.asyncio
async def test_deny_through_elicitation(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")

    consumer = await _turn(relay_app, "conv-1", "permission", StubContext(data=DENY_OPTION))

    assert consumer.text == "denied: User denied this action"


@pytest.mark.asyncio
async def test_declined_elicitation_denies(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")

    consumer = await _turn(relay_app, "conv-1", "permission", StubContext(action="decline", data=None))

    assert consumer.text == "denied: User denied this action"


@pytest.mark.asyncio
async def test_missing_context_denies(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")

    consumer = await _turn(relay_app, "conv-1", "permission", None)

    assert consumer.text == "denied: Failed to send permission prompt"


@pytest.mark.asyncio
async def test_aclose_destroys_sessions(relay_app: RelayApp):
    session = await relay_app.registry.create("conv-1")

    await relay_app.aclose()

    assert relay_app.registry.count() == 0
    assert not session.driver.is_alive
    assert not relay_app.ipc_server.is_running
    await relay_app.aclose()


@pytest.mark.asyncio
async def test_questions_answered_through_elicitation(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")
    ctx = LastOptionContext()

    consumer = await _turn(relay_app, "conv-1", "question", ctx)

    assert ctx.elicited == [
        ("[Database] Which database?", ["Postgres", "SQLite"]),
        ("[Tests] Add tests?", ["Yes", "No"]),
    ]
    assert consumer.text == "answers {'Which database?': 'SQLite', 'Add tests?': 'No'}"


@pytest.mark.asyncio
async def test_declined_question_denies(relay_app: RelayApp):
    await relay_app.registry.create("conv-1")
    ctx = StubContext(action="decline", data=None)

    consumer = await _turn(relay_app, "conv-1", "question", ctx)

    assert len(ctx.elicited) == 1
    assert consumer.text == "denied: User declined to answer"


@pytest.mark.asyncio
async def test_auto_allow_tools_skip_elicitation(tmp_path, fake_claude_command):
    app = RelayApp(_settings(tmp_path, fake_claude_command, auto_allow_tools=["Bash"]))
    await app.start()
    try:
        await app.registry.create("conv-1")
        ctx = StubContext(data=DENY_OPTION)

        consumer = await _turn(app, "conv-1", "permission", ctx)
    finally:
        await app.aclose()

    assert ctx.elicited == []
    assert consumer.text == "allowed {'command': 'rm -rf build'}"


@pytest.mark.asyncio
async def test_continue_without_sessions(relay_app: RelayApp):
    result = await relay_app.continue_latest(StubContext())
    assert result["status"] == "none"


@pytest.mark.asyncio
async def test_continue_resumes_most_recent_live_session(relay_app: RelayApp):
    await relay_app.registry.create("conv-a")
    await relay_app.registry.create("conv-b")
    await asyncio.sleep(0.01)
    relay_app.registry.touch("conv-a")
    ctx = StubContext()

    result = await relay_app.continue_latest(ctx)

    assert result["status"] == "resumed"
    assert result["session"]["conversation_id"] == "conv-a"
    assert ctx.elicited == []


@pytest.mark.asyncio
async def test_continue_expired_session_starts_fresh(relay_app: RelayApp):
    expired = await relay_app.registry.create("conv-1", conversation_url="https://chat.example/1")
    expired.driver.destroy()
    ctx = StubContext(data=START_FRESH_OPTION)

    result = await relay_app.continue_latest(ctx)

    assert result["status"] == "restarted"
    assert ctx.elicited[0][1] == [START_FRESH_OPTION, CLEAN_UP_OPTION]
    fresh = relay_app.registry.get("conv-1")
    assert fresh is not expired
    assert fresh.driver.is_alive
    assert fresh.conversation_url == "https://chat.example/1"
    assert result["session"]["id"] == fresh.id


@pytest.mark.asyncio
async def test_continue_expired_session_cleans_up(relay_app: RelayApp):
    expired = await relay_app.registry.create("conv-1")
    expired.driver.destroy()

    result = await relay_app.continue_latest(StubContext(data=CLEAN_UP_OPTION))

    assert result == {"status": "cleaned_up", "conversation_id": "conv-1"}
    assert relay_app.registry.count() == 0


@pytest.mark.asyncio
async def test_continue_expired_session_without_answer(relay_app: RelayApp):
    expired = await relay_app.registry.create("conv-1")
    expired.driver.destroy()

    assert (await relay_app.continue_latest(None))["status"] == "expired"
    assert (await relay_app.continue_latest(StubContext(action="cancel", data=None)))["status"] == "expired"
    assert relay_app.registry.get("conv-1") is expired
