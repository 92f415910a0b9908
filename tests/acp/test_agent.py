"""Tests for the ACP agent surface.

The agent is driven directly with a fake transport factory; no droid
subprocess is started.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from acp import PROTOCOL_VERSION, RequestError  # type: ignore[import-untyped]
from acp.schema import TextContentBlock  # type: ignore[import-untyped]

from droid_acp.acp.agent import DroidAgent, to_request_error
from droid_acp.acp.modes import AcpMode
from droid_acp.acp.session_discovery import encode_cwd
from droid_acp.acp.slash_commands import SlashCommandHandler
from droid_acp.errors import (
    DroidInitTimeoutError,
    DroidSpawnError,
    SessionNotFoundError,
    TurnInProgressError,
)

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def agent(runtime) -> DroidAgent:
    return DroidAgent(runtime=runtime)


async def settle() -> None:
    """Let background announcements run."""
    for _ in range(5):
        await asyncio.sleep(0)


def write_session(sessions_dir: Path, cwd: str, session_id: str, title: str = "Fix login") -> Path:
    directory = sessions_dir / encode_cwd(cwd)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    records = [
        {"type": "session_start", "cwd": cwd, "title": title},
        {"type": "message", "message": {"role": "user", "content": [{"type": "text", "text": "hi"}]}},
    ]
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n")
    return path


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    @pytest.mark.asyncio
    async def test_initialize(self, agent) -> None:
        response = await agent.initialize(protocol_version=PROTOCOL_VERSION)

        assert response.protocol_version == PROTOCOL_VERSION
        assert response.agent_info.name == "droid-acp"
        assert response.agent_capabilities.load_session is False
        assert response.agent_capabilities.prompt_capabilities.image is True
        assert [m.id for m in response.auth_methods] == ["factory-api-key"]

    @pytest.mark.asyncio
    async def test_initialize_with_session_experiment(self, agent, runtime) -> None:
        runtime.config.experiment_sessions = True

        response = await agent.initialize(protocol_version=PROTOCOL_VERSION)

        assert response.agent_capabilities.load_session is True

    @pytest.mark.asyncio
    async def test_authenticate(self, agent, monkeypatch) -> None:
        monkeypatch.setenv("FACTORY_API_KEY", "fk-test")

        assert await agent.authenticate(method_id="factory-api-key") is not None

    @pytest.mark.asyncio
    async def test_authenticate_without_key(self, agent, monkeypatch) -> None:
        monkeypatch.delenv("FACTORY_API_KEY", raising=False)

        with pytest.raises(RequestError):
            await agent.authenticate(method_id="factory-api-key")

    @pytest.mark.asyncio
    async def test_authenticate_unknown_method(self, agent) -> None:
        with pytest.raises(RequestError):
            await agent.authenticate(method_id="password")

    def test_slash_commands_are_installed(self, agent, runtime) -> None:
        assert isinstance(runtime.slash_commands, SlashCommandHandler)


# =============================================================================
# Sessions
# =============================================================================


class TestNewSession:
    @pytest.mark.asyncio
    async def test_new_session(self, agent, runtime, transport_factory, sent_updates) -> None:
        """The droid session id becomes the ACP session id."""
        response = await agent.new_session(cwd="/repo", mcp_servers=[])
        await settle()

        assert response.session_id == "droid-1"
        assert response.modes.current_mode_id == "off"
        assert response.models.current_model_id == "claude-sonnet"
        assert [m.model_id for m in response.models.available_models] == ["claude-sonnet", "gpt-5"]
        [(cwd, resume_id, _)] = transport_factory.created
        assert (cwd, resume_id) == ("/repo", None)
        assert runtime.get("droid-1") is not None
        [update] = sent_updates()
        assert update.session_update == "available_commands_update"

    @pytest.mark.asyncio
    async def test_spawn_failure(self, agent, transport_factory, new_transport) -> None:
        transport_factory.queue = [new_transport(error=DroidSpawnError("droid not found"))]

        with pytest.raises(RequestError):
            await agent.new_session(cwd="/repo", mcp_servers=[])


class TestLoadSession:
    @pytest.mark.asyncio
    async def test_requires_experiment(self, agent) -> None:
        with pytest.raises(RequestError):
            await agent.load_session(cwd="/repo", mcp_servers=[], session_id="abc123")

    @pytest.mark.asyncio
    async def test_load_replays_history(self, agent, runtime, transport_factory, sent_updates) -> None:
        runtime.config.experiment_sessions = True
        write_session(runtime.config.sessions_dir, "/recorded", "abc123")

        response = await agent.load_session(cwd="/editor", mcp_servers=[], session_id="abc123")

        assert response.modes.current_mode_id == "off"
        [(cwd, resume_id, _)] = transport_factory.created
        assert (cwd, resume_id) == ("/recorded", "abc123")
        session = runtime.get("abc123")
        assert session is not None
        assert session.title == "Fix login"
        assert session.cwd == "/recorded"
        assert sent_updates()[0].session_update == "user_message_chunk"

    @pytest.mark.asyncio
    async def test_load_from_init_messages(self, agent, runtime, transport_factory, new_transport, sent_updates) -> None:
        """Without a file on disk the messages of the init result are replayed."""
        runtime.config.experiment_sessions = True
        transport_factory.queue = [
            new_transport(
                "abc123",
                session={"messages": [{"role": "assistant", "content": [{"type": "text", "text": "yo"}]}]},
            )
        ]

        await agent.load_session(cwd="/repo", mcp_servers=[], session_id="abc123")

        assert sent_updates()[0].content.text == "yo"

    @pytest.mark.asyncio
    async def test_load_without_history(self, agent, runtime, transport_factory) -> None:
        """A failed load leaves no session or droid behind."""
        runtime.config.experiment_sessions = True

        with pytest.raises(RequestError):
            await agent.load_session(cwd="/repo", mcp_servers=[], session_id="abc123")

        [(_, _, transport)] = transport_factory.created
        assert transport.stopped
        assert runtime.get("abc123") is None

    @pytest.mark.asyncio
    async def test_load_with_wrong_session(self, agent, runtime, transport_factory, new_transport) -> None:
        """A droid that comes up with another session id is stopped."""
        runtime.config.experiment_sessions = True
        wrong = new_transport("something-else")
        transport_factory.queue = [wrong]

        with pytest.raises(RequestError):
            await agent.load_session(cwd="/repo", mcp_servers=[], session_id="abc123")

        assert wrong.stopped
        assert runtime.get("abc123") is None

    @pytest.mark.asyncio
    async def test_load_running_session_is_reused(self, agent, runtime, make_session, transport_factory) -> None:
        runtime.config.experiment_sessions = True
        make_session("abc123", autonomy="auto-medium")

        response = await agent.load_session(cwd="/repo", mcp_servers=[], session_id="abc123")

        assert response.modes.current_mode_id == "medium"
        assert transport_factory.created == []


class TestListAndResume:
    @pytest.mark.asyncio
    async def test_list_sessions(self, agent, runtime) -> None:
        runtime.config.experiment_sessions = True
        write_session(runtime.config.sessions_dir, "/repo", "abc123", title="User: Fix login")

        response = await agent.list_sessions(cwd="/repo")

        [info] = response.sessions
        assert info.session_id == "abc123"
        assert info.cwd == "/repo"
        assert info.title == "Fix login"
        assert response.next_cursor is None

    @pytest.mark.asyncio
    async def test_list_requires_experiment(self, agent) -> None:
        with pytest.raises(RequestError):
            await agent.list_sessions()

    @pytest.mark.asyncio
    async def test_resume_session(self, agent, runtime, transport_factory, sent_updates) -> None:
        runtime.config.experiment_sessions = True

        await agent.resume_session(cwd="/repo", session_id="abc123", mcp_servers=[])
        await settle()

        assert runtime.get("abc123") is not None
        assert transport_factory.created[0][1] == "abc123"
        assert [u.session_update for u in sent_updates()] == ["available_commands_update"]


# =============================================================================
# Turns and settings
# =============================================================================


class TestTurns:
    @pytest.mark.asyncio
    async def test_prompt_and_cancel(self, agent, runtime, make_session) -> None:
        session = make_session()

        task = asyncio.create_task(
            agent.prompt(prompt=[TextContentBlock(type="text", text="go")], session_id="droid-1")
        )
        while session.pending_turn is None:
            await asyncio.sleep(0)
        await agent.cancel(session_id="droid-1")
        response = await task

        assert response.stop_reason == "cancelled"
        await settle()

    @pytest.mark.asyncio
    async def test_prompt_unknown_session(self, agent) -> None:
        with pytest.raises(RequestError):
            await agent.prompt(prompt=[], session_id="missing")

    @pytest.mark.asyncio
    async def test_set_mode_and_model(self, agent, make_session) -> None:
        session = make_session()

        await agent.set_session_mode(mode_id="spec", session_id="droid-1")
        await agent.set_session_model(model_id="gpt-5", session_id="droid-1")

        assert session.mode == AcpMode.SPEC
        assert session.transport.sent == [("autonomy", "spec"), ("model", "gpt-5")]

    @pytest.mark.asyncio
    async def test_ext_method_not_found(self, agent) -> None:
        with pytest.raises(RequestError):
            await agent.ext_method("droid/whatever", {})

    @pytest.mark.asyncio
    async def test_cleanup(self, agent, runtime, make_session) -> None:
        session = make_session()

        await agent.cleanup()

        assert session.transport.stopped
        assert runtime.sessions == {}


class TestErrorMapping:
    def test_transport_errors_are_internal(self) -> None:
        assert to_request_error(DroidInitTimeoutError("slow")).code == -32603

    @pytest.mark.parametrize(
        "error", [SessionNotFoundError("x"), TurnInProgressError()], ids=["not-found", "busy"]
    )
    def test_other_errors_are_invalid_params(self, error) -> None:
        assert to_request_error(error).code == -32602
