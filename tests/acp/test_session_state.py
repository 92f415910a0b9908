"""Tests for per-session state: tool-call ledger, turns and captures."""

from __future__ import annotations

import asyncio

import pytest

from droid_acp.acp.modes import AcpMode
from droid_acp.acp.session import SessionState, ToolCallLedger, ToolCallStatus
from droid_acp.errors import CaptureTimeoutError, TurnInProgressError

# =============================================================================
# Tool-call ledger
# =============================================================================


class TestToolCallLedger:
    """Statuses only move forward."""

    def test_forward_progression(self) -> None:
        ledger = ToolCallLedger()

        assert ledger.advance("t1", ToolCallStatus.PENDING)
        assert ledger.advance("t1", ToolCallStatus.IN_PROGRESS)
        assert ledger.advance("t1", ToolCallStatus.COMPLETED)
        assert ledger.status("t1") == ToolCallStatus.COMPLETED
        assert ledger.is_terminal("t1")

    def test_regression_is_rejected(self) -> None:
        """in_progress never goes back to pending."""
        ledger = ToolCallLedger()
        ledger.advance("t1", ToolCallStatus.IN_PROGRESS)

        assert not ledger.advance("t1", ToolCallStatus.PENDING)
        assert ledger.status("t1") == ToolCallStatus.IN_PROGRESS

    def test_terminal_is_final(self) -> None:
        """A failed call cannot be completed (or failed) again."""
        ledger = ToolCallLedger()
        ledger.advance("t1", ToolCallStatus.FAILED)

        assert not ledger.advance("t1", ToolCallStatus.COMPLETED)
        assert not ledger.advance("t1", ToolCallStatus.FAILED)
        assert ledger.status("t1") == ToolCallStatus.FAILED

    def test_terminal_status_deactivates(self) -> None:
        ledger = ToolCallLedger()
        ledger.activate("t1", "Bash", {"command": "ls"}, ["content"])
        ledger.advance("t1", ToolCallStatus.IN_PROGRESS)
        assert ledger.active == {"t1"}

        ledger.advance("t1", ToolCallStatus.COMPLETED)

        assert ledger.active == set()
        assert ledger.names["t1"] == "Bash"
        assert ledger.raw_inputs["t1"] == {"command": "ls"}
        assert ledger.contents["t1"] == ["content"]

    def test_unknown_call(self) -> None:
        ledger = ToolCallLedger()
        assert ledger.status("nope") is None
        assert not ledger.is_known("nope")
        assert not ledger.is_terminal("nope")


# =============================================================================
# Session construction
# =============================================================================


class TestAttach:
    """Sessions registered by the runtime."""

    def test_attach_takes_settings_from_init(self, make_session) -> None:
        """Mode and model come from the droid's reported settings."""
        session = make_session(autonomy="auto-medium", model="gpt-5")

        assert session.mode == AcpMode.MEDIUM
        assert session.model == "gpt-5"
        assert session.title == "New Session"
        assert session.updated_at is not None
        assert session.state == SessionState.ACTIVE
        assert [m.id for m in session.available_models] == ["claude-sonnet", "gpt-5"]

    def test_unknown_autonomy_uses_default(self, make_session) -> None:
        session = make_session(autonomy="mystery", model=None)

        assert session.mode == AcpMode.OFF
        assert session.model == "unknown"

    def test_rebind_keeps_identity(self, make_session, new_transport, make_init) -> None:
        """Rebinding changes the transport but not the editor-facing session."""
        session = make_session("acp-1")
        replacement = new_transport("droid-2")

        session.rebind(replacement, make_init("droid-2", models=[{"id": "solo"}]))

        assert session.id == "acp-1"
        assert session.transport is replacement
        assert session.droid_session_id == "droid-2"
        assert session.generation == 1
        assert [m.id for m in session.available_models] == ["solo"]


# =============================================================================
# Prompt turns
# =============================================================================


class TestTurns:
    @pytest.mark.asyncio
    async def test_resolve_once(self, make_session) -> None:
        """Only the first resolution of a turn counts."""
        session = make_session()
        turn = session.begin_turn(timeout=5)

        assert session.resolve_turn("end_turn")
        assert not session.resolve_turn("cancelled")
        assert await turn.future == "end_turn"
        assert session.pending_turn is None

    @pytest.mark.asyncio
    async def test_second_turn_is_rejected(self, make_session) -> None:
        session = make_session()
        session.begin_turn(timeout=5)

        with pytest.raises(TurnInProgressError):
            session.begin_turn(timeout=5)
        session.resolve_turn("end_turn")

    @pytest.mark.asyncio
    async def test_timeout_ends_turn(self, make_session) -> None:
        """A turn that never completes ends with end_turn after the timeout."""
        session = make_session()
        turn = session.begin_turn(timeout=0.02)

        assert await asyncio.wait_for(turn.future, timeout=2) == "end_turn"
        assert session.pending_turn is None

    @pytest.mark.asyncio
    async def test_inflight_work(self, make_session) -> None:
        session = make_session()
        assert not session.has_inflight_work

        session.tool_calls.activate("t1", "Bash")
        assert session.has_inflight_work


# =============================================================================
# Captures
# =============================================================================


class TestCapture:
    @pytest.mark.asyncio
    async def test_resolve_capture(self, make_session) -> None:
        session = make_session()
        capture = session.begin_capture("summary", timeout=5)

        session.resolve_capture("text")

        assert await capture.future == "text"
        assert session.capture is None

    @pytest.mark.asyncio
    async def test_capture_timeout(self, make_session) -> None:
        session = make_session()
        capture = session.begin_capture("summary", timeout=0.02)

        with pytest.raises(CaptureTimeoutError):
            await asyncio.wait_for(capture.future, timeout=2)
        assert session.capture is None
