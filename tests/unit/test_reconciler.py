"""Tests for MessageReconciler.

Covers notification normalization, ordered processing, the end-of-turn
race between ``idle`` and the final assistant message, and the replies
written for droid requests.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from droid_acp.droid.reconciler import MessageReconciler
from droid_acp.errors import DroidInitError
from droid_acp.protocol.notifications import (
    DroidError,
    MessageCreated,
    SettingsUpdated,
    ToolResult,
    TurnComplete,
    WorkingStateChanged,
)

GRACE = 0.05

# =============================================================================
# Test Fixtures
# =============================================================================


class RecordingHandler:
    """Event handler that records notifications in arrival order."""

    def __init__(self, permission: Any = "proceed_once") -> None:
        self.notifications: list[Any] = []
        self.handle_permission_request = AsyncMock(return_value=permission)
        self.handle_exit = AsyncMock()

    async def handle_notification(self, notification: Any) -> None:
        self.notifications.append(notification)

    def of_type(self, cls: type) -> list[Any]:
        return [n for n in self.notifications if isinstance(n, cls)]


def notification_line(notification: dict[str, Any]) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "type": "notification",
            "method": "droid.session_notification",
            "params": {"notification": notification},
        }
    )


def working_state(state: str) -> str:
    return notification_line({"type": "droid_working_state_changed", "newState": state})


def assistant_message(*blocks: dict[str, Any], role: str = "assistant") -> str:
    return notification_line(
        {"type": "create_message", "message": {"id": "m1", "role": role, "content": list(blocks)}}
    )


def request_line(method: str, params: dict[str, Any], request_id: Any = "r1") -> str:
    return json.dumps({"type": "request", "method": method, "params": params, "id": request_id})


def written(write_line: AsyncMock) -> list[dict[str, Any]]:
    return [json.loads(c.args[0]) for c in write_line.call_args_list]


async def make_reconciler(
    handler: RecordingHandler | None = None,
) -> tuple[MessageReconciler, AsyncMock]:
    write_line = AsyncMock()
    reconciler = MessageReconciler(write_line, grace_period=GRACE)
    if handler is not None:
        reconciler.set_handler(handler)
    reconciler.start()
    return reconciler, write_line


async def feed(reconciler: MessageReconciler, *lines: str) -> None:
    for line in lines:
        reconciler.feed(line)
    await reconciler.drain()


# =============================================================================
# Notification translation
# =============================================================================


class TestNotificationTranslation:
    """Raw droid notifications become typed variants."""

    @pytest.mark.asyncio
    async def test_settings_updated(self) -> None:
        """settings_updated carries parsed settings."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            notification_line(
                {"type": "settings_updated", "settings": {"autonomyLevel": "auto-high"}}
            ),
        )

        [event] = handler.notifications
        assert isinstance(event, SettingsUpdated)
        assert event.settings.autonomy_level == "auto-high"
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_one_event_per_text_block_then_tool_uses(self) -> None:
        """Text blocks are emitted first, one each, then tool uses."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            assistant_message(
                {"type": "tool_use", "toolUseId": "t1", "toolName": "Read", "input": {"path": "a"}},
                {"type": "text", "text": "first"},
                {"type": "text", "text": "second"},
            ),
        )

        created = handler.of_type(MessageCreated)
        assert [e.text for e in created[:2]] == ["first", "second"]
        tool_event = created[2]
        assert tool_event.tool_use is not None
        assert tool_event.tool_use.id == "t1"
        assert tool_event.tool_use.name == "Read"
        assert tool_event.tool_use.input == {"path": "a"}
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_tool_use_without_id_gets_one(self) -> None:
        """A tool use with no recognizable id still gets a unique id."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, assistant_message({"type": "tool_use", "name": "Bash"}))

        [event] = handler.of_type(MessageCreated)
        assert event.tool_use.id
        assert event.tool_use.name == "Bash"
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_tool_result_alternative_keys(self) -> None:
        """tool_result accepts alternate id keys and serializes non-string content."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            notification_line(
                {"type": "tool_result", "tool_call_id": "t9", "value": {"ok": 1}, "is_error": True}
            ),
        )

        [event] = handler.of_type(ToolResult)
        assert event.tool_use_id == "t9"
        assert json.loads(event.content) == {"ok": 1}
        assert event.is_error is True
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_tool_result_without_id_is_dropped(self) -> None:
        """A tool_result with no id produces nothing."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, notification_line({"type": "tool_result", "content": "x"}))

        assert handler.notifications == []
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_error_notification(self) -> None:
        """error notifications become DroidError."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, notification_line({"type": "error", "message": "rate limited"}))

        assert handler.notifications == [DroidError(message="rate limited")]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_malformed_and_blank_lines_are_ignored(self) -> None:
        """Garbage on stdout does not stop processing."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, "", "   ", "{not json", "[]", working_state("idle"))

        assert handler.notifications == [WorkingStateChanged(state="idle"), TurnComplete()]
        await reconciler.stop()


# =============================================================================
# Ordering
# =============================================================================


class TestOrdering:
    """Lines are processed one at a time, to completion, in order."""

    @pytest.mark.asyncio
    async def test_slow_handler_does_not_reorder(self) -> None:
        """A handler that awaits does not let later lines overtake it."""
        log: list[str] = []

        class SlowHandler(RecordingHandler):
            async def handle_notification(self, notification: Any) -> None:
                if isinstance(notification, MessageCreated):
                    log.append(f"start {notification.text}")
                    await asyncio.sleep(0.02 if notification.text == "one" else 0)
                    log.append(f"end {notification.text}")

        reconciler, _ = await make_reconciler(SlowHandler())

        await feed(
            reconciler,
            assistant_message({"type": "text", "text": "one"}),
            assistant_message({"type": "text", "text": "two"}),
        )

        assert log == ["start one", "end one", "start two", "end two"]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_worker(self) -> None:
        """An exception in a handler is logged and the next line still runs."""
        seen: list[Any] = []

        class FlakyHandler(RecordingHandler):
            async def handle_notification(self, notification: Any) -> None:
                if isinstance(notification, SettingsUpdated):
                    raise RuntimeError("boom")
                seen.append(notification)

        reconciler, _ = await make_reconciler(FlakyHandler())

        await feed(
            reconciler,
            notification_line({"type": "settings_updated", "settings": {}}),
            assistant_message({"type": "text", "text": "after"}),
        )

        assert [n.text for n in seen if isinstance(n, MessageCreated)] == ["after"]
        await reconciler.stop()


# =============================================================================
# End-of-turn race
# =============================================================================


class TestTurnCompletion:
    """Idle handling while an assistant message is streaming."""

    @pytest.mark.asyncio
    async def test_idle_without_streaming_completes_immediately(self) -> None:
        """Idle with no message in flight ends the turn at once."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, working_state("idle"))

        assert handler.of_type(TurnComplete) == [TurnComplete(reason="idle")]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_late_assistant_message_completes_the_turn(self) -> None:
        """Idle while streaming waits for the assistant message."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, working_state("streaming_assistant_message"), working_state("idle"))
        assert handler.of_type(TurnComplete) == []
        assert reconciler.is_completion_pending

        await feed(reconciler, assistant_message({"type": "text", "text": "done"}))

        kinds = [type(n).__name__ for n in handler.notifications]
        assert kinds[-2:] == ["MessageCreated", "TurnComplete"]
        assert handler.of_type(TurnComplete) == [TurnComplete(reason="assistant_message")]
        assert not reconciler.is_completion_pending
        assert not reconciler.is_streaming

        # The grace timer was disarmed: no second completion
        await asyncio.sleep(GRACE * 3)
        await reconciler.drain()
        assert len(handler.of_type(TurnComplete)) == 1
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_grace_period_forces_completion(self) -> None:
        """Without an assistant message, the turn ends after the grace period."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(reconciler, working_state("streaming_assistant_message"), working_state("idle"))
        await asyncio.sleep(GRACE * 3)
        await reconciler.drain()

        assert handler.of_type(TurnComplete) == [TurnComplete(reason="idle_grace")]
        assert not reconciler.is_streaming
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_streaming_again_cancels_pending_completion(self) -> None:
        """A new streaming state clears a pending completion."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            working_state("streaming_assistant_message"),
            working_state("idle"),
            working_state("streaming_assistant_message"),
        )
        await asyncio.sleep(GRACE * 3)
        await reconciler.drain()

        assert handler.of_type(TurnComplete) == []
        assert reconciler.is_streaming
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_error_clears_pending_completion(self) -> None:
        """An error ends the race; the grace timer does not fire afterwards."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            working_state("streaming_assistant_message"),
            working_state("idle"),
            notification_line({"type": "error", "message": "boom"}),
        )
        await asyncio.sleep(GRACE * 3)
        await reconciler.drain()

        assert handler.of_type(TurnComplete) == []
        assert handler.of_type(DroidError) == [DroidError(message="boom")]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_user_message_does_not_complete_turn(self) -> None:
        """Only an assistant message resolves a pending completion."""
        handler = RecordingHandler()
        reconciler, _ = await make_reconciler(handler)

        await feed(
            reconciler,
            working_state("streaming_assistant_message"),
            working_state("idle"),
            assistant_message({"type": "text", "text": "echo"}, role="user"),
        )

        assert handler.of_type(TurnComplete) == []
        assert reconciler.is_completion_pending
        await reconciler.stop()


# =============================================================================
# Requests from the droid
# =============================================================================


class TestRequests:
    """Replies written for droid requests."""

    @pytest.mark.asyncio
    async def test_permission_without_handler_proceeds_once(self) -> None:
        """With no handler bound, permission requests are approved once."""
        reconciler, write_line = await make_reconciler()

        await feed(reconciler, request_line("droid.request_permission", {}, "p1"))

        [reply] = written(write_line)
        assert reply["id"] == "p1"
        assert reply["result"] == {"selectedOption": "proceed_once"}
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_permission_uses_handler_decision(self) -> None:
        """The handler's option is sent back as selectedOption."""
        handler = RecordingHandler(permission="cancel")
        reconciler, write_line = await make_reconciler(handler)

        await feed(reconciler, request_line("droid.request_permission", {"toolUses": []}, 11))

        handler.handle_permission_request.assert_awaited_once_with({"toolUses": []})
        [reply] = written(write_line)
        assert reply["id"] == 11
        assert reply["result"] == {"selectedOption": "cancel"}
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_permission_handler_failure_is_internal_error(self) -> None:
        """A failing handler produces a -32603 error reply."""
        handler = RecordingHandler()
        handler.handle_permission_request.side_effect = RuntimeError("kaput")
        reconciler, write_line = await make_reconciler(handler)

        await feed(reconciler, request_line("droid.request_permission", {}))

        [reply] = written(write_line)
        assert reply["error"]["code"] == -32603
        assert reply["error"]["message"] == "kaput"
        assert "result" not in reply
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_unknown_request_is_method_not_found(self) -> None:
        """Requests other than permission get a -32601 reply."""
        handler = RecordingHandler()
        reconciler, write_line = await make_reconciler(handler)

        await feed(reconciler, request_line("droid.ask_user", {}, "q1"))

        [reply] = written(write_line)
        assert reply["id"] == "q1"
        assert reply["error"]["code"] == -32601
        handler.handle_permission_request.assert_not_awaited()
        await reconciler.stop()


# =============================================================================
# Initialization
# =============================================================================


class TestInitialization:
    """Resolution of the initialization future."""

    @pytest.mark.asyncio
    async def test_init_response_resolves_future(self) -> None:
        """A response with sessionId resolves the init future."""
        reconciler, _ = await make_reconciler()
        future = reconciler.expect_init()

        await feed(
            reconciler,
            json.dumps(
                {
                    "type": "response",
                    "id": "i1",
                    "result": {
                        "sessionId": "s-42",
                        "settings": {"autonomyLevel": "spec"},
                        "availableModels": [{"id": "m"}],
                    },
                }
            ),
        )

        result = await future
        assert result.session_id == "s-42"
        assert reconciler.session_id == "s-42"
        assert result.settings.autonomy_level == "spec"
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_init_error_response_rejects_future(self) -> None:
        """An error response rejects initialization."""
        reconciler, _ = await make_reconciler()
        future = reconciler.expect_init()

        await feed(
            reconciler,
            '{"type": "response", "id": "i1", "error": {"code": 1, "message": "no auth"}}',
        )

        with pytest.raises(DroidInitError, match="no auth"):
            await future
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_stop_rejects_pending_init(self) -> None:
        """Stopping before initialization completes rejects the future."""
        reconciler, _ = await make_reconciler()
        future = reconciler.expect_init()

        await reconciler.stop()

        with pytest.raises(DroidInitError):
            await future
