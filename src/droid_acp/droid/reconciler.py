"""Message reconciler for the droid stdout stream.

Every stdout line is queued and processed by a single worker task, one line
at a time and to completion, so notifications reach the session layer in the
order the droid wrote them even when handlers await network round trips.

The reconciler also resolves the end-of-turn race. The droid may report
``idle`` before the final assistant message arrives. While an assistant
message is streaming, ``idle`` only marks completion as pending and arms a
short grace timer. The turn completes when the assistant message lands, or
when the timer fires. The timer never emits directly: it enqueues a deadline
marker so the forced completion is ordered with everything else.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..errors import DroidInitError
from ..protocol.messages import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    DroidMethod,
    DroidNotificationMessage,
    DroidRequest,
    DroidResponse,
    DroidSettings,
    InitSessionResult,
    decode_line,
)
from ..protocol.notifications import (
    DroidError,
    DroidNotification,
    MessageCreated,
    SettingsUpdated,
    ToolResult,
    ToolUse,
    TurnComplete,
    WorkingStateChanged,
)
from .protocols import DroidEventHandler

logger = logging.getLogger(__name__)

# Identifier keys the droid has used for tool uses and tool results
TOOL_USE_ID_KEYS = ("id", "toolUseId", "tool_use_id", "tool_call_id", "callId", "call_id")
TOOL_RESULT_ID_KEYS = ("toolUseId", "tool_use_id", "tool_call_id", "callId", "call_id", "id")
TOOL_NAME_KEYS = ("name", "toolName", "tool_name")

FALLBACK_PERMISSION = "proceed_once"

WriteLine = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class _IdleDeadline:
    """Queued when the idle grace timer fires."""

    generation: int


def _first_string(source: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class MessageReconciler:
    """Turns raw droid stdout lines into ordered, normalized notifications."""

    def __init__(self, write_line: WriteLine, grace_period: float = 0.25) -> None:
        self._write_line = write_line
        self._grace_period = grace_period
        self._handler: DroidEventHandler | None = None
        self._queue: asyncio.Queue[str | _IdleDeadline] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._init_future: asyncio.Future[InitSessionResult] | None = None

        # End-of-turn race
        self._streaming = False
        self._pending_idle = False
        self._idle_timer: asyncio.TimerHandle | None = None
        self._idle_generation = 0

        self.session_id: str | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def set_handler(self, handler: DroidEventHandler | None) -> None:
        self._handler = handler

    def start(self) -> None:
        """Start the processing worker."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the worker and drop anything still queued."""
        self._cancel_idle_timer()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        self.fail_init(DroidInitError("Droid stopped before initialization completed"))

    def feed(self, line: str) -> None:
        """Queue one stdout line."""
        self._queue.put_nowait(line)

    async def drain(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    def expect_init(self) -> asyncio.Future[InitSessionResult]:
        """Return the future resolved by the initialization response."""
        if self._init_future is None:
            self._init_future = asyncio.get_running_loop().create_future()
        return self._init_future

    def fail_init(self, error: Exception) -> None:
        """Reject a still-pending initialization."""
        if self._init_future is not None and not self._init_future.done():
            self._init_future.set_exception(error)

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def is_completion_pending(self) -> bool:
        return self._pending_idle

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _IdleDeadline):
                    await self._on_idle_deadline(item)
                else:
                    await self.handle_line(item)
            except Exception as e:
                logger.exception(f"Error processing droid output: {e}")
            finally:
                self._queue.task_done()

    # =========================================================================
    # Line handling
    # =========================================================================

    async def handle_line(self, line: str) -> None:
        """Process a single stdout line to completion."""
        stripped = line.strip()
        if not stripped:
            return

        try:
            message = decode_line(stripped)
        except ValueError as e:
            logger.debug(f"Dropping malformed droid line: {e} (line: {stripped[:80]})")
            return

        logger.debug(f"[droid event] {stripped[:500]}")

        if isinstance(message, DroidResponse):
            self._handle_response(message)
        elif isinstance(message, DroidNotificationMessage):
            if message.method == DroidMethod.SESSION_NOTIFICATION.value:
                await self._handle_session_notification(message.params)
            else:
                logger.debug(f"Ignoring droid notification: {message.method}")
        elif isinstance(message, DroidRequest):
            await self._handle_request(message)

    def _handle_response(self, message: DroidResponse) -> None:
        future = self._init_future
        if future is None or future.done():
            logger.debug(f"Ignoring droid response {message.id}")
            return

        if isinstance(message.result, dict) and "sessionId" in message.result:
            try:
                result = InitSessionResult.model_validate(message.result)
            except ValueError as e:
                future.set_exception(DroidInitError(f"Invalid initialization result: {e}"))
                return
            self.session_id = result.session_id
            future.set_result(result)
        elif message.error is not None:
            future.set_exception(DroidInitError(message.error.message))

    async def _handle_request(self, message: DroidRequest) -> None:
        if message.method != DroidMethod.REQUEST_PERMISSION.value:
            logger.warning(f"Unsupported droid request: {message.method}")
            await self._write_line(
                DroidResponse.failure(
                    message.id, METHOD_NOT_FOUND, f"Method not found: {message.method}"
                ).to_line()
            )
            return

        if self._handler is None:
            logger.info(f"Auto-approved permission request (no handler): {message.id}")
            response = DroidResponse.success(message.id, {"selectedOption": FALLBACK_PERMISSION})
        else:
            try:
                selected = await self._handler.handle_permission_request(message.params)
                response = DroidResponse.success(message.id, {"selectedOption": selected})
            except Exception as e:
                logger.exception(f"Permission handler failed: {e}")
                response = DroidResponse.failure(
                    message.id, INTERNAL_ERROR, str(e) or "Internal error"
                )
        await self._write_line(response.to_line())

    # =========================================================================
    # Notification translation
    # =========================================================================

    async def _handle_session_notification(self, params: dict[str, Any]) -> None:
        notification = params.get("notification")
        if not isinstance(notification, dict):
            return

        kind = notification.get("type")
        if kind == "settings_updated":
            settings = notification.get("settings")
            if isinstance(settings, dict):
                await self._emit(SettingsUpdated(settings=DroidSettings.from_raw(settings)))
        elif kind == "droid_working_state_changed":
            await self._handle_working_state(notification.get("newState"))
        elif kind == "create_message":
            message = notification.get("message")
            if isinstance(message, dict):
                await self._handle_create_message(message)
        elif kind == "tool_result":
            await self._handle_tool_result(notification)
        elif kind == "error":
            self._streaming = False
            self._pending_idle = False
            self._cancel_idle_timer()
            raw = notification.get("message")
            message_text = raw if isinstance(raw, str) else json.dumps(raw or "Unknown error")
            await self._emit(DroidError(message=message_text))
        else:
            logger.debug(f"Unhandled droid notification type: {kind}")

    async def _handle_working_state(self, state: Any) -> None:
        if not isinstance(state, str):
            return
        await self._emit(WorkingStateChanged(state=state))

        if state == "streaming_assistant_message":
            self._streaming = True
            self._pending_idle = False
            self._cancel_idle_timer()
        elif state == "idle":
            if self._streaming:
                self._pending_idle = True
                self._arm_idle_timer()
            else:
                await self._emit(TurnComplete())

    async def _handle_create_message(self, message: dict[str, Any]) -> None:
        role = message.get("role") if isinstance(message.get("role"), str) else "assistant"
        message_id = message.get("id") if isinstance(message.get("id"), str) else None
        content = message.get("content")
        blocks = [b for b in content if isinstance(b, dict)] if isinstance(content, list) else []

        for block in blocks:
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                await self._emit(MessageCreated(role=role, message_id=message_id, text=block["text"]))

        for block in blocks:
            if block.get("type") != "tool_use":
                continue
            tool_use = ToolUse(
                id=_first_string(block, TOOL_USE_ID_KEYS) or str(uuid.uuid4()),
                name=_first_string(block, TOOL_NAME_KEYS) or "unknown",
                input=block.get("input"),
            )
            await self._emit(MessageCreated(role=role, message_id=message_id, tool_use=tool_use))

        if role == "assistant":
            self._streaming = False
            self._cancel_idle_timer()
            if self._pending_idle:
                self._pending_idle = False
                await self._emit(TurnComplete(reason="assistant_message"))

    async def _handle_tool_result(self, notification: dict[str, Any]) -> None:
        tool_use_id = _first_string(notification, TOOL_RESULT_ID_KEYS)
        if tool_use_id is None:
            logger.error("Missing tool_use_id/toolUseId for tool_result notification")
            return

        raw = notification.get("content", notification.get("value"))
        content = raw if isinstance(raw, str) else json.dumps(raw if raw is not None else "", indent=2)
        is_error = notification.get("isError", notification.get("is_error"))
        await self._emit(
            ToolResult(
                tool_use_id=tool_use_id,
                content=content,
                is_error=is_error if isinstance(is_error, bool) else False,
            )
        )

    # =========================================================================
    # Idle grace timer
    # =========================================================================

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        generation = self._idle_generation
        self._idle_timer = asyncio.get_running_loop().call_later(
            self._grace_period, self._queue.put_nowait, _IdleDeadline(generation)
        )

    def _cancel_idle_timer(self) -> None:
        # Bumping the generation invalidates a deadline that is already queued.
        self._idle_generation += 1
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    async def _on_idle_deadline(self, deadline: _IdleDeadline) -> None:
        if deadline.generation != self._idle_generation or not self._pending_idle:
            return
        self._idle_timer = None
        self._pending_idle = False
        self._streaming = False
        logger.debug("Idle grace period elapsed without an assistant message")
        await self._emit(TurnComplete(reason="idle_grace"))

    async def _emit(self, notification: DroidNotification) -> None:
        if self._handler is None:
            logger.debug(f"No handler for droid notification: {notification}")
            return
        await self._handler.handle_notification(notification)
