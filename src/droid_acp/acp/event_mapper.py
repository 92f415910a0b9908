"""Droid to ACP event mapping.

Translates normalized droid notifications into ACP session updates and
session state changes.

Event Mapping:
- SettingsUpdated -> CurrentModeUpdate (when the autonomy level changed)
- MessageCreated (assistant text) -> agent_message_chunk
- MessageCreated (TodoWrite tool use) -> AgentPlanUpdate (sessionUpdate="plan")
- MessageCreated (other tool use) -> ToolCallStart (sessionUpdate="tool_call")
- ToolResult -> tool_call_update with status completed/failed
- DroidError -> "Error: ..." message, turn ends
- TurnComplete -> turn ends (or a capture is finalized)
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from acp.schema import AgentPlanUpdate, PlanEntry  # type: ignore[import-untyped]

from ..errors import CaptureError
from ..protocol.notifications import (
    DroidError,
    MessageCreated,
    SettingsUpdated,
    ToolResult,
    ToolUse,
    TurnComplete,
    WorkingStateChanged,
)
from .modes import from_droid_autonomy
from .plan_parsing import extract_spec_title_and_plan
from .policy import infer_risk
from .session import ToolCallStatus
from .tool_metadata import (
    EXIT_SPEC_MODE_TOOL,
    TODO_WRITE_TOOL,
    build_permission_content,
    format_tool_title,
    get_tool_kind,
    raw_input_for_client,
    text_content,
    tool_locations,
)

if TYPE_CHECKING:
    from ..protocol.notifications import DroidNotification
    from .runtime import BridgeRuntime
    from .session import Capture, Session

logger = logging.getLogger(__name__)

COMPRESS_SUMMARY_PURPOSE = "compress_summary"

_SUMMARY_END = re.compile(r"</summary>", re.IGNORECASE)
_TODO_LINE = re.compile(r"^(?:\d+\.|-)?\s*\[(\w+)\]\s*(.+)$")
_TODO_STATUSES = frozenset({"pending", "in_progress", "completed"})
_PRESERVED_CONTENT_TYPES = frozenset({"diff", "terminal"})

Handler = Callable[["BridgeRuntime", "Session", Any], Awaitable[None]]


async def handle_notification(
    runtime: BridgeRuntime, session: Session, notification: DroidNotification
) -> None:
    """Apply one droid notification to ``session``."""
    logger.debug(f"Notification for {session.id}: {type(notification).__name__}")

    # Output of a cancelled turn is dropped until the restart completes
    if session.is_cancelled:
        return

    handler = _HANDLERS.get(type(notification))
    if handler is not None:
        await handler(runtime, session, notification)


# =============================================================================
# Settings
# =============================================================================


async def _on_settings(runtime: BridgeRuntime, session: Session, event: SettingsUpdated) -> None:
    mode = from_droid_autonomy(event.settings.autonomy_level)
    if mode is not None and mode != session.mode:
        session.mode = mode
        await runtime.send_mode_update(session)
    if event.settings.model_id:
        session.model = event.settings.model_id


async def _on_working_state(
    runtime: BridgeRuntime, session: Session, event: WorkingStateChanged
) -> None:
    logger.debug(f"Droid working state for {session.id}: {event.state}")


# =============================================================================
# Messages
# =============================================================================


def _is_suppressed(runtime: BridgeRuntime, session: Session) -> bool:
    capture = session.capture
    return (
        capture is not None
        and capture.purpose == COMPRESS_SUMMARY_PURPOSE
        and not runtime.config.debug
    )


async def _on_message(runtime: BridgeRuntime, session: Session, event: MessageCreated) -> None:
    if event.role != "assistant":
        return

    suppressed = _is_suppressed(runtime, session)

    capture = session.capture
    if capture is not None and event.text:
        capture.buffer += event.text
        if capture.purpose == COMPRESS_SUMMARY_PURPOSE and _SUMMARY_END.search(capture.buffer):
            session.resolve_capture(capture.buffer)

    if event.tool_use is not None and not suppressed:
        if event.tool_use.name == TODO_WRITE_TOOL:
            await _emit_todo_plan(runtime, session, event.tool_use)
        else:
            await _track_tool_use(runtime, session, event.tool_use)

    if event.text and not suppressed:
        await runtime.send_agent_message(session, event.text)


def todo_entries(todos: Any) -> list[PlanEntry]:
    """Plan entries from TodoWrite input.

    ``todos`` is either text with ``1. [status] content`` lines or a list of
    ``{"content", "status"}`` objects.
    """

    def status_of(value: Any) -> str:
        return value if value in _TODO_STATUSES else "pending"

    entries: list[PlanEntry] = []
    if isinstance(todos, str):
        for line in todos.split("\n"):
            match = _TODO_LINE.match(line.strip())
            if match and match.group(2).strip():
                entries.append(
                    PlanEntry(
                        content=match.group(2).strip(),
                        status=status_of(match.group(1)),
                        priority="medium",
                    )
                )
    elif isinstance(todos, list):
        for todo in todos:
            if not isinstance(todo, dict):
                continue
            content = todo.get("content")
            if isinstance(content, str) and content:
                entries.append(
                    PlanEntry(content=content, status=status_of(todo.get("status")), priority="medium")
                )
    return entries


async def _emit_todo_plan(runtime: BridgeRuntime, session: Session, tool_use: ToolUse) -> None:
    entries = todo_entries(tool_use.input_dict.get("todos"))
    if runtime.config.debug:
        logger.debug(f"TodoWrite produced {len(entries)} plan entries")
    if entries:
        await runtime.session_update(session, AgentPlanUpdate(session_update="plan", entries=entries))


async def _track_tool_use(runtime: BridgeRuntime, session: Session, tool_use: ToolUse) -> None:
    ledger = session.tool_calls
    tool_call_id = tool_use.id
    if ledger.is_terminal(tool_call_id):
        return

    if tool_call_id in ledger.active:
        if ledger.status(tool_call_id) == ToolCallStatus.IN_PROGRESS:
            await runtime.update_tool_call(session, tool_call_id, status="in_progress")
        return

    is_exit_spec = tool_use.name == EXIT_SPEC_MODE_TOOL
    raw_input = tool_use.input
    cwd = session.cwd
    risk = infer_risk(tool_use.name, raw_input)

    if is_exit_spec:
        spec_title, spec_plan = extract_spec_title_and_plan(raw_input)
        title = f"Exit spec mode: {spec_title}" if spec_title else "Exit spec mode"
        kind = "switch_mode"
        status = ToolCallStatus.PENDING
    else:
        spec_plan = None
        title = format_tool_title(tool_use.name, raw_input, cwd, risk, stage="run")
        kind = get_tool_kind(tool_use.name)
        status = ToolCallStatus.IN_PROGRESS

    content = build_permission_content(
        tool_use.name, risk, raw_input, cwd, plan_markdown=spec_plan, debug=runtime.config.debug
    )
    ledger.activate(tool_call_id, tool_use.name, raw_input, content)
    ledger.advance(tool_call_id, status)

    await runtime.start_tool_call(
        session,
        tool_call_id,
        title,
        kind=kind,
        status=status.value,
        content=content,
        locations=tool_locations(tool_use.name, raw_input, cwd),
        raw_input=raw_input_for_client(raw_input, runtime.config.debug),
    )


# =============================================================================
# Tool results
# =============================================================================


async def _on_tool_result(runtime: BridgeRuntime, session: Session, event: ToolResult) -> None:
    ledger = session.tool_calls
    tool_call_id = event.tool_use_id

    if tool_call_id not in ledger.active:
        name = ledger.names.get(tool_call_id, "Tool")
        ledger.activate(tool_call_id, name)
        await runtime.start_tool_call(
            session, tool_call_id, f"Running {name}", status="in_progress"
        )

    final = ToolCallStatus.FAILED if event.is_error else ToolCallStatus.COMPLETED
    preserved = [
        c
        for c in ledger.contents.get(tool_call_id, [])
        if getattr(c, "type", None) in _PRESERVED_CONTENT_TYPES
    ]
    merged = [*preserved, text_content(event.content)]
    ledger.contents[tool_call_id] = merged

    if not ledger.advance(tool_call_id, final):
        ledger.deactivate(tool_call_id)
        logger.debug(f"Tool call {tool_call_id} already finished; result not re-sent")
        return

    await runtime.update_tool_call(
        session,
        tool_call_id,
        content=merged,
        raw_output=event.content,
        status=final.value,
    )


# =============================================================================
# Errors and turn completion
# =============================================================================


async def _on_error(runtime: BridgeRuntime, session: Session, event: DroidError) -> None:
    logger.warning(f"Droid error in session {session.id}: {event.message}")
    session.fail_capture(CaptureError(event.message))
    await runtime.send_agent_message(session, f"Error: {event.message}")
    session.resolve_turn("end_turn")


async def _on_turn_complete(runtime: BridgeRuntime, session: Session, event: TurnComplete) -> None:
    capture = session.capture
    if capture is not None:
        if capture.finalize_handle is None:
            loop = asyncio.get_running_loop()
            capture.finalize_handle = loop.call_later(
                runtime.config.capture_finalize_delay, _finalize_capture, session, capture
            )
        return
    logger.debug(f"Turn complete for {session.id} ({event.reason})")
    session.resolve_turn("end_turn")


def _finalize_capture(session: Session, capture: Capture) -> None:
    if session.capture is capture:
        session.resolve_capture(capture.buffer)


_HANDLERS: dict[type, Handler] = {
    SettingsUpdated: _on_settings,
    WorkingStateChanged: _on_working_state,
    MessageCreated: _on_message,
    ToolResult: _on_tool_result,
    DroidError: _on_error,
    TurnComplete: _on_turn_complete,
}
