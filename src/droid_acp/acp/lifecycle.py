"""Session lifecycle: prompt turns, cancellation and subprocess restarts.

A cancelled turn cannot be interrupted inside the droid, so cancellation
marks the session, ends the turn for the editor and restarts the subprocess
in the background, resuming the same droid session. The session object is
kept across the restart and rebound to the new subprocess.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ..errors import CaptureCancelledError, TurnInProgressError
from .content_converter import convert_prompt
from .modes import DEFAULT_MODE, from_droid_autonomy, parse_mode, to_droid_autonomy
from .runtime import NEW_SESSION_TITLE
from .session import SessionState, ToolCallStatus
from .text import derive_title
from .tool_metadata import text_content

if TYPE_CHECKING:
    from ..droid.protocols import DroidProcess
    from ..protocol.messages import InitSessionResult
    from .modes import AcpMode
    from .runtime import BridgeRuntime
    from .session import Session

logger = logging.getLogger(__name__)

HISTORY_CONTEXT_REF = "session_history"


# =============================================================================
# Prompt turns
# =============================================================================


async def prompt(runtime: BridgeRuntime, session_id: str, blocks: list[Any]) -> str:
    """Run one prompt turn and return its stop reason.

    Raises:
        SessionNotFoundError: Unknown session.
        TurnInProgressError: Another prompt of this session is running.
    """
    session = runtime.require(session_id)
    if session.pending_turn is not None and not session.pending_turn.done:
        raise TurnInProgressError()

    session = await get_ready_session(runtime, session_id, reason="prompt")
    logger.info(f"Prompt for session {session_id}")

    converted = convert_prompt(blocks)
    text = converted.text

    session.touch()
    title = derive_title(text)
    if title and (not session.title or session.title == NEW_SESSION_TITLE):
        session.title = title

    if text.startswith("/") and runtime.slash_commands is not None:
        if await runtime.slash_commands.dispatch(session, text):
            return "end_turn"

    if session.pending_history_context:
        history = session.pending_history_context
        session.pending_history_context = None
        text = f'{text}\n\n<context ref="{HISTORY_CONTEXT_REF}">\n{history}\n</context>'.strip()

    turn = session.begin_turn(runtime.config.prompt_timeout)
    await session.transport.send_user_message(text, converted.images or None)
    return await turn.future


async def cancel(runtime: BridgeRuntime, session_id: str) -> None:
    """Cancel the running turn, if any, and restart the subprocess."""
    session = runtime.get(session_id)
    if session is None:
        return
    if not session.has_inflight_work:
        logger.info(f"Cancel for {session_id} ignored (nothing in flight)")
        return

    logger.info(f"Cancelling session {session_id}")
    session.state = SessionState.CANCELLED
    session.resolve_turn("cancelled")
    session.fail_capture(CaptureCancelledError("Cancelled"))
    await finalize_active_tool_calls(runtime, session, "Cancelled.")

    restart_session(runtime, session_id, reason="cancel")


async def set_mode(runtime: BridgeRuntime, session_id: str, mode_id: str) -> AcpMode | None:
    """Switch the autonomy mode; unknown mode ids are ignored."""
    session = runtime.require(session_id)
    mode = parse_mode(mode_id)
    if mode is None:
        logger.warning(f"Ignoring unknown mode: {mode_id}")
        return None
    logger.info(f"Session {session_id} mode -> {mode.value}")
    session.mode = mode
    await session.transport.set_mode(to_droid_autonomy(mode))
    return mode


async def set_model(runtime: BridgeRuntime, session_id: str, model_id: str) -> None:
    session = runtime.require(session_id)
    logger.info(f"Session {session_id} model -> {model_id}")
    session.model = model_id
    await session.transport.set_model(model_id)


async def finalize_active_tool_calls(
    runtime: BridgeRuntime, session: Session, message: str
) -> None:
    """Complete every active tool call with ``message``."""
    active = sorted(session.tool_calls.active)
    for tool_call_id in active:
        session.tool_calls.advance(tool_call_id, ToolCallStatus.COMPLETED)
        session.tool_calls.deactivate(tool_call_id)
        await runtime.update_tool_call(
            session, tool_call_id, status="completed", content=[text_content(message)]
        )


# =============================================================================
# Restarts
# =============================================================================


async def start_transport(
    runtime: BridgeRuntime, cwd: str, resume_session_id: str | None = None
) -> tuple[DroidProcess, InitSessionResult]:
    transport = runtime.create_transport(cwd, resume_session_id)
    init = await transport.start()
    return transport, init


async def restore_settings(
    runtime: BridgeRuntime, session: Session, mode: AcpMode, model: str
) -> None:
    """Re-apply the mode and, when still offered, the model after a restart."""
    session.mode = mode
    await session.transport.set_mode(to_droid_autonomy(mode))
    await runtime.send_mode_update(session)

    if any(m.id == model for m in session.available_models):
        session.model = model
        await session.transport.set_model(model)


def restart_session(runtime: BridgeRuntime, session_id: str, reason: str) -> asyncio.Task[None] | None:
    """Replace the subprocess of a session, resuming its droid session.

    Only one restart runs per session; a second call returns the running
    task.
    """
    session = runtime.get(session_id)
    if session is None:
        return None
    if session.restart_task is not None and not session.restart_task.done():
        return session.restart_task

    task = runtime.spawn(_restart(runtime, session, reason), name=f"restart-{session_id}")
    session.restart_task = task
    return task


async def _restart(runtime: BridgeRuntime, session: Session, reason: str) -> None:
    logger.info(f"Restarting droid for session {session.id} (reason: {reason})")
    mode = session.mode
    model = session.model
    history = session.pending_history_context
    resume_id = session.droid_session_id

    # A cancelled session keeps dropping output of the old droid until rebound
    if not session.is_cancelled:
        session.state = SessionState.RESTARTING
    try:
        session.transport.stop()

        try:
            transport, init = await start_transport(runtime, session.cwd, resume_id or None)
        except Exception as e:
            logger.error(f"Failed to resume droid session {resume_id}, starting fresh: {e}")
            transport, init = await start_transport(runtime, session.cwd)

        session.rebind(transport, init)
        runtime.bind(session, transport)
        session.pending_history_context = history
        await restore_settings(runtime, session, mode, model)
        logger.info(f"Session {session.id} restarted (generation {session.generation})")
    except Exception as e:
        logger.error(f"Restart of session {session.id} failed: {e}")
    finally:
        session.state = SessionState.ACTIVE
        session.restart_task = None


async def replace_transport(
    runtime: BridgeRuntime,
    session: Session,
    transport: DroidProcess,
    init: InitSessionResult,
    *,
    restore: bool = True,
) -> None:
    """Move ``session`` onto an already started subprocess and stop the old one.

    With ``restore`` the current mode and model are carried over; otherwise
    they are taken from the new subprocess.
    """
    old = session.transport
    mode, model = session.mode, session.model

    session.rebind(transport, init)
    runtime.bind(session, transport)
    if restore:
        await restore_settings(runtime, session, mode, model)
    else:
        session.mode = from_droid_autonomy(init.settings.autonomy_level) or DEFAULT_MODE
        session.model = init.settings.model_id or "unknown"
        await runtime.send_mode_update(session)

    if old is not transport:
        old.stop()


async def get_ready_session(runtime: BridgeRuntime, session_id: str, reason: str) -> Session:
    """The session, restarted first when cancelled or not running.

    Raises:
        SessionNotFoundError: Unknown session (or removed meanwhile).
    """
    session = runtime.require(session_id)

    if session.restart_task is not None:
        await asyncio.shield(session.restart_task)
        session = runtime.require(session_id)

    if session.is_cancelled or not session.is_running:
        task = restart_session(runtime, session_id, reason)
        if task is not None:
            await asyncio.shield(task)
        session = runtime.require(session_id)

    return session


# =============================================================================
# Subprocess exit
# =============================================================================


async def handle_exit(
    runtime: BridgeRuntime, session_id: str, transport: DroidProcess, returncode: int | None
) -> None:
    """React to a subprocess exit."""
    session = runtime.owner_of(session_id, transport)
    if session is None:
        logger.info(f"Droid exited (stale) for session {session_id}, code {returncode}")
        return

    if session.state == SessionState.RESTARTING or session.restart_in_flight:
        logger.info(f"Droid exited during restart of {session_id}, code {returncode}")
        session.resolve_turn("end_turn")
        return

    logger.info(f"Droid exited for session {session_id}, code {returncode}; closing session")
    session.resolve_turn("end_turn")
    session.fail_capture(CaptureCancelledError("Droid exited"))
    runtime.remove(session_id)


__all__ = [
    "cancel",
    "finalize_active_tool_calls",
    "get_ready_session",
    "handle_exit",
    "prompt",
    "replace_transport",
    "restart_session",
    "restore_settings",
    "set_mode",
    "set_model",
    "start_transport",
]
