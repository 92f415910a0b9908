"""Per-session state.

A :class:`Session` is keyed by the editor-facing session id and survives
subprocess restarts: a restart rebinds the same object to a new transport
instead of replacing it, so everything that holds a reference keeps seeing
current state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import CaptureTimeoutError, TurnInProgressError
from .modes import DEFAULT_MODE, AcpMode

if TYPE_CHECKING:
    from ..droid.protocols import DroidProcess
    from ..protocol.messages import AvailableModel, InitSessionResult

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of a session.

    ACTIVE      normal operation
    RESTARTING  a replacement subprocess is being started after the old one
                stopped; its exit must not close the session
    CANCELLED   the user cancelled; droid output is ignored until the
                restart that follows completes
    CLOSED      the subprocess exited on its own; the session is gone
    """

    ACTIVE = "active"
    RESTARTING = "restarting"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED)


_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.IN_PROGRESS: 1,
    ToolCallStatus.COMPLETED: 2,
    ToolCallStatus.FAILED: 2,
}


@dataclass
class ToolCallLedger:
    """Tool calls seen in a session.

    Statuses only move forward: pending -> in_progress -> completed|failed.
    """

    statuses: dict[str, ToolCallStatus] = field(default_factory=dict)
    names: dict[str, str] = field(default_factory=dict)
    raw_inputs: dict[str, Any] = field(default_factory=dict)
    contents: dict[str, list[Any]] = field(default_factory=dict)
    active: set[str] = field(default_factory=set)

    def status(self, tool_call_id: str) -> ToolCallStatus | None:
        return self.statuses.get(tool_call_id)

    def is_known(self, tool_call_id: str) -> bool:
        return tool_call_id in self.statuses

    def is_terminal(self, tool_call_id: str) -> bool:
        status = self.statuses.get(tool_call_id)
        return status is not None and status.is_terminal

    def advance(self, tool_call_id: str, status: ToolCallStatus) -> bool:
        """Move a tool call to ``status``.

        Returns False, leaving the ledger unchanged, when that would be a
        regression or the call is already terminal.
        """
        current = self.statuses.get(tool_call_id)
        if current is not None and (
            current.is_terminal or _STATUS_RANK[status] < _STATUS_RANK[current]
        ):
            return False
        self.statuses[tool_call_id] = status
        if status.is_terminal:
            self.active.discard(tool_call_id)
        return True

    def activate(
        self,
        tool_call_id: str,
        name: str,
        raw_input: Any = None,
        content: list[Any] | None = None,
    ) -> None:
        self.active.add(tool_call_id)
        self.names[tool_call_id] = name
        if raw_input is not None:
            self.raw_inputs[tool_call_id] = raw_input
        if content is not None:
            self.contents[tool_call_id] = content

    def deactivate(self, tool_call_id: str) -> None:
        self.active.discard(tool_call_id)


@dataclass
class PendingTurn:
    """The prompt turn currently waiting for the droid."""

    future: asyncio.Future[str]
    timeout_handle: asyncio.TimerHandle | None = None

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, stop_reason: str) -> bool:
        """Resolve with a stop reason; only the first call has an effect."""
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None
        if self.future.done():
            return False
        self.future.set_result(stop_reason)
        return True


@dataclass
class Capture:
    """Silent collection of the next assistant reply (e.g. a summary)."""

    purpose: str
    future: asyncio.Future[str]
    buffer: str = ""
    timeout_handle: asyncio.TimerHandle | None = None
    finalize_handle: asyncio.TimerHandle | None = None

    def _clear_timers(self) -> None:
        for handle in (self.timeout_handle, self.finalize_handle):
            if handle is not None:
                handle.cancel()
        self.timeout_handle = None
        self.finalize_handle = None

    def resolve(self, text: str) -> None:
        self._clear_timers()
        if not self.future.done():
            self.future.set_result(text)

    def fail(self, error: Exception) -> None:
        self._clear_timers()
        if not self.future.done():
            self.future.set_exception(error)


@dataclass
class SpecNegotiation:
    """State of the plan-choice negotiation in spec mode."""

    choice: str | None = None
    prompt_signature: str | None = None
    details_signature: str | None = None
    details_tool_call_id: str | None = None

    def observe_plan(self, signature: str) -> None:
        """Forget the previous choice when a different plan shows up."""
        if self.prompt_signature != signature:
            self.prompt_signature = signature
            self.choice = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Session:
    """Editor-facing session bound to one droid subprocess at a time."""

    id: str
    cwd: str
    transport: DroidProcess
    droid_session_id: str
    mode: AcpMode = DEFAULT_MODE
    model: str = "unknown"
    available_models: list[AvailableModel] = field(default_factory=list)
    title: str | None = None
    updated_at: str | None = None
    state: SessionState = SessionState.ACTIVE
    generation: int = 0
    pending_turn: PendingTurn | None = None
    capture: Capture | None = None
    restart_task: asyncio.Task[None] | None = None
    pending_history_context: str | None = None
    tool_calls: ToolCallLedger = field(default_factory=ToolCallLedger)
    spec: SpecNegotiation = field(default_factory=SpecNegotiation)
    last_sessions_listing: list[Any] | None = None

    # =========================================================================
    # State queries
    # =========================================================================

    @property
    def is_cancelled(self) -> bool:
        return self.state == SessionState.CANCELLED

    @property
    def is_running(self) -> bool:
        return self.transport.is_running

    @property
    def restart_in_flight(self) -> bool:
        return self.restart_task is not None and not self.restart_task.done()

    @property
    def has_inflight_work(self) -> bool:
        return (
            self.pending_turn is not None or self.capture is not None or bool(self.tool_calls.active)
        )

    def touch(self) -> None:
        self.updated_at = _now()

    # =========================================================================
    # Prompt turns
    # =========================================================================

    def begin_turn(self, timeout: float) -> PendingTurn:
        """Register a new prompt turn.

        Raises:
            TurnInProgressError: A turn is already outstanding.
        """
        if self.pending_turn is not None and not self.pending_turn.done:
            raise TurnInProgressError()

        loop = asyncio.get_running_loop()
        turn = PendingTurn(future=loop.create_future())
        turn.timeout_handle = loop.call_later(timeout, self._turn_timed_out, turn)
        self.pending_turn = turn
        return turn

    def _turn_timed_out(self, turn: PendingTurn) -> None:
        if self.pending_turn is turn:
            logger.warning(f"Prompt timed out for session {self.id}")
            self.resolve_turn("end_turn")

    def resolve_turn(self, stop_reason: str) -> bool:
        turn = self.pending_turn
        if turn is None:
            return False
        self.pending_turn = None
        return turn.resolve(stop_reason)

    # =========================================================================
    # Capture
    # =========================================================================

    def begin_capture(self, purpose: str, timeout: float) -> Capture:
        loop = asyncio.get_running_loop()
        capture = Capture(purpose=purpose, future=loop.create_future())
        capture.timeout_handle = loop.call_later(
            timeout, self._capture_timed_out, capture, timeout
        )
        self.capture = capture
        return capture

    def _capture_timed_out(self, capture: Capture, timeout: float) -> None:
        if self.capture is capture:
            self.fail_capture(CaptureTimeoutError(f"Timed out after {timeout:g}s"))

    def resolve_capture(self, text: str) -> None:
        capture = self.capture
        if capture is None:
            return
        self.capture = None
        capture.resolve(text)

    def fail_capture(self, error: Exception) -> None:
        capture = self.capture
        if capture is None:
            return
        self.capture = None
        capture.fail(error)

    # =========================================================================
    # Transport binding
    # =========================================================================

    def rebind(self, transport: DroidProcess, init: InitSessionResult) -> None:
        """Point this session at a new subprocess, keeping its identity."""
        self.transport = transport
        self.droid_session_id = init.session_id
        self.available_models = list(init.available_models)
        self.generation += 1
