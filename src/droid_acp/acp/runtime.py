"""Shared runtime context for the ACP agent.

:class:`BridgeRuntime` is passed explicitly to every session-layer function.
It owns the session registry, the configuration, the editor connection, the
transport factory and the set of background tasks.

Transport callbacks go through :class:`SessionBinding`, which remembers the
transport it was created for and drops everything once that transport no
longer owns the session. A replaced subprocess can therefore never touch the
session that outlived it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

from acp import text_block, update_agent_message  # type: ignore[import-untyped]
from acp.schema import (  # type: ignore[import-untyped]
    CurrentModeUpdate,
    ToolCallProgress,
    ToolCallStart,
)

from ..config import BridgeConfig
from ..droid.transport import DroidTransport
from ..errors import SessionNotFoundError
from .modes import DEFAULT_MODE, from_droid_autonomy
from .session import Session, SessionState

if TYPE_CHECKING:
    from ..droid.protocols import DroidProcess
    from ..protocol.messages import InitSessionResult
    from ..protocol.notifications import DroidNotification
    from .protocols import ACPConnectionProtocol, SlashCommandDispatcher

logger = logging.getLogger(__name__)

NEW_SESSION_TITLE = "New Session"

TransportFactory = Callable[[str, "str | None"], "DroidProcess"]


class BridgeRuntime:
    """Registry and shared services for every session of one ACP connection."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        transport_factory: TransportFactory | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.sessions: dict[str, Session] = {}
        self.extra_env = dict(extra_env or {})
        self.slash_commands: SlashCommandDispatcher | None = None
        self._conn: ACPConnectionProtocol | None = None
        self._transport_factory = transport_factory or self._default_transport
        self._background: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Connection and transports
    # =========================================================================

    @property
    def conn(self) -> ACPConnectionProtocol | None:
        return self._conn

    def attach_connection(self, conn: ACPConnectionProtocol) -> None:
        self._conn = conn

    def _default_transport(self, cwd: str, resume_session_id: str | None) -> DroidProcess:
        return DroidTransport(
            cwd,
            self.config,
            resume_session_id=resume_session_id,
            extra_env=self.extra_env,
        )

    def create_transport(self, cwd: str, resume_session_id: str | None = None) -> DroidProcess:
        return self._transport_factory(cwd, resume_session_id)

    # =========================================================================
    # Registry
    # =========================================================================

    def get(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def owner_of(self, session_id: str, transport: DroidProcess) -> Session | None:
        """The session if ``transport`` is still its current subprocess."""
        session = self.sessions.get(session_id)
        if session is None or session.transport is not transport:
            return None
        return session

    def remove(self, session_id: str) -> Session | None:
        session = self.sessions.pop(session_id, None)
        if session is not None:
            session.state = SessionState.CLOSED
        return session

    def attach(
        self,
        session_id: str,
        cwd: str,
        transport: DroidProcess,
        init: InitSessionResult,
        title: str | None = None,
    ) -> Session:
        """Register a session for a freshly started subprocess."""
        session = Session(
            id=session_id,
            cwd=cwd,
            transport=transport,
            droid_session_id=init.session_id,
            mode=from_droid_autonomy(init.settings.autonomy_level) or DEFAULT_MODE,
            model=init.settings.model_id or "unknown",
            available_models=list(init.available_models),
            title=title or NEW_SESSION_TITLE,
        )
        session.touch()
        self.sessions[session_id] = session
        self.bind(session, transport)
        logger.info(f"Attached session {session_id} (droid session {init.session_id})")
        return session

    def bind(self, session: Session, transport: DroidProcess) -> None:
        """Route the events of ``transport`` to ``session``."""
        transport.set_handler(SessionBinding(self, session.id, transport))

    # =========================================================================
    # Editor updates
    # =========================================================================

    async def session_update(self, session: Session, update: Any) -> None:
        """Send an update to the editor; delivery failures are logged."""
        if self._conn is None:
            return
        try:
            await self._conn.session_update(session.id, update)
        except Exception as e:
            logger.warning(f"Failed to send session update for {session.id}: {e}")

    async def send_agent_message(self, session: Session, text: str) -> None:
        await self.session_update(session, update_agent_message(text_block(text)))

    async def send_mode_update(self, session: Session) -> None:
        await self.session_update(
            session,
            CurrentModeUpdate(
                session_update="current_mode_update", current_mode_id=session.mode.value
            ),
        )

    async def start_tool_call(
        self,
        session: Session,
        tool_call_id: str,
        title: str,
        *,
        kind: str = "other",
        status: str = "pending",
        content: list[Any] | None = None,
        locations: list[Any] | None = None,
        raw_input: Any = None,
    ) -> None:
        await self.session_update(
            session,
            ToolCallStart(
                session_update="tool_call",
                tool_call_id=tool_call_id,
                title=title,
                kind=kind,
                status=status,
                content=content,
                locations=locations,
                raw_input=raw_input,
            ),
        )

    async def update_tool_call(self, session: Session, tool_call_id: str, **fields: Any) -> None:
        """Send ``tool_call_update`` with the given non-None fields."""
        values = {k: v for k, v in fields.items() if v is not None}
        await self.session_update(
            session,
            ToolCallProgress(session_update="tool_call_update", tool_call_id=tool_call_id, **values),
        )

    # =========================================================================
    # Background tasks
    # =========================================================================

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Run ``coro`` in the background, logging any failure."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")

    async def close(self) -> None:
        """Stop every subprocess and background task."""
        for session in list(self.sessions.values()):
            session.state = SessionState.CLOSED
            session.resolve_turn("cancelled")
            session.transport.stop()
        self.sessions.clear()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class SessionBinding:
    """Event handler tying one transport to one session id."""

    def __init__(self, runtime: BridgeRuntime, session_id: str, transport: DroidProcess) -> None:
        self.runtime = runtime
        self.session_id = session_id
        self.transport = transport

    def _owner(self) -> Session | None:
        session = self.runtime.owner_of(self.session_id, self.transport)
        if session is None:
            logger.debug(f"Ignoring event from stale droid of session {self.session_id}")
        return session

    async def handle_notification(self, notification: DroidNotification) -> None:
        from .event_mapper import handle_notification

        session = self._owner()
        if session is not None:
            await handle_notification(self.runtime, session, notification)

    async def handle_permission_request(self, params: dict[str, Any]) -> str:
        from .approval_bridge import handle_permission

        session = self._owner()
        if session is None:
            return "proceed_once"
        return await handle_permission(self.runtime, session, params)

    async def handle_exit(self, returncode: int | None) -> None:
        from .lifecycle import handle_exit

        await handle_exit(self.runtime, self.session_id, self.transport, returncode)
