"""Type protocols for the ACP side of the bridge.

These describe what the session layer needs from the editor connection and
from the slash-command dispatcher, so both can be replaced by mocks in tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from acp.schema import (  # type: ignore[import-untyped]
        PermissionOption,
        RequestPermissionResponse,
        SessionUpdate,
        ToolCallUpdate,
    )

    from .session import Session


@runtime_checkable
class ACPConnectionProtocol(Protocol):
    """The editor connection as used by the bridge."""

    async def session_update(self, session_id: str, update: SessionUpdate, **kwargs: Any) -> None:
        """Send a session update notification to the editor."""
        ...

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **kwargs: Any,
    ) -> RequestPermissionResponse:
        """Ask the human to pick one of ``options``."""
        ...


@runtime_checkable
class SlashCommandDispatcher(Protocol):
    """Handles ``/command`` prompts instead of forwarding them to the droid."""

    async def dispatch(self, session: Session, text: str) -> bool:
        """Handle ``text`` if it is a slash command.

        Returns:
            True when the prompt was consumed.
        """
        ...
