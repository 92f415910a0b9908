"""Interfaces between the droid transport and the session layer.

The session layer programs against :class:`DroidProcess` so tests can swap in
a fake subprocess, and the transport reports events through a
:class:`DroidEventHandler` bound to exactly one transport instance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..protocol.messages import InitSessionResult
    from ..protocol.notifications import DroidNotification


@runtime_checkable
class DroidEventHandler(Protocol):
    """Receives everything a single droid subprocess reports."""

    async def handle_notification(self, notification: DroidNotification) -> None:
        """Handle one normalized notification, in arrival order."""
        ...

    async def handle_permission_request(self, params: dict[str, Any]) -> str:
        """Decide a ``droid.request_permission`` request.

        Returns:
            The droid option value to reply with (e.g. ``proceed_once``).
        """
        ...

    async def handle_exit(self, returncode: int | None) -> None:
        """The subprocess has exited."""
        ...


@runtime_checkable
class DroidProcess(Protocol):
    """A running droid subprocess as seen by a session."""

    @property
    def session_id(self) -> str | None:
        """The droid's own session id, known after initialization."""
        ...

    @property
    def is_running(self) -> bool:
        """Whether the subprocess is alive and accepting input."""
        ...

    async def start(self) -> InitSessionResult:
        """Spawn the subprocess and complete the initialization handshake."""
        ...

    def set_handler(self, handler: DroidEventHandler | None) -> None:
        """Route events of this process to ``handler``."""
        ...

    async def send_user_message(
        self, text: str, images: list[dict[str, str]] | None = None
    ) -> None:
        """Send a user message (no-op before initialization)."""
        ...

    async def send_message(self, text: str) -> None:
        """Send a plain text user message."""
        ...

    async def set_mode(self, autonomy_level: str) -> None:
        """Forward an autonomy level change."""
        ...

    async def set_model(self, model_id: str) -> None:
        """Forward a model change."""
        ...

    def stop(self) -> None:
        """Ask the subprocess to exit without waiting for it."""
        ...
