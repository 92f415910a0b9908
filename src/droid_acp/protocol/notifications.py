"""Internal notifications produced by the message reconciler.

The droid's ``droid.session_notification`` payloads are loosely shaped; the
reconciler normalizes them into this closed set of variants before the
session layer sees them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .messages import DroidSettings


@dataclass(frozen=True)
class WorkingStateChanged:
    """The droid reported a new working state (``idle``, ``streaming_assistant_message``...)."""

    state: str


@dataclass(frozen=True)
class SettingsUpdated:
    """The droid's settings changed."""

    settings: DroidSettings


@dataclass(frozen=True)
class ToolUse:
    """A tool invocation inside an assistant message."""

    id: str
    name: str
    input: Any = None

    @property
    def input_dict(self) -> dict[str, Any]:
        return self.input if isinstance(self.input, dict) else {}


@dataclass(frozen=True)
class MessageCreated:
    """One text block or one tool use of a created message."""

    role: str
    message_id: str | None = None
    text: str | None = None
    tool_use: ToolUse | None = None


@dataclass(frozen=True)
class ToolResult:
    """The result of a tool call."""

    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class DroidError:
    """The droid reported an error for the current turn."""

    message: str


@dataclass(frozen=True)
class TurnComplete:
    """The current turn is over."""

    reason: str = field(default="idle")


DroidNotification = (
    WorkingStateChanged
    | SettingsUpdated
    | MessageCreated
    | ToolResult
    | DroidError
    | TurnComplete
)
