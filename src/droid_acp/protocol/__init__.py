"""Droid stream-jsonrpc wire models and internal notification variants."""

from .messages import (
    FACTORY_API_VERSION,
    INTERNAL_ERROR,
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
    AvailableModel,
    DroidErrorPayload,
    DroidMethod,
    DroidNotificationMessage,
    DroidRequest,
    DroidResponse,
    DroidSettings,
    InitSessionResult,
    decode_line,
)
from .notifications import (
    DroidError,
    DroidNotification,
    MessageCreated,
    SettingsUpdated,
    ToolResult,
    ToolUse,
    TurnComplete,
    WorkingStateChanged,
)

__all__ = [
    "FACTORY_API_VERSION",
    "INTERNAL_ERROR",
    "JSONRPC_VERSION",
    "METHOD_NOT_FOUND",
    "AvailableModel",
    "DroidError",
    "DroidErrorPayload",
    "DroidMethod",
    "DroidNotification",
    "DroidNotificationMessage",
    "DroidRequest",
    "DroidResponse",
    "DroidSettings",
    "InitSessionResult",
    "MessageCreated",
    "SettingsUpdated",
    "ToolResult",
    "ToolUse",
    "TurnComplete",
    "WorkingStateChanged",
    "decode_line",
]
