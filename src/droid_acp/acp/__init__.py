"""Agent Client Protocol (ACP) side of the droid bridge.

ACP standardizes communication between code editors and AI coding agents.
This package exposes droid sessions to editors like Zed over stdio.

Types are re-exported from the official agent-client-protocol SDK.
See: https://agentclientprotocol.com
"""

from acp import PROTOCOL_VERSION  # type: ignore[import-untyped]

from .agent import DroidAgent, run_stdio_agent, to_request_error
from .content_converter import AcpToDroidContentConverter, ConversionResult, convert_prompt
from .modes import DEFAULT_MODE, AcpMode, from_droid_autonomy, parse_mode, to_droid_autonomy
from .protocols import ACPConnectionProtocol, SlashCommandDispatcher
from .runtime import BridgeRuntime, SessionBinding
from .session import Session, SessionState, ToolCallLedger, ToolCallStatus
from .session_discovery import (
    SessionRecord,
    encode_cwd,
    list_sessions,
    read_session_header,
    resolve_session_path,
)
from .slash_commands import (
    SlashCommandHandler,
    SlashCommandRegistry,
    SlashCommandResult,
    create_available_commands_update,
    parse_slash_command,
)
from .tool_metadata import format_tool_title, get_tool_kind

__all__ = [
    # Agent
    "DroidAgent",
    "run_stdio_agent",
    "to_request_error",
    # Protocol version
    "PROTOCOL_VERSION",
    # Runtime & sessions
    "BridgeRuntime",
    "SessionBinding",
    "Session",
    "SessionState",
    "ToolCallLedger",
    "ToolCallStatus",
    # Modes
    "AcpMode",
    "DEFAULT_MODE",
    "from_droid_autonomy",
    "parse_mode",
    "to_droid_autonomy",
    # Content Converter
    "AcpToDroidContentConverter",
    "ConversionResult",
    "convert_prompt",
    # Protocols (type safety)
    "ACPConnectionProtocol",
    "SlashCommandDispatcher",
    # Session Discovery
    "SessionRecord",
    "encode_cwd",
    "list_sessions",
    "read_session_header",
    "resolve_session_path",
    # Slash Commands
    "SlashCommandHandler",
    "SlashCommandRegistry",
    "SlashCommandResult",
    "create_available_commands_update",
    "parse_slash_command",
    # Tool Metadata
    "format_tool_title",
    "get_tool_kind",
]
