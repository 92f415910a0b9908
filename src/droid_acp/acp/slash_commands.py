"""ACP Slash Commands for the droid bridge.

Prompts starting with ``/`` are handled by the bridge instead of being sent to
the droid.

ACP Protocol Flow:
1. After session creation, agent sends `available_commands_update` notification
2. Client displays commands in UI (autocomplete, command palette)
3. User types `/command args` in prompt
4. The prompt turn routes the text here instead of to the droid
5. Handler executes and its message is sent as an agent message

Architecture:
- SlashCommandRegistry: Defines available commands with metadata
- SlashCommandHandler: Executes commands against a bridge session
- Integration point: lifecycle.prompt() calls runtime.slash_commands.dispatch()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from acp.schema import (  # type: ignore[import-untyped]
    AvailableCommand,
    AvailableCommandInput,
    AvailableCommandsUpdate,
)

from ..errors import CaptureError
from .event_mapper import COMPRESS_SUMMARY_PURPOSE
from .lifecycle import replace_transport, start_transport
from .modes import AcpMode, parse_mode, to_droid_autonomy
from .replay import build_transcript, replay_history_file
from .session_discovery import (
    SessionRecord,
    list_sessions,
    read_session_header,
    resolve_session_path,
)
from .text import format_timestamp, sanitize_history_text, sanitize_session_title

if TYPE_CHECKING:
    from .runtime import BridgeRuntime
    from .session import Session

logger = logging.getLogger(__name__)

SESSIONS_PAGE_SIZE = 20
TRANSCRIPT_MAX_CHARS = 12_000

_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)
_SUMMARY = re.compile(r"<summary>([\s\S]*?)</summary>", re.IGNORECASE)

COMPRESS_PROMPT_LINES = (
    "Create a compact handoff summary of our conversation so far.",
    "",
    "Requirements:",
    "- Keep it short and information-dense.",
    "- Include: goal, current state, key decisions, important files/paths, and next TODOs.",
    "- Do NOT include tool call logs, <system-reminder>, or <context> blocks.",
    "- Output must be ONLY a single <summary>...</summary> block.",
)

SESSIONS_USAGE = (
    "Usage:\n\n- /sessions (list current cwd)\n- /sessions all (list global)\n"
    "- /sessions load <#|id_prefix|session_id>\n- /sessions <#>"
)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class SlashCommandResult:
    """Result of executing a slash command.

    The message, if any, is sent to the editor as an agent message.
    """

    success: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    send_as_message: bool = True


@dataclass
class ParsedCommand:
    """A parsed slash command from user input."""

    name: str
    args: str
    raw: str


# =============================================================================
# Command Registry
# =============================================================================


class SlashCommandRegistry:
    """Registry of available slash commands."""

    COMMANDS = [
        AvailableCommand(
            name="help",
            description="Show available slash commands",
        ),
        AvailableCommand(
            name="compress",
            description="Compress conversation history (summary + restart)",
            input=AvailableCommandInput(hint="[optional instructions]"),
        ),
        AvailableCommand(
            name="compact",
            description="Alias for /compress",
            input=AvailableCommandInput(hint="[optional instructions]"),
        ),
        AvailableCommand(
            name="model",
            description="Show or change the current model",
            input=AvailableCommandInput(hint="[model_id]"),
        ),
        AvailableCommand(
            name="mode",
            description="Show or change the autonomy mode (off|low|medium|high|spec)",
            input=AvailableCommandInput(hint="[mode]"),
        ),
        AvailableCommand(
            name="config",
            description="Show current session configuration",
        ),
        AvailableCommand(
            name="status",
            description="Show current session status",
        ),
    ]

    # Only with experiment sessions enabled
    SESSION_COMMANDS = [
        AvailableCommand(
            name="sessions",
            description="List or load previous sessions (local Droid history)",
            input=AvailableCommandInput(hint="[load <#|id_prefix|session_id>|all]"),
        ),
    ]

    @classmethod
    def get_commands(cls, experiment_sessions: bool = False) -> list[AvailableCommand]:
        commands = list(cls.COMMANDS)
        if experiment_sessions:
            commands.extend(cls.SESSION_COMMANDS)
        return commands


# =============================================================================
# Command Parser
# =============================================================================


def parse_slash_command(text: str) -> ParsedCommand | None:
    """Parse a slash command from user input.

    Examples:
        "/help" -> ParsedCommand(name="help", args="", raw="/help")
        "/mode high" -> ParsedCommand(name="mode", args="high", raw="/mode high")
        "hello" -> None
    """
    text = text.strip()
    if not text.startswith("/"):
        return None

    match = re.match(r"^/(\S+)(?:\s+(.*))?$", text, re.DOTALL)
    if not match:
        return None

    return ParsedCommand(name=match.group(1).lower(), args=(match.group(2) or "").strip(), raw=text)


def _hint(command: AvailableCommand) -> str | None:
    command_input = command.input
    if command_input is None:
        return None
    root = getattr(command_input, "root", command_input)
    return getattr(root, "hint", None)


def _extract_summary(text: str) -> str:
    match = _SUMMARY.search(text)
    if match:
        return (match.group(1) or "").strip()
    return text.strip()


def _listing_line(index: int, record: SessionRecord, with_cwd: bool) -> str:
    time = f" — {format_timestamp(record.updated_at)}" if record.updated_at else ""
    title = sanitize_session_title(record.title) if record.title else ""
    title_part = f" — {title}" if title else ""
    cwd_part = f" ({record.cwd})" if with_cwd else ""
    return f"{index}. {record.session_id}{cwd_part}{title_part}{time}"


def filter_titled_sessions(records: list[SessionRecord]) -> list[SessionRecord]:
    """Drop sessions that never got a real title."""
    kept = []
    for record in records:
        title = sanitize_session_title(record.title) if record.title else ""
        if title and title.lower() != "new session":
            kept.append(record)
    return kept


# =============================================================================
# Command Handler
# =============================================================================


class SlashCommandHandler:
    """Executes slash commands against bridge sessions.

    Each command method follows the pattern:
    - Takes the session and the ParsedCommand
    - Returns SlashCommandResult
    - May modify session state (e.g., mode change, transport swap)
    """

    def __init__(self, runtime: BridgeRuntime) -> None:
        self._runtime = runtime

    @property
    def commands(self) -> list[AvailableCommand]:
        return SlashCommandRegistry.get_commands(self._runtime.config.experiment_sessions)

    async def dispatch(self, session: Session, text: str) -> bool:
        """Run ``text`` as a command. Returns False when it is not one."""
        command = parse_slash_command(text)
        if command is None:
            return False

        result = await self.execute(session, command)
        if result.send_as_message and result.message:
            await self._runtime.send_agent_message(session, result.message)
        return True

    async def execute(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        """Route to the ``_handle_<name>`` method of the command."""
        handler = getattr(self, f"_handle_{command.name}", None)
        if handler is None:
            return await self._handle_help(session, command, header=f"Unknown command: /{command.name}")

        try:
            return await handler(session, command)
        except Exception as e:
            logger.exception(f"Error executing /{command.name}: {e}")
            return SlashCommandResult(success=False, message=f"Error executing /{command.name}: {e}")

    async def _say(self, session: Session, text: str) -> None:
        await self._runtime.send_agent_message(session, text)

    # -------------------------------------------------------------------------
    # Information
    # -------------------------------------------------------------------------

    async def _handle_help(
        self, session: Session, command: ParsedCommand, header: str | None = None
    ) -> SlashCommandResult:
        """Show available slash commands."""
        lines = [f"{header}\n"] if header else []
        lines.append("**Available Commands:**\n")
        for cmd in self.commands:
            hint = _hint(cmd)
            hint_part = f" {hint}" if hint else ""
            lines.append(f"- /{cmd.name}{hint_part} - {cmd.description}")

        return SlashCommandResult(
            success=header is None,
            message="\n".join(lines),
            data={"commands": [c.name for c in self.commands]},
        )

    async def _handle_config(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        lines = [
            "**Session Configuration:**",
            f"- Session ID: {session.id}",
            f"- Working Directory: {session.cwd}",
            f"- Model: {session.model}",
            f"- Mode: {session.mode.value}",
        ]
        return SlashCommandResult(success=True, message="\n".join(lines))

    async def _handle_status(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        lines = [
            "**Session Status:**",
            f"- State: {session.state.value}",
            f"- Active Tool Calls: {len(session.tool_calls.active)}",
            f"- Droid Running: {'true' if session.is_running else 'false'}",
            f"- Droid Session ID: {session.droid_session_id}",
        ]
        return SlashCommandResult(success=True, message="\n".join(lines))

    # -------------------------------------------------------------------------
    # Mode and model
    # -------------------------------------------------------------------------

    async def _handle_mode(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        """Show or change the autonomy mode."""
        mode = parse_mode(command.args.lower()) if command.args else None
        if mode is not None:
            session.mode = mode
            await session.transport.set_mode(to_droid_autonomy(mode))
            await self._say(session, f"Autonomy mode changed to: **{mode.value}**")
            await self._runtime.send_mode_update(session)
            return SlashCommandResult(success=True, send_as_message=False)

        mode_list = "\n".join(
            f"- {m.value}{' **(current)**' if m == session.mode else ''}" for m in AcpMode
        )
        return SlashCommandResult(
            success=True,
            message=f"**Current mode:** {session.mode.value}\n\n**Available modes:**\n{mode_list}",
        )

    async def _handle_model(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        """Show or change the model, by id or display name."""
        wanted = command.args
        if wanted:
            model = next(
                (
                    m
                    for m in session.available_models
                    if m.id == wanted or m.label.lower() == wanted.lower()
                ),
                None,
            )
            if model is None:
                available = "\n".join(f"- {m.id} ({m.label})" for m in session.available_models)
                return SlashCommandResult(
                    success=False,
                    message=f'Model "{wanted}" not found.\n\n**Available models:**\n{available}',
                )
            session.model = model.id
            await session.transport.set_model(model.id)
            return SlashCommandResult(success=True, message=f"Model changed to: **{model.label}**")

        available = "\n".join(
            f"- {m.id} ({m.label}){' **(current)**' if m.id == session.model else ''}"
            for m in session.available_models
        )
        return SlashCommandResult(
            success=True,
            message=f"**Current model:** {session.model}\n\n**Available models:**\n{available}",
        )

    # -------------------------------------------------------------------------
    # Compression
    # -------------------------------------------------------------------------

    async def _capture_reply(self, session: Session, prompt: str) -> str:
        if session.capture is not None:
            raise CaptureError("Capture already in progress")
        capture = session.begin_capture(COMPRESS_SUMMARY_PURPOSE, self._runtime.config.capture_timeout)
        await session.transport.send_user_message(prompt)
        return await capture.future

    async def _handle_compress(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        """Summarize the conversation and continue in a fresh droid session."""
        if not session.is_running:
            return SlashCommandResult(success=False, message="Droid is not running.")
        if session.capture is not None:
            return SlashCommandResult(
                success=False, message="Another operation is already in progress."
            )

        lines = list(COMPRESS_PROMPT_LINES)
        if command.args:
            lines.append(f"\n\nExtra instructions: {command.args}")
        summary_prompt = "\n".join(lines).strip()

        await self._say(session, "Compressing conversation history…")
        try:
            raw_summary = await self._capture_reply(session, summary_prompt)
        except CaptureError as e:
            return SlashCommandResult(success=False, message=f"Failed to generate summary: {e}")

        summary = sanitize_history_text(_extract_summary(raw_summary))
        if not summary:
            return SlashCommandResult(
                success=False,
                message="Compression failed: summary was empty. Try again with fewer instructions.",
            )

        await self._say(session, "Starting a fresh Droid session with summary context…")
        transport, init = await start_transport(self._runtime, session.cwd)
        await replace_transport(self._runtime, session, transport, init)
        session.pending_history_context = summary
        logger.info(f"Compressed session {session.id} into droid session {init.session_id}")

        return SlashCommandResult(
            success=True,
            message=(
                "Compression complete.\n\n"
                "Your next message will automatically include the summary context."
            ),
            data={"summary": summary},
        )

    async def _handle_compact(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        return await self._handle_compress(session, command)

    # -------------------------------------------------------------------------
    # Session history
    # -------------------------------------------------------------------------

    def _list(self, session: Session, all_dirs: bool) -> list[SessionRecord]:
        records, _ = list_sessions(
            self._runtime.config.sessions_dir,
            cwd=None if all_dirs else session.cwd,
            preferred_cwd=session.cwd if all_dirs else None,
            page_size=SESSIONS_PAGE_SIZE,
        )
        return filter_titled_sessions(records)

    async def _handle_sessions(self, session: Session, command: ParsedCommand) -> SlashCommandResult:
        """List or load sessions from local droid history."""
        if not self._runtime.config.experiment_sessions:
            return SlashCommandResult(
                success=False,
                message=(
                    "Experimental feature disabled.\n\nEnable with `droid-acp "
                    "--experiment-sessions` (or set `DROID_ACP_EXPERIMENT_SESSIONS=1`)."
                ),
            )

        parts = command.args.split()
        sub = parts[0].lower() if parts else None
        if sub is not None and sub.isdigit():
            parts.insert(0, "load")
            sub = "load"

        if sub is None or sub == "list":
            return self._sessions_list(session, all_dirs=False)
        if sub == "all":
            return self._sessions_list(session, all_dirs=True)
        if sub == "load":
            return await self._sessions_load(session, parts[1] if len(parts) > 1 else "")
        return SlashCommandResult(success=False, message=SESSIONS_USAGE)

    def _sessions_list(self, session: Session, all_dirs: bool) -> SlashCommandResult:
        records = self._list(session, all_dirs)
        if not records:
            message = (
                "No sessions found in local history."
                if all_dirs
                else f"No sessions found for:\n\n- cwd: {session.cwd}\n\nTry: /sessions all"
            )
            return SlashCommandResult(success=True, message=message)

        session.last_sessions_listing = records
        heading = "**Recent Sessions**" if all_dirs else f"**Sessions ({session.cwd})**"
        lines = [
            heading,
            "",
            *(_listing_line(i, r, all_dirs) for i, r in enumerate(records, start=1)),
            "",
            "Use:",
            "- /sessions load <#>",
            "- /sessions <#>",
            "- /sessions load <session_id_prefix>",
        ]
        return SlashCommandResult(
            success=True,
            message="\n".join(lines).strip(),
            data={"sessions": [r.session_id for r in records]},
        )

    def _listing(self, session: Session) -> list[SessionRecord]:
        if session.last_sessions_listing is None:
            session.last_sessions_listing = self._list(session, all_dirs=False)
        return session.last_sessions_listing

    def _resolve_target(self, session: Session, target: str) -> tuple[str | None, str | None]:
        """``(session_id, None)`` or ``(None, error_message)``."""
        lower = target.lower()
        if lower in ("last", "latest"):
            listing = self._listing(session)
            if not listing:
                return None, f"No sessions found for:\n\n- cwd: {session.cwd}\n\nTry: /sessions all"
            return listing[0].session_id, None

        if target.isdigit():
            index = int(target)
            if index <= 0:
                return None, f"Invalid session index: {target}"
            listing = self._listing(session)
            if index > len(listing):
                return None, (
                    f"Session index out of range: {index}\n\n"
                    "Run `/sessions` to refresh the list."
                )
            return listing[index - 1].session_id, None

        if _UUID.match(target):
            return target, None

        listing = self._listing(session)
        matches = [r for r in listing if r.session_id.lower().startswith(lower)]
        if len(matches) == 1:
            return matches[0].session_id, None
        if not matches:
            return None, (
                f"No session matches that id prefix: {target}\n\n"
                "Run `/sessions` or `/sessions all` to list sessions."
            )
        lines = [
            f"- {_listing_line(listing.index(r) + 1, r, False)}" for r in matches[:10]
        ]
        return None, "\n".join(
            [f"Multiple sessions match that id prefix: {target}", "", *lines, "", "Use: /sessions load <#>"]
        )

    async def _sessions_load(self, session: Session, target: str) -> SlashCommandResult:
        if not target:
            return SlashCommandResult(
                success=False,
                message=(
                    "Usage:\n\n- /sessions load <#>\n- /sessions load <session_id_prefix>\n"
                    "- /sessions load <full_session_id>"
                ),
            )

        session_id, error = self._resolve_target(session, target)
        if session_id is None:
            return SlashCommandResult(success=False, message=error or "")

        await self._say(session, f"Loading session: {session_id}…")
        path = resolve_session_path(self._runtime.config.sessions_dir, session_id, session.cwd)
        if path is None:
            return SlashCommandResult(
                success=False, message=f"Session history not found on disk for: {session_id}"
            )

        header = read_session_header(path)
        cwd = (header.cwd if header else None) or session.cwd

        transport, init = await start_transport(self._runtime, cwd, session_id)
        resumed = init.session_id == session_id
        if not resumed:
            transport.stop()
            transport, init = await start_transport(self._runtime, cwd)

        session.cwd = cwd
        if header and header.title:
            session.title = sanitize_session_title(header.title)
        await replace_transport(self._runtime, session, transport, init, restore=False)

        if not resumed:
            transcript = build_transcript(path, TRANSCRIPT_MAX_CHARS)
            if transcript:
                session.pending_history_context = transcript
            await self._say(
                session,
                f"\n\nNote: history is loaded from disk for {session_id}, but Droid could not "
                "resume this session id.\n\nYour next message will automatically include a "
                "transcript as context.",
            )

        await replay_history_file(self._runtime, session, path)
        return SlashCommandResult(
            success=True, send_as_message=False, data={"session_id": session_id, "resumed": resumed}
        )


# =============================================================================
# ACP Integration Helpers
# =============================================================================


def create_available_commands_update(experiment_sessions: bool = False) -> AvailableCommandsUpdate:
    """Create an ACP AvailableCommandsUpdate notification.

    This should be sent after session creation to advertise available commands.
    """
    return AvailableCommandsUpdate(
        session_update="available_commands_update",
        available_commands=SlashCommandRegistry.get_commands(experiment_sessions),
    )


__all__ = [
    "ParsedCommand",
    "SlashCommandHandler",
    "SlashCommandRegistry",
    "SlashCommandResult",
    "create_available_commands_update",
    "filter_titled_sessions",
    "parse_slash_command",
]
