"""Shared tool metadata for ACP presentation.

Single source of truth for how droid tools are displayed in the editor:
kinds, titles, file locations, diff previews and the details markdown shown
in permission dialogs.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from acp.schema import (  # type: ignore[import-untyped]
    ContentToolCallContent,
    FileEditToolCallContent,
    TextContentBlock,
    ToolCallLocation,
)

from .text import safe_code_fence

logger = logging.getLogger(__name__)

Stage = Literal["permission", "run"]

MAX_DIFF_FILE_BYTES = 256 * 1024
MAX_RAW_VALUE_CHARS = 1200
MAX_RAW_JSON_CHARS = 12_000


@dataclass(frozen=True)
class ToolMeta:
    """Display properties of a droid tool.

    Attributes:
        kind: ACP tool kind (read, edit, delete, move, search, execute, fetch, other)
        has_location: Whether the tool's input names files worth linking
        read_only: Whether the tool only reads (low risk by default)
    """

    kind: str
    has_location: bool = False
    read_only: bool = False


# =============================================================================
# Tool Metadata Registry
# =============================================================================

TOOL_METADATA: dict[str, ToolMeta] = {
    "Read": ToolMeta(kind="read", has_location=True, read_only=True),
    "LS": ToolMeta(kind="read", has_location=True, read_only=True),
    "Grep": ToolMeta(kind="search", has_location=True, read_only=True),
    "Glob": ToolMeta(kind="search", has_location=True, read_only=True),
    "Edit": ToolMeta(kind="edit", has_location=True),
    "Write": ToolMeta(kind="edit", has_location=True),
    "Move": ToolMeta(kind="move", has_location=True),
    "Delete": ToolMeta(kind="delete", has_location=True),
    "Bash": ToolMeta(kind="execute"),
    "Fetch": ToolMeta(kind="fetch"),
}

EXIT_SPEC_MODE_TOOL = "ExitSpecMode"
TODO_WRITE_TOOL = "TodoWrite"


def get_tool_kind(tool_name: str) -> str:
    """Get the ACP tool kind for a droid tool.

    Example:
        >>> get_tool_kind("Bash")
        'execute'
        >>> get_tool_kind("Unknown")
        'other'
    """
    meta = TOOL_METADATA.get(tool_name)
    return meta.kind if meta else "other"


def is_read_only_tool(tool_name: str) -> bool:
    meta = TOOL_METADATA.get(tool_name)
    return bool(meta and meta.read_only)


def _as_dict(raw_input: Any) -> dict[str, Any] | None:
    return raw_input if isinstance(raw_input, dict) else None


def _first_nonempty(raw: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


# =============================================================================
# Paths and locations
# =============================================================================


def extract_file_path(raw_input: Any) -> str | None:
    """The file a tool input refers to (``file_path``, ``filePath`` or ``path``)."""
    raw = _as_dict(raw_input)
    if raw is None:
        return None
    return _first_nonempty(raw, "file_path", "filePath", "path")


@dataclass(frozen=True)
class ResolvedPath:
    abs_path: str
    label: str


def resolve_file_path(cwd: str, file_path: str) -> ResolvedPath:
    """Resolve against ``cwd``; the label is relative when inside ``cwd``."""
    expanded = os.path.expanduser(file_path.strip())
    abs_path = expanded if os.path.isabs(expanded) else os.path.normpath(os.path.join(cwd, expanded))
    prefix = cwd.rstrip(os.sep) + os.sep
    label = os.path.relpath(abs_path, cwd) if abs_path.startswith(prefix) else abs_path
    return ResolvedPath(abs_path=abs_path, label=label)


def tool_locations(tool_name: str, raw_input: Any, cwd: str) -> list[ToolCallLocation] | None:
    """File locations for tools that touch files; None otherwise."""
    meta = TOOL_METADATA.get(tool_name)
    raw = _as_dict(raw_input)
    if meta is None or not meta.has_location or raw is None:
        return None

    labels: list[str] = []

    def add(value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            return
        label = resolve_file_path(cwd, value).label
        if label not in labels:
            labels.append(label)

    if tool_name == "Move":
        add(_first_present(raw, "from_path", "fromPath", "source", "from"))
        add(_first_present(raw, "to_path", "toPath", "destination", "to"))

    if not labels:
        add(extract_file_path(raw))

    return [ToolCallLocation(path=label) for label in labels] or None


# =============================================================================
# Titles
# =============================================================================


def format_tool_title(
    tool_name: str,
    raw_input: Any,
    cwd: str,
    risk: str,
    stage: Stage = "permission",
) -> str:
    """Human-readable title for a tool call.

    Example:
        >>> format_tool_title("Bash", {"command": "ls -la"}, "/repo", "low")
        'Run (low): ls -la'
        >>> format_tool_title("Read", {"file_path": "src/a.py"}, "/repo", "low", "run")
        'Read: src/a.py'
    """
    raw = _as_dict(raw_input) or {}
    permission = stage == "permission"

    if tool_name == "Bash":
        command = _first_nonempty(raw, "command")
        summary = command.splitlines()[0].strip() if command else ""
        summary = summary or "command"
        return f"Run ({risk}): {summary}" if permission else f"Run: {summary}"

    if tool_name == "Fetch":
        url = _first_nonempty(raw, "url")
        if url:
            return f"Fetch: {url}"

    file_path = extract_file_path(raw)
    if file_path:
        label = resolve_file_path(cwd, file_path).label
        prefix = "List" if tool_name == "LS" else tool_name
        return f"{prefix} ({risk}): {label}" if permission else f"{prefix}: {label}"

    if tool_name in ("Grep", "Glob"):
        pattern = _first_nonempty(raw, "pattern")
        if pattern:
            return f"{tool_name} ({risk}): {pattern}" if permission else f"{tool_name}: {pattern}"

    return f"Permission required: {tool_name} ({risk})" if permission else f"Running {tool_name}"


# =============================================================================
# Content
# =============================================================================


def text_content(text: str) -> ContentToolCallContent:
    return ContentToolCallContent(type="content", content=TextContentBlock(type="text", text=text))


def raw_input_for_client(raw_input: Any, debug: bool) -> Any:
    """Raw tool input is only shown to the editor in debug mode."""
    return raw_input if debug else None


def format_details_markdown(tool_name: str, risk: str, raw_input: Any, debug: bool = False) -> str:
    """Markdown body shown in a permission dialog."""
    lines = ["**Details**", f"- Tool: `{tool_name}`", f"- Risk: `{risk}`"]
    raw = _as_dict(raw_input)

    command = raw.get("command") if raw else None
    if isinstance(command, str) and command.strip():
        lines += ["", "**Command**", "```bash", safe_code_fence(command.strip()), "```"]
        return "\n".join(lines)

    summary: list[str] = []
    if raw:
        fields: list[tuple[str, Any]] = [
            ("From", _first_present(raw, "from_path", "fromPath", "from")),
            ("To", _first_present(raw, "to_path", "toPath", "to")),
            ("Path", raw.get("path")),
            ("File", raw.get("file")),
            ("File path", _first_present(raw, "file_path", "filePath")),
            ("URL", raw.get("url")),
            ("Query", raw.get("query")),
            ("Pattern", raw.get("pattern")),
            ("Glob", raw.get("glob")),
        ]
        for label, value in fields:
            if isinstance(value, str) and value.strip():
                summary.append(f"- {label}: `{value.strip()}`")
    if summary:
        lines += ["", "**Input (summary)**", *summary]

    if debug:
        raw_json = _scrubbed_raw_json(raw_input)
        if raw_json:
            lines += ["", "**Input (raw)**", "```json", safe_code_fence(raw_json), "```"]

    return "\n".join(lines)


def _scrubbed_raw_json(raw_input: Any) -> str | None:
    raw = _as_dict(raw_input)
    if raw is not None:
        scrubbed: Any = {
            key: (
                f"{value[:MAX_RAW_VALUE_CHARS]}… (truncated, {len(value)} chars)"
                if isinstance(value, str) and len(value) > MAX_RAW_VALUE_CHARS
                else value
            )
            for key, value in raw.items()
        }
    else:
        scrubbed = raw_input
    try:
        dumped = json.dumps(scrubbed, indent=2, default=str)
    except (TypeError, ValueError):
        return None
    if dumped == "{}" or dumped == "null":
        return None
    if len(dumped) > MAX_RAW_JSON_CHARS:
        return f"{dumped[:MAX_RAW_JSON_CHARS]}\n… (truncated)"
    return dumped


def _read_small_file(path: str) -> str | None:
    file = Path(path)
    try:
        if not file.is_file() or file.stat().st_size > MAX_DIFF_FILE_BYTES:
            return None
        return file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Could not read {path} for diff preview: {e}")
        return None


def build_diff_content(tool_name: str, raw_input: Any, cwd: str) -> FileEditToolCallContent | None:
    """Diff preview for Edit and Write inputs."""
    raw = _as_dict(raw_input)
    file_path = extract_file_path(raw)
    if raw is None or file_path is None:
        return None
    resolved = resolve_file_path(cwd, file_path)

    if tool_name == "Edit":
        old_str = next((raw[k] for k in ("old_str", "oldStr") if isinstance(raw.get(k), str)), None)
        new_str = next((raw[k] for k in ("new_str", "newStr") if isinstance(raw.get(k), str)), None)
        if old_str is None or new_str is None:
            return None
        if old_str:
            current = _read_small_file(resolved.abs_path)
            if current is not None and current.count(old_str) == 1:
                return FileEditToolCallContent(
                    type="diff",
                    path=resolved.label,
                    old_text=current,
                    new_text=current.replace(old_str, new_str, 1),
                )
        return FileEditToolCallContent(
            type="diff", path=resolved.label, old_text=old_str, new_text=new_str
        )

    if tool_name == "Write":
        new_text = next((raw[k] for k in ("content", "text") if isinstance(raw.get(k), str)), None)
        if new_text is None:
            return None
        return FileEditToolCallContent(
            type="diff",
            path=resolved.label,
            old_text=_read_small_file(resolved.abs_path),
            new_text=new_text,
        )

    return None


def build_permission_content(
    tool_name: str,
    risk: str,
    raw_input: Any,
    cwd: str,
    plan_markdown: str | None = None,
    debug: bool = False,
) -> list[Any]:
    """Content of the tool call shown while asking for permission."""
    if tool_name == EXIT_SPEC_MODE_TOOL and plan_markdown:
        return [text_content(plan_markdown)]

    content: list[Any] = []
    diff = build_diff_content(tool_name, raw_input, cwd)
    if diff is not None:
        content.append(diff)
    content.append(text_content(format_details_markdown(tool_name, risk, raw_input, debug)))
    return content
