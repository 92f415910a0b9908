"""Text helpers shared by history replay, titles and tool presentation."""

from __future__ import annotations

import re
from datetime import datetime

_REMINDER_BLOCK = re.compile(r"<system-reminder>[\s\S]*?(</system-reminder>|$)", re.IGNORECASE)
_CONTEXT_BLOCK = re.compile(r"<context[^>]*>[\s\S]*?(</context>|$)", re.IGNORECASE)
_CONTEXT_TAG = re.compile(r"</?context[^>]*>", re.IGNORECASE)
_REMINDER_TAG = re.compile(r"</?system-reminder>", re.IGNORECASE)
_SPEAKER_PREFIX = re.compile(r"^\s*(User|Assistant)\s*:\s*", re.IGNORECASE)
_DATA_URL = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)

TITLE_MAX_LENGTH = 80


def sanitize_history_text(text: str) -> str:
    """Strip injected reminder and context blocks from stored user text."""
    out = _REMINDER_BLOCK.sub("", text)
    out = _CONTEXT_BLOCK.sub("", out)
    out = _CONTEXT_TAG.sub("", out)
    out = _REMINDER_TAG.sub("", out)
    out = out.replace("\r\n", "\n")
    out = re.sub(r"\n{3,}", "\n\n", out)
    return out.strip()


def sanitize_session_title(title: str) -> str:
    out = _REMINDER_BLOCK.sub("", title)
    out = _CONTEXT_TAG.sub("", out)
    out = _REMINDER_TAG.sub("", out)
    out = _SPEAKER_PREFIX.sub("", out)
    return re.sub(r"\s+", " ", out).strip()


def derive_title(text: str) -> str | None:
    """Title from the first non-empty line of a prompt, or None."""
    for line in text.splitlines():
        title = sanitize_session_title(line)
        if title:
            if len(title) > TITLE_MAX_LENGTH:
                return title[: TITLE_MAX_LENGTH - 3] + "..."
            return title
    return None


def format_timestamp(iso_timestamp: str) -> str:
    """Render an ISO timestamp as local ``YYYY-MM-DD HH:MM:SS``."""
    try:
        parsed = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except ValueError:
        return iso_timestamp
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone()
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def safe_code_fence(text: str) -> str:
    """Break triple backticks so text cannot close a surrounding fence."""
    return text.replace("```", "``​`")


def normalize_base64_data_url(data: str, fallback_mime_type: str) -> tuple[str, str]:
    """Split a possible ``data:`` URL into ``(mime_type, base64)``.

    Whitespace inside the base64 payload is removed.
    """
    trimmed = data.strip()
    match = _DATA_URL.match(trimmed)
    if match:
        mime_type = match.group(1).strip() or fallback_mime_type
        return mime_type, re.sub(r"\s+", "", match.group(2).strip())
    return fallback_mime_type, re.sub(r"\s+", "", trimmed)
