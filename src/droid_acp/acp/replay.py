"""Session history replay and transcripts.

Loading a stored session replays its messages to the editor as
``user_message_chunk`` / ``agent_message_chunk`` updates. Compacting a session
instead condenses the history into a plain transcript.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from acp import (  # type: ignore[import-untyped]
    image_block,
    text_block,
    update_agent_message,
    update_user_message,
)

from .session_discovery import stream_session_records
from .text import sanitize_history_text

if TYPE_CHECKING:
    from .runtime import BridgeRuntime
    from .session import Session

logger = logging.getLogger(__name__)

_REPLAYED_ROLES = frozenset({"user", "assistant", "system"})
_SESSION_HISTORY = re.compile(
    r"<context[^>]*\sref=[\"']session_history[\"'][^>]*>([\s\S]*?)</context>", re.IGNORECASE
)


def _message_of(record: dict[str, Any]) -> dict[str, Any] | None:
    if record.get("type") != "message":
        return None
    message = record.get("message")
    return message if isinstance(message, dict) else None


async def replay_history_file(runtime: BridgeRuntime, session: Session, path: Path) -> int:
    """Replay a session file. Returns the number of messages replayed."""
    logger.info(f"Replaying session history from {path}")
    count = 0
    for record in stream_session_records(path):
        message = _message_of(record)
        if message is not None and await replay_message(runtime, session, message):
            count += 1
    return count


async def replay_messages(runtime: BridgeRuntime, session: Session, messages: list[Any]) -> int:
    """Replay the messages returned by droid initialization."""
    logger.info(f"Replaying {len(messages)} messages from the init result")
    count = 0
    for message in messages:
        if isinstance(message, dict) and await replay_message(runtime, session, message):
            count += 1
    return count


async def replay_message(runtime: BridgeRuntime, session: Session, message: dict[str, Any]) -> bool:
    role = message.get("role")
    content = message.get("content")
    if role not in _REPLAYED_ROLES or not isinstance(content, list):
        return False

    if role == "user":
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                cleaned = sanitize_history_text(str(block.get("text") or ""))
                if cleaned:
                    await runtime.session_update(session, update_user_message(text_block(cleaned)))
            elif block_type == "image":
                source = block.get("source")
                data = source.get("data") if isinstance(source, dict) else None
                mime_type = block.get("media_type") or block.get("mediaType")
                if isinstance(data, str) and data and isinstance(mime_type, str):
                    await runtime.session_update(
                        session, update_user_message(image_block(data, mime_type))
                    )
        return True

    if role == "assistant":
        parts = [
            sanitize_history_text(b["text"])
            for b in content
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        text = "".join(p for p in parts if p)
        if text:
            await runtime.session_update(session, update_agent_message(text_block(text)))
    return True


def _text_of(content: list[Any]) -> str:
    return "".join(
        b.get("text") or ""
        for b in content
        if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
    )


def build_transcript(path: Path, max_chars: int) -> str:
    """``User:`` / ``Assistant:`` transcript of a session file.

    History carried over from an earlier session is included once, as
    ``[Previous session transcript]``. Longer transcripts keep their tail.
    """
    lines: list[str] = []
    included_history = False

    for record in stream_session_records(path):
        message = _message_of(record)
        if message is None:
            continue
        role = message.get("role")
        content = message.get("content")
        if role not in ("user", "assistant") or not isinstance(content, list):
            continue
        raw_text = _text_of(content)

        if role == "user":
            match = _SESSION_HISTORY.search(raw_text)
            embedded = match.group(1).strip() if match else ""
            if not included_history and embedded:
                cleaned_history = sanitize_history_text(embedded)
                if cleaned_history:
                    included_history = True
                    lines.append(f"[Previous session transcript]\n{cleaned_history}")

            cleaned = sanitize_history_text(_SESSION_HISTORY.sub("", raw_text))
            if cleaned:
                lines.append(f"User: {cleaned}")
            continue

        cleaned = sanitize_history_text(raw_text)
        if cleaned:
            lines.append(f"Assistant: {cleaned}")

    transcript = "\n\n".join(lines).strip()
    if len(transcript) <= max_chars:
        return transcript
    return transcript[len(transcript) - max_chars :]
