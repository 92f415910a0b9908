"""Droid session discovery from the filesystem.

The droid keeps one JSONL file per session under
``<factory_dir>/sessions/<encoded cwd>/<session id>.jsonl``. The first line
is a ``session_start`` header carrying the cwd and title; every further line
is a record such as a ``message``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
HEADER_SCAN_BYTES = 8192


@dataclass(frozen=True)
class SessionRecord:
    """A stored droid session.

    Attributes:
        session_id: Droid session id (file name without ``.jsonl``)
        cwd: Working directory from the header
        title: Title from the header, if any
        updated_at: ISO timestamp of the file's last modification
        path: Path to the JSONL file
    """

    session_id: str
    cwd: str
    title: str | None
    updated_at: str | None
    path: Path


@dataclass(frozen=True)
class SessionHeader:
    cwd: str | None
    title: str | None


def encode_cwd(cwd: str) -> str:
    """Directory name the droid uses for ``cwd``.

    Example:
        >>> encode_cwd("/home/user/project")
        '-home-user-project'
    """
    return cwd.replace("/", "-").replace("\\", "-")


def _read_head(path: Path) -> bytes | None:
    try:
        with path.open("rb") as f:
            return f.read(HEADER_SCAN_BYTES)
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")
        return None


def read_session_header(path: Path) -> SessionHeader | None:
    """The ``session_start`` header of a session file, or None."""
    head = _read_head(path)
    if not head:
        return None
    lines = head.decode("utf-8", errors="replace").splitlines()
    first_line = lines[0].strip() if lines else ""
    if not first_line:
        return None
    try:
        parsed = json.loads(first_line)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or parsed.get("type") != "session_start":
        return None
    cwd = parsed.get("cwd")
    title = parsed.get("title")
    return SessionHeader(
        cwd=cwd if isinstance(cwd, str) else None,
        title=title if isinstance(title, str) else None,
    )


def session_has_messages(path: Path) -> bool:
    """Whether anything follows the header line."""
    head = _read_head(path)
    if not head:
        return False
    try:
        size = path.stat().st_size
    except OSError:
        return False
    newline = head.find(b"\n")
    if newline == -1:
        return size > len(head)
    if head[newline + 1 :].strip():
        return True
    return size > newline + 1


def stream_session_records(path: Path) -> Iterator[dict[str, Any]]:
    """Parsed records of a session file, skipping blank and malformed lines."""
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                record = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                yield record


def resolve_session_path(sessions_dir: Path, session_id: str, cwd: str) -> Path | None:
    """Find the file of ``session_id``, looking under ``cwd`` first."""
    direct = sessions_dir / encode_cwd(cwd) / f"{session_id}.jsonl"
    if direct.exists():
        return direct

    # The editor may pass a different cwd than the droid recorded
    try:
        dirs = [d for d in sessions_dir.iterdir() if d.is_dir()]
    except OSError:
        return None
    for directory in dirs:
        candidate = directory / f"{session_id}.jsonl"
        if candidate.exists():
            return candidate
    return None


def _mtime_iso(path: Path) -> str | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, UTC).isoformat()
    except OSError:
        return None


def _parse_cursor(cursor: str | None) -> int:
    if not cursor:
        return 0
    try:
        offset = int(cursor, 10)
    except ValueError:
        return 0
    return max(offset, 0)


def list_sessions(
    sessions_dir: Path,
    cwd: str | None = None,
    cursor: str | None = None,
    preferred_cwd: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    include_empty: bool = False,
) -> tuple[list[SessionRecord], str | None]:
    """One page of stored sessions and the cursor of the next page.

    Sessions of ``preferred_cwd`` come first, then newest first. The cursor
    is the decimal offset of the next page, or None on the last page.
    """
    if cwd:
        scan_dirs = [sessions_dir / encode_cwd(cwd)]
    else:
        try:
            scan_dirs = [d for d in sessions_dir.iterdir() if d.is_dir()]
        except OSError:
            return [], None

    records: list[SessionRecord] = []
    for directory in scan_dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.jsonl")):
            header = read_session_header(path)
            session_cwd = (header.cwd if header else None) or cwd or ""
            if not session_cwd:
                continue
            if cwd and session_cwd != cwd:
                continue
            if not include_empty and not session_has_messages(path):
                continue
            records.append(
                SessionRecord(
                    session_id=path.stem,
                    cwd=session_cwd,
                    title=header.title if header else None,
                    updated_at=_mtime_iso(path),
                    path=path,
                )
            )

    records.sort(key=lambda r: r.updated_at or "", reverse=True)
    if preferred_cwd:
        records.sort(key=lambda r: r.cwd != preferred_cwd)

    offset = _parse_cursor(cursor)
    page = records[offset : offset + page_size]
    next_cursor = str(offset + page_size) if offset + page_size < len(records) else None
    return page, next_cursor
