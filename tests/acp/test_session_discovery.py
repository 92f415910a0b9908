"""Tests for stored-session discovery, history replay and transcripts."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest

from droid_acp.acp.replay import build_transcript, replay_history_file, replay_messages
from droid_acp.acp.session_discovery import (
    encode_cwd,
    list_sessions,
    read_session_header,
    resolve_session_path,
    session_has_messages,
)
from droid_acp.acp.text import derive_title, sanitize_history_text, sanitize_session_title

# =============================================================================
# Test Fixtures
# =============================================================================


def user(text: str) -> dict[str, Any]:
    return {"type": "message", "message": {"role": "user", "content": [{"type": "text", "text": text}]}}


def assistant(text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def write_session(
    sessions_dir: Path,
    cwd: str,
    session_id: str,
    records: list[dict[str, Any]],
    title: str | None = "A session",
    mtime: float | None = None,
) -> Path:
    directory = sessions_dir / encode_cwd(cwd)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    header = {"type": "session_start", "cwd": cwd, "title": title}
    path.write_text("\n".join(json.dumps(r) for r in [header, *records]) + "\n")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


# =============================================================================
# Discovery
# =============================================================================


class TestHeaders:
    def test_encode_cwd(self) -> None:
        assert encode_cwd("/home/user/project") == "-home-user-project"

    def test_header(self, sessions_dir: Path) -> None:
        path = write_session(sessions_dir, "/repo", "s1", [user("hi")], title="Fix bug")

        header = read_session_header(path)

        assert header is not None
        assert (header.cwd, header.title) == ("/repo", "Fix bug")
        assert session_has_messages(path)

    def test_header_only_session_is_empty(self, sessions_dir: Path) -> None:
        path = write_session(sessions_dir, "/repo", "s1", [])

        assert not session_has_messages(path)

    def test_not_a_session_file(self, tmp_path: Path) -> None:
        path = tmp_path / "x.jsonl"
        path.write_text('{"type": "message"}\n')

        assert read_session_header(path) is None
        assert read_session_header(tmp_path / "missing.jsonl") is None


class TestListSessions:
    def test_sessions_of_cwd_newest_first(self, sessions_dir: Path) -> None:
        write_session(sessions_dir, "/repo", "old", [user("a")], mtime=1_000_000)
        write_session(sessions_dir, "/repo", "new", [user("b")], mtime=2_000_000)
        write_session(sessions_dir, "/repo", "empty", [], mtime=3_000_000)
        write_session(sessions_dir, "/other", "elsewhere", [user("c")])

        page, cursor = list_sessions(sessions_dir, cwd="/repo")

        assert [r.session_id for r in page] == ["new", "old"]
        assert cursor is None
        assert page[0].cwd == "/repo"
        assert page[0].updated_at is not None

    def test_include_empty(self, sessions_dir: Path) -> None:
        write_session(sessions_dir, "/repo", "empty", [])

        page, _ = list_sessions(sessions_dir, cwd="/repo", include_empty=True)

        assert [r.session_id for r in page] == ["empty"]

    def test_preferred_cwd_first(self, sessions_dir: Path) -> None:
        write_session(sessions_dir, "/a", "s-a", [user("x")], mtime=2_000_000)
        write_session(sessions_dir, "/b", "s-b", [user("x")], mtime=1_000_000)

        page, _ = list_sessions(sessions_dir, preferred_cwd="/b")

        assert [r.session_id for r in page] == ["s-b", "s-a"]

    def test_pagination(self, sessions_dir: Path) -> None:
        for i in range(5):
            write_session(sessions_dir, "/repo", f"s{i}", [user("x")], mtime=1_000_000 + i)

        first, cursor = list_sessions(sessions_dir, cwd="/repo", page_size=2)
        second, cursor2 = list_sessions(sessions_dir, cwd="/repo", cursor=cursor, page_size=2)
        last, cursor3 = list_sessions(sessions_dir, cwd="/repo", cursor=cursor2, page_size=2)

        assert [r.session_id for r in first] == ["s4", "s3"]
        assert cursor == "2"
        assert [r.session_id for r in second] == ["s2", "s1"]
        assert [r.session_id for r in last] == ["s0"]
        assert cursor3 is None

    def test_bad_cursor_starts_over(self, sessions_dir: Path) -> None:
        write_session(sessions_dir, "/repo", "s1", [user("x")])

        page, _ = list_sessions(sessions_dir, cwd="/repo", cursor="garbage")

        assert [r.session_id for r in page] == ["s1"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert list_sessions(tmp_path / "nothing") == ([], None)

    def test_resolve_session_path(self, sessions_dir: Path) -> None:
        """Files recorded under another cwd are still found."""
        path = write_session(sessions_dir, "/recorded", "s1", [user("x")])

        assert resolve_session_path(sessions_dir, "s1", "/recorded") == path
        assert resolve_session_path(sessions_dir, "s1", "/editor/cwd") == path
        assert resolve_session_path(sessions_dir, "nope", "/recorded") is None


# =============================================================================
# Replay
# =============================================================================


class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_file(self, runtime, make_session, sessions_dir, sent_updates) -> None:
        """Stored messages come back as user and agent chunks, without injected context."""
        session = make_session()
        path = write_session(
            sessions_dir,
            "/repo",
            "s1",
            [
                user("Fix it<system-reminder>be nice</system-reminder>"),
                assistant("Done."),
                {"type": "todo_state", "todos": []},
                {"type": "message", "message": {"role": "tool", "content": []}},
            ],
        )

        count = await replay_history_file(runtime, session, path)

        assert count == 2
        first, second = sent_updates()
        assert first.session_update == "user_message_chunk"
        assert first.content.text == "Fix it"
        assert second.session_update == "agent_message_chunk"
        assert second.content.text == "Done."

    @pytest.mark.asyncio
    async def test_replay_user_image(self, runtime, make_session, sent_updates) -> None:
        session = make_session()
        message = {
            "role": "user",
            "content": [{"type": "image", "source": {"data": "QUJD"}, "mediaType": "image/png"}],
        }

        assert await replay_messages(runtime, session, [message, "junk"]) == 1

        [update] = sent_updates()
        assert update.content.type == "image"
        assert update.content.data == "QUJD"


class TestTranscript:
    def test_transcript(self, sessions_dir: Path) -> None:
        path = write_session(
            sessions_dir,
            "/repo",
            "s1",
            [
                user('Go on\n\n<context ref="session_history">\nUser: old\n</context>'),
                assistant("Sure."),
                user('Again <context ref="session_history">User: old</context>'),
            ],
        )

        transcript = build_transcript(path, max_chars=10_000)

        assert transcript == (
            "[Previous session transcript]\nUser: old\n\nUser: Go on\n\nAssistant: Sure.\n\nUser: Again"
        )

    def test_long_transcript_keeps_tail(self, sessions_dir: Path) -> None:
        path = write_session(sessions_dir, "/repo", "s1", [user("a" * 50), assistant("the end")])

        assert build_transcript(path, max_chars=7) == "the end"


# =============================================================================
# Text helpers
# =============================================================================


class TestText:
    def test_sanitize_history_text(self) -> None:
        raw = 'Hello<context ref="x">secret</context>\n\n\n\nBye<system-reminder>r'

        assert sanitize_history_text(raw) == "Hello\n\nBye"

    def test_sanitize_session_title(self) -> None:
        assert sanitize_session_title("User:   Fix   the <context>bug") == "Fix the bug"

    def test_derive_title(self) -> None:
        assert derive_title("\n  \nFirst line\nsecond") == "First line"
        assert derive_title("") is None
        long_title = derive_title("x" * 100)
        assert long_title is not None
        assert len(long_title) == 80
        assert long_title.endswith("...")
