"""Tests for the JSON-RPC stdout filter."""

from __future__ import annotations

import io

from droid_acp.stdio import FILTERED_PREFIX, JsonRpcStdoutFilter


class _Stream(io.StringIO):
    encoding = "utf-8"  # type: ignore[assignment]


def make_filter() -> tuple[JsonRpcStdoutFilter, io.StringIO, io.StringIO]:
    stdout, stderr = _Stream(), _Stream()
    return JsonRpcStdoutFilter(stdout, stderr), stdout, stderr


class TestJsonRpcStdoutFilter:
    def test_json_lines_pass_through(self) -> None:
        """Complete JSON objects reach stdout."""
        stream, stdout, stderr = make_filter()

        stream.write('{"jsonrpc": "2.0", "method": "session/update"}\n')

        assert stdout.getvalue() == '{"jsonrpc": "2.0", "method": "session/update"}\n'
        assert stderr.getvalue() == ""

    def test_plain_text_is_diverted(self) -> None:
        """Stray prints go to stderr with a marker."""
        stream, stdout, stderr = make_filter()

        stream.write("hello from a library\n")

        assert stdout.getvalue() == ""
        assert stderr.getvalue() == f"{FILTERED_PREFIX} hello from a library\n"

    def test_invalid_json_object_is_diverted(self) -> None:
        """Text that only looks like JSON is diverted too."""
        stream, stdout, stderr = make_filter()

        stream.write("{not really json}\n")

        assert stdout.getvalue() == ""
        assert FILTERED_PREFIX in stderr.getvalue()

    def test_partial_writes_are_buffered(self) -> None:
        """A line split across writes is emitted once complete."""
        stream, stdout, _ = make_filter()

        stream.write('{"id": ')
        assert stdout.getvalue() == ""
        stream.write("1}\n")

        assert stdout.getvalue() == '{"id": 1}\n'

    def test_blank_lines_are_dropped(self) -> None:
        stream, stdout, stderr = make_filter()

        stream.write("\n\n")

        assert stdout.getvalue() == ""
        assert stderr.getvalue() == ""

    def test_flush_diverts_partial_line(self) -> None:
        """An unterminated line is sent to stderr on flush."""
        stream, stdout, stderr = make_filter()

        stream.write("progress 50%")
        stream.flush()

        assert stdout.getvalue() == ""
        assert stderr.getvalue() == f"{FILTERED_PREFIX} progress 50%\n"

    def test_encoding_of_real_stdout(self) -> None:
        stream, _, _ = make_filter()
        assert stream.encoding == "utf-8"
