"""Stdio isolation for the ACP agent.

When the agent speaks JSON-RPC over stdio, stdout must be reserved
exclusively for protocol messages. Any log output or stray print on stdout
corrupts the protocol and causes JSON parse errors on the client side.

This module only imports the standard library so it can be loaded before
anything that might write to stdout.
"""

from __future__ import annotations

import io
import json
import logging
import sys
import threading

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILTERED_PREFIX = "[stdout-filtered]"


class JsonRpcStdoutFilter(io.TextIOBase):
    """A stdout filter that only allows valid JSON-RPC messages through.

    Any content that is not a valid JSON object starting with '{' is
    redirected to stderr with a ``[stdout-filtered]`` prefix.
    """

    def __init__(self, real_stdout: io.TextIOBase, stderr: io.TextIOBase) -> None:
        super().__init__()
        self._real_stdout = real_stdout
        self._stderr = stderr
        self._lock = threading.Lock()
        self._buffer = ""

    def write(self, data: str) -> int:
        """Write data, filtering non-JSON content to stderr."""
        if not data:
            return 0

        with self._lock:
            self._buffer += data

            # Process complete lines
            while "\n" in self._buffer:
                line, self._buffer = self._buffer.split("\n", 1)
                self._process_line(line)
            return len(data)

    def _process_line(self, line: str) -> None:
        """Process a single line, routing to stdout or stderr."""
        stripped = line.strip()

        # Empty lines are dropped; JSON-RPC readers reject them
        if not stripped:
            return

        if stripped.startswith("{"):
            try:
                json.loads(stripped)
            except json.JSONDecodeError:
                pass
            else:
                # Valid JSON-RPC message, written without extra whitespace
                self._real_stdout.write(stripped + "\n")
                self._real_stdout.flush()
                return

        # Non-JSON content goes to stderr with a marker
        self._stderr.write(f"{FILTERED_PREFIX} {line}\n")
        self._stderr.flush()

    def flush(self) -> None:
        """Flush both streams; a partial line goes to stderr."""
        with self._lock:
            # A remaining partial line is never valid protocol output
            if self._buffer:
                self._stderr.write(f"{FILTERED_PREFIX} {self._buffer}\n")
                self._buffer = ""
            self._real_stdout.flush()
            self._stderr.flush()

    def fileno(self) -> int:
        """Return the file descriptor of the real stdout."""
        return self._real_stdout.fileno()

    @property
    def encoding(self) -> str:  # type: ignore[override]
        return getattr(self._real_stdout, "encoding", "utf-8")


def install_stdout_filter() -> None:
    """Install the JSON-RPC stdout filter.

    This MUST be called before ANY imports that might write to stdout.
    """
    if isinstance(sys.stdout, JsonRpcStdoutFilter):
        return
    if hasattr(sys.stdout, "buffer"):
        sys.stdout = JsonRpcStdoutFilter(sys.stdout, sys.stderr)  # type: ignore[assignment]


def configure_stdio_safe_logging(debug: bool = False) -> None:
    """Route ALL logging to stderr, keeping stdout clean for JSON-RPC.

    1. Removes every existing handler from every logger
    2. Sets up the root logger to ONLY write to stderr
    3. Makes every logger propagate to root
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger_instance = logging.getLogger(logger_name)
        for handler in logger_instance.handlers[:]:
            logger_instance.removeHandler(handler)
        logger_instance.propagate = True

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(stderr_handler)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)


def install_stdio_guards(debug: bool = False) -> None:
    """Order matters: the stdout filter first, then logging to stderr."""
    install_stdout_filter()
    configure_stdio_safe_logging(debug)
