"""Subprocess transport for the droid CLI.

Launches ``droid exec`` in stream-jsonrpc mode and communicates via
newline-delimited JSON over stdin/stdout. Stderr is logged, never parsed.

Lifecycle:
    transport = DroidTransport(cwd, config)
    init = await transport.start()        # spawn + droid.initialize_session
    transport.set_handler(handler)        # route notifications/requests/exit
    await transport.send_user_message("hello")
    transport.stop()                      # SIGTERM now, SIGKILL after 5s

A transport is single-use. Restarting a session means building a new one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import uuid
from enum import Enum
from typing import Any

from ..config import BridgeConfig
from ..errors import DroidInitError, DroidInitTimeoutError, DroidSpawnError
from ..protocol.messages import DroidMethod, DroidRequest, InitSessionResult
from .protocols import DroidEventHandler
from .reconciler import MessageReconciler

logger = logging.getLogger(__name__)

# Environment variable through which the droid picks up the web-search proxy
PROXY_BASE_URL_ENV = "FACTORY_API_BASE_URL"

KILL_TIMEOUT = 5.0

# Tool results can carry whole files on a single line
STREAM_LIMIT = 16 * 1024 * 1024

# Drain budget for queued output when the process exits
EXIT_DRAIN_TIMEOUT = 5.0


class TransportState(str, Enum):
    """Subprocess state machine."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


class DroidTransport:
    """Owns one droid subprocess and its three pipes."""

    def __init__(
        self,
        cwd: str,
        config: BridgeConfig | None = None,
        *,
        resume_session_id: str | None = None,
        extra_env: dict[str, str] | None = None,
        command: list[str] | None = None,
    ) -> None:
        """Create a transport.

        Args:
            cwd: Working directory for the droid.
            config: Bridge configuration (executable, timeouts, reasoning effort).
            resume_session_id: Droid session id to resume with ``-s``.
            extra_env: Additional environment variables for the subprocess.
            command: Full command line, replacing the droid invocation (tests).
        """
        self.cwd = cwd
        self.config = config or BridgeConfig()
        self.resume_session_id = resume_session_id
        self.extra_env = dict(extra_env or {})
        self._command_override = command
        self._machine_id = str(uuid.uuid4())

        self._state = TransportState.CREATED
        self._process: asyncio.subprocess.Process | None = None
        self._reconciler = MessageReconciler(
            self._write_line, grace_period=self.config.idle_grace_period
        )
        self._handler: DroidEventHandler | None = None
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._reaper_task: asyncio.Task[None] | None = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._reconciler.session_id

    @property
    def is_running(self) -> bool:
        return (
            self._state == TransportState.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def reconciler(self) -> MessageReconciler:
        return self._reconciler

    def build_command(self) -> list[str]:
        """Command line used to launch the droid."""
        if self._command_override is not None:
            return list(self._command_override)

        cmd = [
            self.config.droid_executable,
            "exec",
            "--input-format",
            "stream-jsonrpc",
            "--output-format",
            "stream-jsonrpc",
            "--cwd",
            self.cwd,
        ]
        if self.resume_session_id:
            cmd += ["-s", self.resume_session_id]
        if self.config.reasoning_effort:
            cmd += ["-r", self.config.reasoning_effort]
        return cmd

    def build_env(self) -> dict[str, str]:
        return {**os.environ, "FORCE_COLOR": "0", **self.extra_env}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def set_handler(self, handler: DroidEventHandler | None) -> None:
        self._handler = handler
        self._reconciler.set_handler(handler)

    async def start(self) -> InitSessionResult:
        """Spawn the droid and perform the initialization handshake.

        Raises:
            DroidSpawnError: The executable could not be launched.
            DroidInitError: The droid rejected initialization or exited.
            DroidInitTimeoutError: No initialization response in time.
        """
        if self._state != TransportState.CREATED:
            raise RuntimeError(f"Transport already used (state={self._state.value})")
        self._state = TransportState.STARTING

        cmd = self.build_command()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd if os.path.isdir(self.cwd) else None,
                env=self.build_env(),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._state = TransportState.EXITED
            raise DroidSpawnError(f"Failed to start droid ({cmd[0]}): {e}") from e

        logger.info(f"Launched droid: {' '.join(cmd)} (pid={self._process.pid})")

        init_future = self._reconciler.expect_init()
        self._reconciler.start()
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

        params: dict[str, Any] = {"machineId": self._machine_id, "cwd": self.cwd}
        if self.resume_session_id:
            params["sessionId"] = self.resume_session_id
        await self._send_request(DroidMethod.INITIALIZE_SESSION.value, params)

        try:
            result = await asyncio.wait_for(
                asyncio.shield(init_future), timeout=self.config.init_timeout
            )
        except TimeoutError:
            self.stop()
            raise DroidInitTimeoutError(
                f"Droid init timeout after {self.config.init_timeout:g}s"
            ) from None
        except DroidInitError:
            self.stop()
            raise

        self._state = TransportState.RUNNING
        logger.info(f"Droid session initialized: {result.session_id}")
        return result

    def stop(self) -> None:
        """Close stdin and terminate the droid without waiting for it.

        A background reaper kills the process if it is still alive after
        five seconds.
        """
        if self._process is None or self._state in (
            TransportState.STOPPING,
            TransportState.EXITED,
        ):
            return

        self._state = TransportState.STOPPING
        process = self._process

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            self._reaper_task = asyncio.create_task(self._reap(process))

    async def wait_closed(self) -> None:
        """Wait until the exit has been fully processed."""
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
        except TimeoutError:
            logger.warning(f"Droid did not exit in {KILL_TIMEOUT:g}s, killing (pid={process.pid})")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, method: str, params: dict[str, Any]) -> None:
        """Send a request; silently dropped when stdin is unavailable."""
        await self._send_request(method, params)

    async def send_user_message(
        self, text: str, images: list[dict[str, str]] | None = None
    ) -> None:
        if not self.session_id:
            return
        params: dict[str, Any] = {"sessionId": self.session_id, "text": text}
        if images:
            params["images"] = images
        await self.send(DroidMethod.ADD_USER_MESSAGE.value, params)

    async def send_message(self, text: str) -> None:
        """Send plain text as a user message."""
        await self.send_user_message(text)

    async def set_mode(self, autonomy_level: str) -> None:
        if not self.session_id:
            return
        await self.send(
            DroidMethod.UPDATE_SESSION_SETTINGS.value,
            {"sessionId": self.session_id, "autonomyLevel": autonomy_level},
        )

    async def set_model(self, model_id: str) -> None:
        if not self.session_id:
            return
        await self.send(
            DroidMethod.UPDATE_SESSION_SETTINGS.value,
            {"sessionId": self.session_id, "modelId": model_id},
        )

    async def _send_request(self, method: str, params: dict[str, Any]) -> None:
        await self._write_line(DroidRequest(method=method, params=params).to_line())
        logger.debug(f"Sent: {method}")

    async def _write_line(self, line: str) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            return
        try:
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Droid stdin closed while writing: {e}")

    # =========================================================================
    # Background readers
    # =========================================================================

    async def _read_stdout(self) -> None:
        """Queue every stdout line for ordered processing."""
        if not self._process or not self._process.stdout:
            return

        while True:
            try:
                line = await self._process.stdout.readline()
            except (asyncio.LimitOverrunError, ValueError) as e:
                logger.warning(f"Dropping oversized droid output: {e}")
                continue
            if not line:
                # EOF - process exited
                break
            self._reconciler.feed(line.decode("utf-8", errors="replace"))

    async def _read_stderr(self) -> None:
        """Read and log stderr output."""
        if not self._process or not self._process.stderr:
            return

        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.info(f"[droid stderr] {line.decode('utf-8', errors='replace').rstrip()}")

    async def _watch_exit(self) -> None:
        if self._process is None:
            return
        returncode = await self._process.wait()

        if self._stdout_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stdout_task
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._reconciler.drain(), timeout=EXIT_DRAIN_TIMEOUT)
        await self._reconciler.stop()

        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task

        self._state = TransportState.EXITED
        logger.info(f"Droid exit: {returncode} (pid={self._process.pid})")

        if self._handler is not None:
            try:
                await self._handler.handle_exit(returncode)
            except Exception as e:
                logger.exception(f"Droid exit handler failed: {e}")
