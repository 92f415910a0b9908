"""ACP Agent implementation using the official SDK pattern.

This module exposes droid sessions to ACP editors. It uses the official ACP
Python SDK's Agent interface for protocol handling; the session work itself
lives in :mod:`.lifecycle` and runs against a shared :class:`BridgeRuntime`.

Key pattern from SDK examples:
1. Agent stores connection via on_connect()
2. Agent uses conn.session_update() to stream updates
3. run_agent() handles transport setup for stdio
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from acp import PROTOCOL_VERSION, Agent, Client, RequestError  # type: ignore[import-untyped]
from acp.schema import (  # type: ignore[import-untyped]
    AgentCapabilities,
    AuthenticateResponse,
    AuthMethod,
    Implementation,
    InitializeResponse,
    ListSessionsResponse,
    LoadSessionResponse,
    NewSessionResponse,
    PromptCapabilities,
    PromptResponse,
    ResumeSessionResponse,
    SessionCapabilities,
    SessionInfo,
    SetSessionModelResponse,
    SetSessionModeResponse,
)

from ..config import BridgeConfig
from ..droid.transport import PROXY_BASE_URL_ENV
from ..errors import BridgeError, ExperimentalFeatureDisabledError, TransportError
from . import lifecycle
from .modes import build_mode_state, build_model_state
from .replay import replay_history_file, replay_messages
from .runtime import BridgeRuntime
from .session_discovery import list_sessions, read_session_header, resolve_session_path
from .slash_commands import SlashCommandHandler, create_available_commands_update
from .text import sanitize_session_title

logger = logging.getLogger(__name__)

AGENT_NAME = "droid-acp"
AGENT_TITLE = "Factory Droid"
AUTH_METHOD_ID = "factory-api-key"


def _agent_version() -> str:
    try:
        return version(AGENT_NAME)
    except PackageNotFoundError:
        return "0.0.0"


def to_request_error(error: BridgeError) -> RequestError:
    """Map a bridge error to the JSON-RPC error sent to the editor."""
    details = {"message": str(error)}
    if isinstance(error, TransportError):
        return RequestError.internal_error(details)
    return RequestError.invalid_params(details)


@asynccontextmanager
async def _request_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except BridgeError as e:
        logger.warning(f"{operation} failed: {e}")
        raise to_request_error(e) from e


class DroidAgent(Agent):
    """ACP Agent implementation backed by droid subprocesses.

    Every ACP session is one droid session; the droid session id is used as
    the ACP session id.

    Usage:
        # For stdio transport
        from acp import run_agent
        await run_agent(DroidAgent())
    """

    def __init__(
        self, config: BridgeConfig | None = None, runtime: BridgeRuntime | None = None
    ) -> None:
        self.runtime = runtime or BridgeRuntime(config or BridgeConfig.from_env())
        if self.runtime.slash_commands is None:
            self.runtime.slash_commands = SlashCommandHandler(self.runtime)

    @property
    def config(self) -> BridgeConfig:
        return self.runtime.config

    def on_connect(self, conn: Client) -> None:
        """Store the connection for sending updates.

        This is called by the SDK when a client connects.
        """
        self.runtime.attach_connection(conn)
        logger.info("ACP client connected")

    def _require_experiment(self, action: str) -> None:
        if not self.config.experiment_sessions:
            raise to_request_error(ExperimentalFeatureDisabledError(action))

    # =========================================================================
    # Handshake
    # =========================================================================

    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: Any = None,
        client_info: Implementation | None = None,
        **kwargs: Any,
    ) -> InitializeResponse:
        """Handle initialize request from client."""
        client_name = getattr(client_info, "name", None) or "unknown"
        logger.info(f"ACP initialized: protocol_version={protocol_version}, client={client_name}")

        sessions_enabled = self.config.experiment_sessions
        session_capabilities = (
            SessionCapabilities.model_validate({"list": {}, "resume": {}})
            if sessions_enabled
            else SessionCapabilities()
        )

        return InitializeResponse(
            protocol_version=PROTOCOL_VERSION,
            agent_info=Implementation(name=AGENT_NAME, title=AGENT_TITLE, version=_agent_version()),
            agent_capabilities=AgentCapabilities(
                load_session=sessions_enabled,
                prompt_capabilities=PromptCapabilities(image=True, embedded_context=True),
                session_capabilities=session_capabilities,
            ),
            auth_methods=[
                AuthMethod(
                    id=AUTH_METHOD_ID,
                    name="Factory API Key",
                    description="Set FACTORY_API_KEY environment variable",
                )
            ],
        )

    async def authenticate(self, method_id: str, **kwargs: Any) -> AuthenticateResponse:
        logger.info(f"Auth requested: {method_id}")
        if method_id != AUTH_METHOD_ID:
            raise RequestError.invalid_params({"message": f"Unknown auth method: {method_id}"})
        if not os.environ.get("FACTORY_API_KEY"):
            raise RequestError.auth_required(
                {"message": "FACTORY_API_KEY environment variable is not set"}
            )
        return AuthenticateResponse()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[Any] | None = None,
        **kwargs: Any,
    ) -> NewSessionResponse:
        """Start a droid and register its session."""
        cwd = cwd or os.getcwd()
        logger.info(f"New session in {cwd}")

        async with _request_errors("new_session"):
            transport, init = await lifecycle.start_transport(self.runtime, cwd)
        session = self.runtime.attach(init.session_id, cwd, transport, init)
        self._announce_commands(session.id)

        return NewSessionResponse(
            session_id=session.id,
            modes=build_mode_state(session.mode),
            models=build_model_state(session.available_models, session.model),
        )

    async def load_session(
        self,
        cwd: str,
        mcp_servers: list[Any] | None = None,
        session_id: str = "",
        **kwargs: Any,
    ) -> LoadSessionResponse:
        """Resume a stored droid session and replay its history."""
        self._require_experiment("load")
        request_cwd = cwd or os.getcwd()
        logger.info(f"Load session {session_id} in {request_cwd}")

        existing = self.runtime.get(session_id)
        if existing is not None and existing.is_running:
            return LoadSessionResponse(
                modes=build_mode_state(existing.mode),
                models=build_model_state(existing.available_models, existing.model),
            )
        self._drop(session_id)

        path = resolve_session_path(self.config.sessions_dir, session_id, request_cwd)
        header = read_session_header(path) if path is not None else None
        session_cwd = (header.cwd if header else None) or request_cwd

        async with _request_errors("load_session"):
            transport, init = await lifecycle.start_transport(
                self.runtime, session_cwd, session_id
            )
        if init.session_id != session_id:
            transport.stop()
            raise RequestError.internal_error(
                {
                    "message": f"Failed to load session: expected {session_id} "
                    f"but got {init.session_id}"
                }
            )

        has_init_messages = init.session is not None and isinstance(
            init.session.get("messages"), list
        )
        if path is None and not has_init_messages:
            transport.stop()
            raise RequestError.invalid_params(
                {"message": f"Session history not found for {session_id}"}
            )

        title = sanitize_session_title(header.title) if header and header.title else None
        session = self.runtime.attach(session_id, session_cwd, transport, init, title=title)
        self._announce_commands(session.id)

        if path is not None:
            await replay_history_file(self.runtime, session, path)
        else:
            await replay_messages(self.runtime, session, init.messages)

        return LoadSessionResponse(
            modes=build_mode_state(session.mode),
            models=build_model_state(session.available_models, session.model),
        )

    async def list_sessions(
        self,
        cursor: str | None = None,
        cwd: str | None = None,
        **kwargs: Any,
    ) -> ListSessionsResponse:
        """List sessions from local droid history."""
        self._require_experiment("list")
        logger.info(f"List sessions: cwd={cwd or '<unset>'} cursor={cursor or '<unset>'}")

        records, next_cursor = list_sessions(
            self.config.sessions_dir,
            cwd=cwd,
            cursor=cursor,
            preferred_cwd=cwd or os.getcwd(),
        )
        return ListSessionsResponse(
            sessions=[
                SessionInfo(
                    session_id=r.session_id,
                    cwd=r.cwd,
                    title=sanitize_session_title(r.title) if r.title else None,
                    updated_at=r.updated_at,
                )
                for r in records
            ],
            next_cursor=next_cursor,
        )

    async def resume_session(
        self,
        cwd: str,
        session_id: str,
        mcp_servers: list[Any] | None = None,
        **kwargs: Any,
    ) -> ResumeSessionResponse:
        """Resume a stored droid session without replaying history."""
        self._require_experiment("resume")
        cwd = cwd or os.getcwd()
        logger.info(f"Resume session {session_id} in {cwd}")

        existing = self.runtime.get(session_id)
        if existing is not None and existing.is_running:
            return ResumeSessionResponse(
                modes=build_mode_state(existing.mode),
                models=build_model_state(existing.available_models, existing.model),
            )
        self._drop(session_id)

        async with _request_errors("resume_session"):
            transport, init = await lifecycle.start_transport(self.runtime, cwd, session_id)
        if init.session_id != session_id:
            transport.stop()
            raise RequestError.internal_error(
                {
                    "message": f"Failed to resume session: expected {session_id} "
                    f"but got {init.session_id}"
                }
            )

        session = self.runtime.attach(session_id, cwd, transport, init)
        self._announce_commands(session.id)
        return ResumeSessionResponse(
            modes=build_mode_state(session.mode),
            models=build_model_state(session.available_models, session.model),
        )

    def _drop(self, session_id: str) -> None:
        session = self.runtime.remove(session_id)
        if session is not None:
            session.transport.stop()

    def _announce_commands(self, session_id: str) -> None:
        """Send ``available_commands_update`` once the current response is out."""

        async def announce() -> None:
            await asyncio.sleep(0)
            session = self.runtime.get(session_id)
            if session is not None:
                await self.runtime.session_update(
                    session, create_available_commands_update(self.config.experiment_sessions)
                )

        self.runtime.spawn(announce(), name=f"commands-{session_id}")

    # =========================================================================
    # Turns and settings
    # =========================================================================

    async def prompt(
        self,
        prompt: list[Any],
        session_id: str,
        **kwargs: Any,
    ) -> PromptResponse:
        """Run one prompt turn; updates stream through conn.session_update()."""
        async with _request_errors(f"prompt for {session_id}"):
            stop_reason = await lifecycle.prompt(self.runtime, session_id, prompt)
        return PromptResponse(stop_reason=stop_reason)

    async def cancel(self, session_id: str, **kwargs: Any) -> None:
        await lifecycle.cancel(self.runtime, session_id)

    async def set_session_mode(
        self,
        mode_id: str,
        session_id: str,
        **kwargs: Any,
    ) -> SetSessionModeResponse:
        async with _request_errors("set_session_mode"):
            await lifecycle.set_mode(self.runtime, session_id, mode_id)
        return SetSessionModeResponse()

    async def set_session_model(
        self,
        model_id: str,
        session_id: str,
        **kwargs: Any,
    ) -> SetSessionModelResponse:
        async with _request_errors("set_session_model"):
            await lifecycle.set_model(self.runtime, session_id, model_id)
        return SetSessionModelResponse()

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        logger.info(f"Extension method: {method}")
        raise RequestError.method_not_found(method)

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        logger.info(f"Extension notification: {method}")

    async def cleanup(self) -> None:
        """Stop every droid subprocess and clear the registry."""
        await self.runtime.close()


# Entry point for stdio mode
async def run_stdio_agent(config: BridgeConfig | None = None) -> None:
    """Run the droid agent over stdio using the official SDK.

    When the web-search proxy is enabled it is started first and its base URL
    is handed to every droid subprocess as ``FACTORY_API_BASE_URL``.
    """
    from acp import run_agent  # type: ignore[import-untyped]

    from ..websearch import WebsearchProxy

    config = config or BridgeConfig.from_env()
    proxy: WebsearchProxy | None = None
    extra_env: dict[str, str] = {}

    if config.websearch_enabled:
        proxy = WebsearchProxy(
            upstream_url=config.websearch_upstream_url,
            forward_url=config.websearch_forward_url,
            port=config.websearch_port,
        )
        await proxy.start()
        extra_env[PROXY_BASE_URL_ENV] = proxy.base_url

    agent = DroidAgent(runtime=BridgeRuntime(config, extra_env=extra_env))
    logger.info("Starting droid ACP agent (stdio mode)")
    try:
        await run_agent(agent)
    finally:
        await agent.cleanup()
        if proxy is not None:
            await proxy.stop()
