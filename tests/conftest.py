"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from droid_acp.acp.runtime import BridgeRuntime
from droid_acp.acp.session import Session
from droid_acp.config import BridgeConfig
from droid_acp.protocol.messages import InitSessionResult

DEFAULT_MODELS = [
    {"id": "claude-sonnet", "displayName": "Claude Sonnet"},
    {"id": "gpt-5", "displayName": "GPT-5"},
]


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


def build_init(
    session_id: str = "droid-1",
    autonomy: str | None = "normal",
    model: str | None = "claude-sonnet",
    models: list[dict[str, Any]] | None = None,
    session: dict[str, Any] | None = None,
) -> InitSessionResult:
    settings: dict[str, Any] = {}
    if autonomy is not None:
        settings["autonomyLevel"] = autonomy
    if model is not None:
        settings["modelId"] = model
    return InitSessionResult.model_validate(
        {
            "sessionId": session_id,
            "settings": settings,
            "availableModels": DEFAULT_MODELS if models is None else models,
            "session": session,
        }
    )


class FakeTransport:
    """In-memory stand-in for a droid subprocess.

    Records everything the session layer sends; ``sent`` holds
    ``(kind, payload)`` tuples.
    """

    def __init__(self, init: InitSessionResult | None = None, error: Exception | None = None):
        self.init = init or build_init()
        self.error = error
        self.handler: Any = None
        self.started = False
        self.running = False
        self.stopped = False
        self.sent: list[tuple[str, Any]] = []

    @property
    def session_id(self) -> str | None:
        return self.init.session_id if self.started else None

    @property
    def is_running(self) -> bool:
        return self.running

    async def start(self) -> InitSessionResult:
        if self.error is not None:
            raise self.error
        self.started = True
        self.running = True
        return self.init

    def set_handler(self, handler: Any) -> None:
        self.handler = handler

    async def send_user_message(
        self, text: str, images: list[dict[str, str]] | None = None
    ) -> None:
        self.sent.append(("user_message", (text, images)))

    async def send_message(self, text: str) -> None:
        self.sent.append(("user_message", (text, None)))

    async def set_mode(self, autonomy_level: str) -> None:
        self.sent.append(("autonomy", autonomy_level))

    async def set_model(self, model_id: str) -> None:
        self.sent.append(("model", model_id))

    def stop(self) -> None:
        self.stopped = True
        self.running = False

    def messages(self) -> list[str]:
        return [payload[0] for kind, payload in self.sent if kind == "user_message"]


class FakeTransportFactory:
    """Transport factory handing out queued fakes.

    Without a queued fake, a transport resuming ``X`` reports session ``X``
    and a fresh one gets ``droid-<n>``.
    """

    def __init__(self) -> None:
        self.queue: list[FakeTransport] = []
        self.created: list[tuple[str, str | None, FakeTransport]] = []

    def __call__(self, cwd: str, resume_session_id: str | None) -> FakeTransport:
        if self.queue:
            transport = self.queue.pop(0)
        else:
            session_id = resume_session_id or f"droid-{len(self.created) + 1}"
            transport = FakeTransport(build_init(session_id=session_id))
        self.created.append((cwd, resume_session_id, transport))
        return transport


@pytest.fixture
def make_init() -> Callable[..., InitSessionResult]:
    return build_init


@pytest.fixture
def new_transport() -> Callable[..., FakeTransport]:
    """Build an unstarted fake transport: ``new_transport("id", error=None, **init)``."""

    def _new(
        session_id: str = "droid-1", error: Exception | None = None, **init_kwargs: Any
    ) -> FakeTransport:
        return FakeTransport(build_init(session_id=session_id, **init_kwargs), error=error)

    return _new


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(
        factory_dir=tmp_path / ".factory",
        prompt_timeout=5.0,
        idle_grace_period=0.05,
        capture_timeout=2.0,
        capture_finalize_delay=0.01,
    )


@pytest.fixture
def conn() -> MagicMock:
    """Mock ACP client connection."""
    client = MagicMock()
    client.session_update = AsyncMock()
    client.request_permission = AsyncMock()
    return client


@pytest.fixture
def runtime(config, transport_factory, conn) -> BridgeRuntime:
    rt = BridgeRuntime(config, transport_factory=transport_factory)
    rt.attach_connection(conn)
    return rt


@pytest.fixture
def make_session(runtime) -> Callable[..., Session]:
    """Register a session backed by an already running fake transport."""

    def _make(
        session_id: str = "droid-1",
        cwd: str = "/repo",
        transport: FakeTransport | None = None,
        **init_kwargs: Any,
    ) -> Session:
        transport = transport or FakeTransport(build_init(session_id=session_id, **init_kwargs))
        transport.started = True
        transport.running = True
        return runtime.attach(session_id, cwd, transport, transport.init)

    return _make


@pytest.fixture
def sent_updates(conn) -> Callable[[], list[Any]]:
    """Updates sent through ``conn.session_update``, in order."""

    def _updates() -> list[Any]:
        return [c.args[1] for c in conn.session_update.call_args_list]

    return _updates
