"""Bridge configuration.

All tunables live in :class:`BridgeConfig`. Values are read from environment
variables by :meth:`BridgeConfig.from_env`; the CLI overrides individual
fields on top of that.

Environment variables:
    DROID_EXECUTABLE                  droid binary (default: droid)
    DROID_INIT_TIMEOUT                initialization timeout in ms (default: 60000)
    DROID_ACP_PROMPT_TIMEOUT          prompt turn timeout in ms (default: 300000)
    DROID_ACP_IDLE_GRACE_MS           idle grace period in ms (default: 250)
    DROID_ACP_REASONING_EFFORT        reasoning effort passed with -r
    DROID_ACP_EXPERIMENT_SESSIONS     enable session load/list/resume
    DROID_DEBUG                       verbose logging and raw tool input
    DROID_ACP_FACTORY_DIR             droid data directory (default: ~/.factory)
    DROID_ACP_WEBSEARCH               run the web-search proxy
    DROID_ACP_WEBSEARCH_UPSTREAM_URL  proxy upstream (default: https://api.factory.ai)
    DROID_ACP_WEBSEARCH_FORWARD_URL   target for web-search requests
    DROID_ACP_WEBSEARCH_PORT          proxy port (default: ephemeral)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})

DEFAULT_UPSTREAM_URL = "https://api.factory.ai"


def is_env_enabled(value: str | None) -> bool:
    """Return True for 1/true/yes/on (case-insensitive)."""
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


def _millis(environ: Mapping[str, str], name: str, default_seconds: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default_seconds
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default_seconds}s")
        return default_seconds
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using {default_seconds}s")
        return default_seconds
    return value / 1000.0


def _optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class BridgeConfig:
    """Runtime configuration shared by every session."""

    droid_executable: str = "droid"

    # Timeouts (seconds)
    init_timeout: float = 60.0
    prompt_timeout: float = 300.0
    idle_grace_period: float = 0.25
    capture_timeout: float = 120.0
    capture_finalize_delay: float = 1.0

    # Droid behavior
    reasoning_effort: str | None = None
    experiment_sessions: bool = False
    debug: bool = False
    factory_dir: Path = Path.home() / ".factory"

    # Web-search proxy
    websearch_enabled: bool = False
    websearch_upstream_url: str = DEFAULT_UPSTREAM_URL
    websearch_forward_url: str | None = None
    websearch_port: int = 0

    @property
    def sessions_dir(self) -> Path:
        """Directory holding droid session history files."""
        return self.factory_dir / "sessions"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build a configuration from environment variables."""
        env = os.environ if environ is None else environ

        factory_dir = _optional(env, "DROID_ACP_FACTORY_DIR")
        port_raw = _optional(env, "DROID_ACP_WEBSEARCH_PORT")
        port = 0
        if port_raw is not None:
            try:
                port = int(port_raw)
            except ValueError:
                logger.warning(f"Ignoring invalid DROID_ACP_WEBSEARCH_PORT={port_raw!r}")

        return cls(
            droid_executable=_optional(env, "DROID_EXECUTABLE") or "droid",
            init_timeout=_millis(env, "DROID_INIT_TIMEOUT", 60.0),
            prompt_timeout=_millis(env, "DROID_ACP_PROMPT_TIMEOUT", 300.0),
            idle_grace_period=_millis(env, "DROID_ACP_IDLE_GRACE_MS", 0.25),
            reasoning_effort=_optional(env, "DROID_ACP_REASONING_EFFORT"),
            experiment_sessions=is_env_enabled(env.get("DROID_ACP_EXPERIMENT_SESSIONS")),
            debug=is_env_enabled(env.get("DROID_DEBUG")),
            factory_dir=(
                Path(factory_dir).expanduser() if factory_dir else Path.home() / ".factory"
            ),
            websearch_enabled=is_env_enabled(env.get("DROID_ACP_WEBSEARCH")),
            websearch_upstream_url=(
                _optional(env, "DROID_ACP_WEBSEARCH_UPSTREAM_URL") or DEFAULT_UPSTREAM_URL
            ),
            websearch_forward_url=_optional(env, "DROID_ACP_WEBSEARCH_FORWARD_URL"),
            websearch_port=port,
        )
