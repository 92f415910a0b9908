"""Autonomy modes shown to the editor and their droid equivalents.

The editor sees five modes. The droid calls the same settings "autonomy
levels" and spells them differently:

    ACP mode   droid autonomy level
    --------   --------------------
    spec       spec
    off        normal
    low        auto-low
    medium     auto-medium
    high       auto-high
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from acp.schema import (  # type: ignore[import-untyped]
    ModelInfo,
    SessionMode,
    SessionModelState,
    SessionModeState,
)

from ..protocol.messages import AvailableModel


class AcpMode(str, Enum):
    """Editor-facing autonomy modes."""

    SPEC = "spec"
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


DEFAULT_MODE = AcpMode.OFF

MODE_NAMES: dict[AcpMode, str] = {
    AcpMode.SPEC: "Spec",
    AcpMode.OFF: "Auto Off",
    AcpMode.LOW: "Auto Low",
    AcpMode.MEDIUM: "Auto Medium",
    AcpMode.HIGH: "Auto High",
}

MODE_DESCRIPTIONS: dict[AcpMode, str] = {
    AcpMode.SPEC: "Research and plan only - no code changes",
    AcpMode.OFF: "Read-only mode - safe for reviewing planned changes without execution",
    AcpMode.LOW: "Low-risk operations - file creation/modification, no system changes",
    AcpMode.MEDIUM: "Development operations - npm install, git commit, build commands",
    AcpMode.HIGH: "Production operations - git push, deployments, database migrations",
}

_TO_DROID: dict[AcpMode, str] = {
    AcpMode.SPEC: "spec",
    AcpMode.OFF: "normal",
    AcpMode.LOW: "auto-low",
    AcpMode.MEDIUM: "auto-medium",
    AcpMode.HIGH: "auto-high",
}

_FROM_DROID: dict[str, AcpMode] = {
    **{level: mode for mode, level in _TO_DROID.items()},
    # Older droid releases
    "suggest": AcpMode.LOW,
    "full": AcpMode.HIGH,
}


def parse_mode(value: str | None) -> AcpMode | None:
    """Parse an editor mode id; ``None`` when unknown."""
    if not value:
        return None
    try:
        return AcpMode(value.strip().lower())
    except ValueError:
        return None


def to_droid_autonomy(mode: AcpMode) -> str:
    return _TO_DROID[mode]


def from_droid_autonomy(level: str | None) -> AcpMode | None:
    """Map a droid autonomy level to a mode; ``None`` when unknown."""
    if not level:
        return None
    return _FROM_DROID.get(level)


def build_mode_state(current: AcpMode) -> SessionModeState:
    return SessionModeState(
        available_modes=[
            SessionMode(id=mode.value, name=MODE_NAMES[mode], description=MODE_DESCRIPTIONS[mode])
            for mode in AcpMode
        ],
        current_mode_id=current.value,
    )


def build_model_state(
    available: Iterable[AvailableModel], current_model_id: str | None
) -> SessionModelState:
    return SessionModelState(
        available_models=[ModelInfo(model_id=m.id, name=m.label) for m in available],
        current_model_id=current_model_id or "unknown",
    )
