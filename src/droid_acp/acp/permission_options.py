"""Permission options exchanged between the droid and the editor.

The droid offers options as ``{"value": ..., "label": ...}`` pairs; the
editor shows :class:`acp.schema.PermissionOption` entries. For ordinary
tools the option id sent to the editor is the droid value itself. For
``ExitSpecMode`` the option ids are ACP mode ids, so the human picks the
mode to continue in, and :func:`map_exit_spec_selection` translates the
pick back to a droid value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from acp.schema import PermissionOption  # type: ignore[import-untyped]

from .modes import AcpMode
from .tool_metadata import EXIT_SPEC_MODE_TOOL


@dataclass(frozen=True)
class DroidOption:
    """A permission option as offered by the droid."""

    value: str
    label: str


@dataclass(frozen=True)
class _SpecCandidate:
    mode: AcpMode
    droid_value: str
    name: str
    kind: str


_SPEC_CANDIDATES: tuple[_SpecCandidate, ...] = (
    _SpecCandidate(AcpMode.OFF, "proceed_once", "Proceed (manual)", "allow_once"),
    _SpecCandidate(AcpMode.LOW, "proceed_auto_run_low", "Proceed (low)", "allow_once"),
    _SpecCandidate(AcpMode.MEDIUM, "proceed_auto_run_medium", "Proceed (medium)", "allow_once"),
    _SpecCandidate(AcpMode.HIGH, "proceed_auto_run_high", "Proceed (high)", "allow_once"),
    _SpecCandidate(AcpMode.SPEC, "cancel", "Stay in Spec", "reject_once"),
)

_SELECTION_BY_ID: dict[str, tuple[AcpMode, str]] = {
    **{c.mode.value: (c.mode, c.droid_value) for c in _SPEC_CANDIDATES},
    # Clients that echo the droid value back
    **{c.droid_value: (c.mode, c.droid_value) for c in _SPEC_CANDIDATES},
}

_ALWAYS_KINDS = frozenset(
    {
        "proceed_auto_run_low",
        "proceed_auto_run_medium",
        "proceed_auto_run_high",
        "proceed_auto_run",
        "proceed_always",
    }
)

_AUTO_RUN_NAMES = {
    "proceed_auto_run_low": "Auto-run (low)",
    "proceed_auto_run_medium": "Auto-run (medium)",
    "proceed_auto_run_high": "Auto-run (high)",
}


def extract_droid_options(params: dict[str, Any]) -> list[DroidOption] | None:
    """First non-empty option list in a permission request.

    Looked up in ``params.options``, then each ``toolUses[].options``, then
    each ``toolUses[].details.options``.
    """
    candidates: list[list[Any]] = []

    def maybe_push(value: Any) -> None:
        if isinstance(value, list):
            candidates.append(value)

    maybe_push(params.get("options"))
    tool_uses = params.get("toolUses")
    if isinstance(tool_uses, list):
        for tool_use in tool_uses:
            if not isinstance(tool_use, dict):
                continue
            maybe_push(tool_use.get("options"))
            details = tool_use.get("details")
            if isinstance(details, dict):
                maybe_push(details.get("options"))

    for candidate in candidates:
        normalized = [
            DroidOption(value=opt["value"], label=opt["label"])
            for opt in candidate
            if isinstance(opt, dict)
            and isinstance(opt.get("value"), str)
            and opt["value"]
            and isinstance(opt.get("label"), str)
            and opt["label"]
        ]
        if normalized:
            return normalized
    return None


def permission_kind(value: str) -> str:
    """ACP option kind for a droid option value."""
    if value in ("proceed_once", "proceed_edit"):
        return "allow_once"
    if value in _ALWAYS_KINDS:
        return "allow_always"
    if value == "cancel":
        return "reject_once"
    return "allow_once"


def to_acp_option(option: DroidOption) -> PermissionOption:
    name = option.label
    if option.value == "proceed_once":
        name = "Allow once"
    elif option.value == "proceed_always":
        label = option.label.lower()
        level = next((lvl for lvl in ("low", "medium", "high") if lvl in label), None)
        name = f"Always ({level})" if level else "Always"
    elif option.value in _AUTO_RUN_NAMES:
        name = _AUTO_RUN_NAMES[option.value]
    return PermissionOption(option_id=option.value, name=name, kind=permission_kind(option.value))


def spec_approval_options(droid_options: list[DroidOption] | None) -> list[PermissionOption]:
    """Options for leaving spec mode, keyed by the mode to continue in."""
    offered = {o.value for o in droid_options} if droid_options else None
    options = [
        PermissionOption(option_id=c.mode.value, name=c.name, kind=c.kind)
        for c in _SPEC_CANDIDATES
        if offered is None or c.droid_value in offered
    ]
    if options:
        return options

    if droid_options:
        return [
            PermissionOption(option_id=o.value, name=o.label, kind="allow_once")
            for o in droid_options
        ]
    return [
        PermissionOption(option_id="off", name="Proceed (manual approvals)", kind="allow_once"),
        PermissionOption(
            option_id="spec", name="No, keep iterating (stay in Spec)", kind="reject_once"
        ),
    ]


def build_permission_options(
    tool_name: str, droid_options: list[DroidOption] | None
) -> list[PermissionOption]:
    """Options to show in the editor for a permission request."""
    if tool_name == EXIT_SPEC_MODE_TOOL:
        return spec_approval_options(droid_options)
    if droid_options:
        return [to_acp_option(o) for o in droid_options]
    return [
        PermissionOption(option_id="proceed_once", name="Allow once", kind="allow_once"),
        PermissionOption(option_id="cancel", name="Reject", kind="reject_once"),
    ]


def map_exit_spec_selection(option_id: str) -> tuple[AcpMode | None, str]:
    """Translate an ExitSpecMode pick into ``(next_mode, droid_value)``.

    Unknown ids pass through unchanged with no mode change.
    """
    return _SELECTION_BY_ID.get(option_id, (None, option_id))
