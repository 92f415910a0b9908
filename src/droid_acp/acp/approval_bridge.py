"""ACP Approval Bridge - answers droid permission requests.

The droid asks before running most tools. This module turns such a request
into editor updates and a selected droid option:

1. The tool call is shown (or refreshed) in the editor as ``pending``
2. In spec mode, a plan offering lettered options may be negotiated first
3. The autonomy policy may answer on its own
4. Otherwise the human is asked via ``session/request_permission``
5. The chosen option is mapped back to a droid option value
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from acp.schema import (  # type: ignore[import-untyped]
    AgentPlanUpdate,
    PermissionOption,
    PlanEntry,
    ToolCallUpdate,
)

from .permission_options import (
    DroidOption,
    build_permission_options,
    extract_droid_options,
    map_exit_spec_selection,
    permission_kind,
)
from .plan_parsing import (
    PlanChoice,
    extract_plan_choices,
    extract_spec_title_and_plan,
    plan_entries_from_markdown,
    plan_signature,
)
from .policy import RiskLevel, compute_auto_decision, infer_risk
from .session import ToolCallStatus
from .tool_metadata import (
    EXIT_SPEC_MODE_TOOL,
    build_permission_content,
    format_tool_title,
    get_tool_kind,
    raw_input_for_client,
    text_content,
    tool_locations,
)

if TYPE_CHECKING:
    from .runtime import BridgeRuntime
    from .session import Session

logger = logging.getLogger(__name__)

_CHOOSE_PLAN_PATTERN = re.compile(r"^choose_plan:([A-Z])$")
_COMMAND_SUMMARY_CHARS = 200


@dataclass
class PermissionContext:
    """Everything known about one permission request."""

    tool_call_id: str
    tool_name: str
    title: str
    command: str
    risk: RiskLevel
    raw_input: Any
    kind: str
    content: list[Any]
    locations: list[Any] | None
    droid_options: list[DroidOption] | None

    @property
    def is_exit_spec(self) -> bool:
        return self.tool_name == EXIT_SPEC_MODE_TOOL


def _command_summary(tool_name: str, raw_input: Any, spec_title: str | None) -> str:
    command = raw_input.get("command") if isinstance(raw_input, dict) else None
    if not isinstance(command, str):
        if tool_name == EXIT_SPEC_MODE_TOOL and spec_title:
            command = spec_title
        else:
            command = json.dumps(raw_input, default=str)
    if len(command) > _COMMAND_SUMMARY_CHARS:
        return command[:_COMMAND_SUMMARY_CHARS] + "…"
    return command


async def handle_permission(
    runtime: BridgeRuntime, session: Session, params: dict[str, Any]
) -> str:
    """Answer a ``droid.request_permission`` request.

    Returns:
        The droid option value to reply with.
    """
    tool_uses = params.get("toolUses")
    first = tool_uses[0] if isinstance(tool_uses, list) and tool_uses else None
    tool_use = first.get("toolUse") if isinstance(first, dict) else None
    if not isinstance(tool_use, dict):
        return "proceed_once"

    tool_call_id = str(tool_use.get("id") or "")
    tool_name = str(tool_use.get("name") or "unknown")
    raw_input = tool_use.get("input")
    cwd = session.cwd

    spec_title, spec_plan = (
        extract_spec_title_and_plan(raw_input) if tool_name == EXIT_SPEC_MODE_TOOL else (None, None)
    )
    risk = infer_risk(tool_name, raw_input)
    logger.info(
        f"Permission request for tool {tool_call_id} risk={risk} mode={session.mode.value}"
    )

    if tool_name == EXIT_SPEC_MODE_TOOL:
        title = f"Exit spec mode: {spec_title}" if spec_title else "Exit spec mode"
        kind = "switch_mode"
    else:
        title = format_tool_title(tool_name, raw_input, cwd, risk)
        kind = get_tool_kind(tool_name)

    ctx = PermissionContext(
        tool_call_id=tool_call_id,
        tool_name=tool_name,
        title=title,
        command=_command_summary(tool_name, raw_input, spec_title),
        risk=risk,
        raw_input=raw_input,
        kind=kind,
        content=build_permission_content(
            tool_name, risk, raw_input, cwd, plan_markdown=spec_plan, debug=runtime.config.debug
        ),
        locations=tool_locations(tool_name, raw_input, cwd),
        droid_options=extract_droid_options(params),
    )

    ledger = session.tool_calls
    already_tracked = tool_call_id in ledger.active
    ledger.activate(tool_call_id, tool_name, raw_input, ctx.content)
    advanced = ledger.advance(tool_call_id, ToolCallStatus.PENDING)
    client_raw_input = raw_input_for_client(raw_input, runtime.config.debug)

    if already_tracked:
        await runtime.update_tool_call(
            session,
            tool_call_id,
            title=title,
            status="pending" if advanced else None,
            kind=kind,
            content=ctx.content,
            locations=ctx.locations,
            raw_input=client_raw_input,
        )
    else:
        await runtime.start_tool_call(
            session,
            tool_call_id,
            title,
            kind=kind,
            status="pending",
            content=ctx.content,
            locations=ctx.locations,
            raw_input=client_raw_input,
        )

    return await decide_permission(runtime, session, ctx)


def _fallback_selection(auto: str, droid_options: list[DroidOption] | None) -> str:
    """Map an auto decision onto the options the droid actually offered."""
    if droid_options is None:
        return auto
    if any(o.value == auto for o in droid_options):
        return auto
    if auto == "cancel":
        return "cancel"
    for option in droid_options:
        if permission_kind(option.value) == "allow_once":
            return option.value
    for option in droid_options:
        if option.value != "cancel":
            return option.value
    return "proceed_once"


def _finish(session: Session, tool_call_id: str, status: ToolCallStatus) -> bool:
    return session.tool_calls.advance(tool_call_id, status)


async def decide_permission(
    runtime: BridgeRuntime, session: Session, ctx: PermissionContext
) -> str:
    """Pick the droid option for a tracked permission request."""
    if session.is_cancelled:
        _finish(session, ctx.tool_call_id, ToolCallStatus.COMPLETED)
        await runtime.update_tool_call(session, ctx.tool_call_id, status="completed")
        return "cancel"

    droid_options = ctx.droid_options or None
    acp_options = build_permission_options(ctx.tool_name, droid_options)

    if ctx.is_exit_spec:
        spec_title, spec_plan = extract_spec_title_and_plan(ctx.raw_input)
        if spec_plan:
            early = await negotiate_plan_choice(
                runtime, session, ctx.tool_call_id, spec_title, spec_plan
            )
            if early is not None:
                return early
            await emit_plan_update(runtime, session, spec_plan)

    auto = compute_auto_decision(ctx.tool_name, session.mode, ctx.risk)
    if auto is not None:
        selected = _fallback_selection(auto, droid_options)
        status = (
            ToolCallStatus.COMPLETED
            if selected == "cancel" or ctx.is_exit_spec
            else ToolCallStatus.IN_PROGRESS
        )
        _finish(session, ctx.tool_call_id, status)
        content = (
            [text_content(f"Permission denied for `{ctx.tool_name}` ({ctx.risk}).")]
            if selected == "cancel"
            else None
        )
        await runtime.update_tool_call(
            session, ctx.tool_call_id, status=status.value, content=content
        )
        return selected

    selected = await _ask_human(runtime, session, ctx, acp_options)
    if selected is None:
        return "cancel"

    if ctx.is_exit_spec:
        next_mode, selected = map_exit_spec_selection(selected)
        if next_mode is not None:
            session.mode = next_mode
            await runtime.send_mode_update(session)

    status = (
        ToolCallStatus.COMPLETED
        if selected == "cancel" or ctx.is_exit_spec
        else ToolCallStatus.IN_PROGRESS
    )
    _finish(session, ctx.tool_call_id, status)

    if ctx.is_exit_spec:
        content = [text_content("Staying in Spec mode.")] if selected == "cancel" else None
        await runtime.update_tool_call(
            session, ctx.tool_call_id, status=status.value, content=content
        )
    elif selected != "cancel":
        # A rejection is already shown by the editor
        await runtime.update_tool_call(session, ctx.tool_call_id, status=status.value)

    return selected


async def _ask_human(
    runtime: BridgeRuntime,
    session: Session,
    ctx: PermissionContext,
    options: list[PermissionOption],
) -> str | None:
    """Escalate to the editor. Returns the picked option id, None on failure."""
    conn = runtime.conn
    try:
        if conn is None:
            raise RuntimeError("No ACP connection")
        response = await conn.request_permission(
            options=options,
            session_id=session.id,
            tool_call=ToolCallUpdate(
                tool_call_id=ctx.tool_call_id,
                title=ctx.title,
                kind=ctx.kind,
                content=ctx.content,
                locations=ctx.locations,
                raw_input=raw_input_for_client(ctx.raw_input, runtime.config.debug),
            ),
        )
    except Exception as e:
        logger.error(f"request_permission failed for {ctx.tool_call_id}: {e}")
        _finish(session, ctx.tool_call_id, ToolCallStatus.COMPLETED)
        await runtime.update_tool_call(
            session,
            ctx.tool_call_id,
            status="completed",
            content=[
                text_content(
                    f"Permission request failed for `{ctx.tool_name}`. Cancelling the operation."
                )
            ],
        )
        return None

    outcome = response.outcome
    if getattr(outcome, "outcome", None) == "selected":
        logger.debug(f"Permission response for {ctx.tool_call_id}: {outcome.option_id}")
        return outcome.option_id
    return "cancel"


# =============================================================================
# Spec mode plans
# =============================================================================


def _choice_prompt(title: str | None, details_id: str | None, choices: list[PlanChoice]) -> str:
    details_hint = (
        f"Expand **{details_id}** to view the full plan details."
        if details_id
        else "Expand the Plan details tool call to view the full plan details."
    )
    parts = [
        f"**{title}**" if title else "**Choose an implementation option**",
        "",
        details_hint,
        "Choose one to continue iterating in spec mode.",
        *(f"- Option {c.id}: {c.title}" for c in choices),
    ]
    return "\n".join(p for p in parts if p)


async def negotiate_plan_choice(
    runtime: BridgeRuntime,
    session: Session,
    tool_call_id: str,
    title: str | None,
    plan: str,
) -> str | None:
    """Offer the plan's lettered options before leaving spec mode.

    The full plan is shown once per distinct plan. When the plan lists
    options and none has been chosen for it yet, the human picks one (or
    skips). Picking an option keeps the session in spec mode: the exit is
    refused and the droid is told which option to refine.

    Returns:
        ``"cancel"`` when an option was picked or the editor could not be
        asked, None to continue the normal exit flow.
    """
    spec = session.spec
    signature = plan_signature(title, plan)
    spec.observe_plan(signature)

    if spec.details_signature != signature:
        spec.details_signature = signature
        spec.details_tool_call_id = f"{tool_call_id}:plan_details"
        await runtime.start_tool_call(
            session,
            spec.details_tool_call_id,
            f"Plan details: {title}" if title else "Plan details",
            kind="think",
            status="completed",
            content=[text_content(plan)],
        )

    if spec.choice is not None:
        return None

    choices = extract_plan_choices(plan)
    if not choices:
        return None

    choose_id = f"{tool_call_id}:choose_plan"
    options = [
        PermissionOption(option_id=f"choose_plan:{c.id}", name=f"Choose Option {c.id}", kind="allow_once")
        for c in choices
    ]
    options.append(PermissionOption(option_id="choose_plan:skip", name="Skip", kind="reject_once"))

    outcome_id = "choose_plan:skip"
    conn = runtime.conn
    if conn is not None:
        try:
            response = await conn.request_permission(
                options=options,
                session_id=session.id,
                tool_call=ToolCallUpdate(
                    tool_call_id=choose_id,
                    title=f"Choose plan: {title}" if title else "Choose plan option",
                    status="pending",
                    kind="think",
                    raw_input=raw_input_for_client(
                        {"choices": [{"id": c.id, "title": c.title} for c in choices]},
                        runtime.config.debug,
                    ),
                    content=[text_content(_choice_prompt(title, spec.details_tool_call_id, choices))],
                ),
            )
        except Exception as e:
            logger.error(f"request_permission failed for {choose_id}: {e}")
            _finish(session, tool_call_id, ToolCallStatus.COMPLETED)
            await runtime.update_tool_call(
                session,
                tool_call_id,
                status="completed",
                content=[
                    text_content(
                        f"Permission request failed for `{EXIT_SPEC_MODE_TOOL}`. "
                        "Cancelling the operation."
                    )
                ],
            )
            return "cancel"
        if getattr(response.outcome, "outcome", None) == "selected":
            outcome_id = response.outcome.option_id

    match = _CHOOSE_PLAN_PATTERN.match(outcome_id)
    if match is None:
        spec.choice = "skip"
        return None

    choice_id = match.group(1)
    spec.choice = choice_id
    logger.info(f"Plan option {choice_id} chosen for session {session.id}")

    await runtime.update_tool_call(session, choose_id, status="completed")

    _finish(session, tool_call_id, ToolCallStatus.COMPLETED)
    await runtime.update_tool_call(
        session,
        tool_call_id,
        status="completed",
        content=[text_content(f"Continuing in spec mode with Option {choice_id}.")],
    )
    await runtime.send_agent_message(
        session, f"Selected **Option {choice_id}**. Continuing in spec mode."
    )

    transport = session.transport
    runtime.spawn(
        transport.send_message(
            f"I choose Option {choice_id}. Please continue refining the plan and key changes "
            "based on this option, and when you are ready to execute, prompt to exit spec mode."
        ),
        name=f"plan-choice-{session.id}",
    )
    return "cancel"


async def emit_plan_update(runtime: BridgeRuntime, session: Session, plan: str) -> None:
    """Show a spec plan in the editor's plan view."""
    items = plan_entries_from_markdown(plan)
    if items:
        entries = [PlanEntry(content=i.content, status=i.status, priority=i.priority) for i in items]
    elif plan.strip():
        entries = [PlanEntry(content=plan.strip(), status="pending", priority="medium")]
    else:
        return
    await runtime.session_update(session, AgentPlanUpdate(session_update="plan", entries=entries))


__all__ = [
    "PermissionContext",
    "decide_permission",
    "emit_plan_update",
    "handle_permission",
    "negotiate_plan_choice",
]
