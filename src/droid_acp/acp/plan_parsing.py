"""Parsing of spec-mode plans.

Plans arrive as free-form markdown inside ``ExitSpecMode`` tool input. This
module pulls out the pieces the bridge cares about: the plan text itself,
checklist entries for the editor's plan view, and lettered implementation
options ("Option A: ...") the human can choose between.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_CHECKBOX = re.compile(r"^- \[([ xX~])\]\s+(.*)$")
_BULLET = re.compile(r"^[-*]\s+(.*)$")
_NUMBERED = re.compile(r"^\d+\.\s+(.*)$")

_STRICT_CHOICE = re.compile(r"^(?:Option)\s*([A-Z])\s*[：:–—.)-]\s*(.+)$", re.IGNORECASE)
_LOOSE_CHOICE = re.compile(r"^([A-F])\s*[：:–—.)-]\s*(.+)$")

_TITLE_KEYS = ("title", "specTitle", "name")
_PLAN_KEYS = ("plan", "planMarkdown", "markdown", "content", "text")


@dataclass(frozen=True)
class PlanChoice:
    id: str
    title: str


@dataclass(frozen=True)
class PlanItem:
    content: str
    status: str
    priority: str = "medium"


def _to_markdown(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [v if isinstance(v, str) else json.dumps(v, indent=2) for v in value]
        joined = "\n".join(parts).strip()
        return joined or None
    if isinstance(value, dict):
        if isinstance(value.get("markdown"), str):
            return value["markdown"]
        if isinstance(value.get("text"), str):
            return value["text"]
        dumped = json.dumps(value, indent=2)
        return dumped if dumped != "{}" else None
    return None


def extract_spec_title_and_plan(raw_input: Any) -> tuple[str | None, str | None]:
    """``(title, plan_markdown)`` from ExitSpecMode input."""
    if not isinstance(raw_input, dict):
        return None, None

    title = next((raw_input[k] for k in _TITLE_KEYS if isinstance(raw_input.get(k), str)), None)
    for key in _PLAN_KEYS:
        plan = _to_markdown(raw_input.get(key))
        if plan:
            return title, plan
    return title, None


def plan_entries_from_markdown(markdown: str) -> list[PlanItem]:
    """Checklist, bullet and numbered items outside code fences.

    ``- [x]`` is completed, ``- [~]`` in progress, everything else pending.
    """
    entries: list[PlanItem] = []
    in_fence = False

    for raw_line in markdown.split("\n"):
        line = raw_line.strip()
        if line.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence or not line:
            continue

        checkbox = _CHECKBOX.match(line)
        if checkbox:
            mark, content = checkbox.groups()
            if mark in ("x", "X"):
                status = "completed"
            elif mark == "~":
                status = "in_progress"
            else:
                status = "pending"
            entries.append(PlanItem(content=content, status=status))
            continue

        item = _BULLET.match(line) or _NUMBERED.match(line)
        if item:
            entries.append(PlanItem(content=item.group(1), status="pending"))

    return [e for e in entries if e.content]


def _strip_decoration(line: str) -> str:
    out = re.sub(r"^>\s+", "", line)
    out = re.sub(r"^#+\s*", "", out)
    out = re.sub(r"^[-*]\s+", "", out).strip()
    return re.sub(r"^[*_`]+", "", out).strip()


def extract_plan_choices(markdown: str) -> list[PlanChoice]:
    """Lettered implementation options in a plan.

    ``Option X: ...`` lines are preferred. Bare ``A: ...`` / ``B) ...``
    lines only count when there are at least two of them.
    """
    strict: dict[str, PlanChoice] = {}
    loose: dict[str, PlanChoice] = {}

    for raw_line in markdown.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        stripped = _strip_decoration(line)

        match = _STRICT_CHOICE.match(stripped)
        if match:
            choice_id = match.group(1).upper()
            strict.setdefault(choice_id, PlanChoice(id=choice_id, title=match.group(2).strip()))
            continue

        match = _LOOSE_CHOICE.match(stripped)
        if match:
            choice_id = match.group(1).upper()
            loose.setdefault(choice_id, PlanChoice(id=choice_id, title=match.group(2).strip()))

    if strict:
        return list(strict.values())
    if len(loose) >= 2:
        return list(loose.values())
    return []


def plan_signature(title: str | None, plan: str) -> str:
    """Identity of a plan for negotiation idempotence."""
    return f"{title or ''}\n{plan}"
