"""Auto-decision policy for droid permission requests.

The session's autonomy mode and the tool's risk decide whether a permission
request is answered automatically or escalated to the human:

    mode     low risk        medium risk     high risk
    ------   -------------   -------------   -------------
    high     proceed_always  proceed_always  proceed_always
    medium   proceed_once    proceed_once    ask
    low      proceed_once    ask             ask
    spec     proceed_once    cancel          cancel
    off      ask             ask             ask

``ExitSpecMode`` is always escalated: leaving spec mode starts execution.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from .modes import AcpMode
from .tool_metadata import EXIT_SPEC_MODE_TOOL, is_read_only_tool

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high"]

_RISK_LEVELS: tuple[RiskLevel, ...] = ("low", "medium", "high")


def infer_risk(tool_name: str, raw_input: Any) -> RiskLevel:
    """Risk of a tool call.

    An explicit ``riskLevel`` in the tool input wins; otherwise read-only
    tools are low risk and everything else is medium.
    """
    if isinstance(raw_input, dict):
        declared = raw_input.get("riskLevel")
        if declared in _RISK_LEVELS:
            return declared
    return "low" if is_read_only_tool(tool_name) else "medium"


def compute_auto_decision(tool_name: str, mode: AcpMode, risk: RiskLevel) -> str | None:
    """Droid option to reply with automatically, or None to ask the human."""
    if tool_name == EXIT_SPEC_MODE_TOOL:
        logger.info("Prompting (ExitSpecMode)")
        return None

    if mode == AcpMode.HIGH:
        logger.info("Auto-approved (high mode)")
        return "proceed_always"

    if mode == AcpMode.MEDIUM:
        if risk == "high":
            logger.info("Prompting (medium mode, high risk)")
            return None
        logger.info("Auto-approved (medium mode, low/med risk)")
        return "proceed_once"

    if mode == AcpMode.LOW:
        if risk == "low":
            logger.info("Auto-approved (low mode, low risk)")
            return "proceed_once"
        logger.info("Prompting (low mode)")
        return None

    if mode == AcpMode.SPEC:
        if risk == "low":
            logger.info("Auto-approved (spec mode, low risk)")
            return "proceed_once"
        logger.info("Auto-rejected (spec mode, medium/high risk)")
        return "cancel"

    logger.info("Prompting (off mode)")
    return None
