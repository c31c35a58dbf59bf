"""Auto-approve rule engine.

Evaluates tool requests against declarative rules so common safe reads and
obviously destructive commands are settled without asking anyone.
"""

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from termbroker.policy.models import ToolRequest

logger = logging.getLogger(__name__)

READ_ONLY_TOOLS = ["Read", "Glob", "Grep", "WebSearch", "WebFetch"]

# Recursive+force flags in either order, aimed at /, ~, $HOME, *, . or ..
# A targeted delete such as ``rm -rf build/`` is left for a human.
RM_RF_SWEEPING = (
    r"rm\s+(-[^\s]*)?(r[^\s]*f|f[^\s]*r)[^\s]*\s+(--\s+)?[\"']?"
    r"(/|~|\$HOME|\*|\.{1,2})/?\*?[\"']?(\s|;|&|\||$)"
)
GIT_FORCE_PUSH = r"git\s+push\s+.*--force|git\s+push\s+-f"


class RuleMatch(BaseModel):
    """Match criteria. Every criterion that is set must hold."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tool_name: str | list[str] | None = Field(default=None, alias="toolName")
    cwd_pattern: str | None = Field(default=None, alias="cwdPattern")
    command_pattern: str | None = Field(default=None, alias="commandPattern")
    file_pattern: str | None = Field(default=None, alias="filePattern")


class AutoApproveRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    match: RuleMatch = Field(default_factory=RuleMatch)
    action: Literal["allow", "deny"]
    reason: str = ""


def default_rules() -> list[AutoApproveRule]:
    """Rules that ship with termbroker, evaluated before any user rule."""
    return [
        AutoApproveRule(
            name="safe-reads",
            match=RuleMatch(tool_name=list(READ_ONLY_TOOLS)),
            action="allow",
            reason="Read-only operations are safe",
        ),
        AutoApproveRule(
            name="deny-rm-rf",
            match=RuleMatch(tool_name="Bash", command_pattern=RM_RF_SWEEPING),
            action="deny",
            reason="Recursive force delete of a root, home or wildcard target is too dangerous to auto-approve",
        ),
        AutoApproveRule(
            name="deny-force-push",
            match=RuleMatch(tool_name="Bash", command_pattern=GIT_FORCE_PUSH),
            action="deny",
            reason="Force push can destroy remote history",
        ),
    ]


def effective_rules(user_rules: list[AutoApproveRule] | None = None) -> list[AutoApproveRule]:
    """Defaults first, then user overrides in their configured order."""
    return default_rules() + list(user_rules or [])


def evaluate_auto_approve(
    request: ToolRequest, rules: list[AutoApproveRule]
) -> AutoApproveRule | None:
    """Return the first rule that fully matches the request, or None."""
    for rule in rules:
        try:
            matched = _matches(request, rule.match)
        except (re.error, TypeError, ValueError) as e:
            logger.debug("Rule %s skipped: %s", rule.name, e)
            continue
        if matched:
            return rule
    return None


def _matches(request: ToolRequest, match: RuleMatch) -> bool:
    if match.tool_name is not None:
        names = [match.tool_name] if isinstance(match.tool_name, str) else match.tool_name
        if request.tool_name not in names:
            return False

    if match.cwd_pattern is not None:
        if not re.search(match.cwd_pattern, request.cwd):
            return False

    if match.command_pattern is not None:
        if not re.search(match.command_pattern, request.command):
            return False

    if match.file_pattern is not None:
        if not re.search(match.file_pattern, request.file_path):
            return False

    return True
