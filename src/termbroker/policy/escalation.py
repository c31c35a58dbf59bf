"""Escalation classifier.

Pattern-based risk tiers for tool requests: safe, caution, dangerous,
critical. Advisory only. The level annotates a request for human attention
and never overrides an allow/deny verdict.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field

from termbroker.policy.models import ToolRequest

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No escalation patterns matched"

FILE_TOOLS = ("Read", "Edit", "Write", "MultiEdit")


class EscalationLevel(enum.IntEnum):
    SAFE = 0
    CAUTION = 1
    DANGEROUS = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class EscalationPattern:
    level: EscalationLevel
    pattern: re.Pattern[str]
    description: str
    tool_name: str | None = "Bash"


@dataclass
class EscalationResult:
    level: EscalationLevel = EscalationLevel.SAFE
    reason: str = NO_MATCH_REASON
    patterns: list[str] = field(default_factory=list)


def _p(level: EscalationLevel, regex: str, description: str, flags: int = 0) -> EscalationPattern:
    return EscalationPattern(level, re.compile(regex, flags), description)


ESCALATION_PATTERNS: list[EscalationPattern] = [
    # Irreversible data loss
    _p(
        EscalationLevel.CRITICAL,
        r"rm\s+(-[^\s]*)?r[^\s]*f\s+/(\s|$)|rm\s+(-[^\s]*)?f[^\s]*r\s+/(\s|$)",
        "Recursive force delete from root",
    ),
    _p(EscalationLevel.CRITICAL, r"mkfs\.", "Filesystem formatting"),
    _p(EscalationLevel.CRITICAL, r"dd\s+.*of=/dev/", "Direct disk write"),
    # Significant risk
    _p(EscalationLevel.DANGEROUS, r"git\s+push\s+.*--force|git\s+push\s+-f", "Force push"),
    _p(EscalationLevel.DANGEROUS, r"git\s+reset\s+--hard", "Hard reset"),
    _p(EscalationLevel.DANGEROUS, r"DROP\s+(TABLE|DATABASE|SCHEMA)", "SQL DROP operation", re.I),
    _p(EscalationLevel.DANGEROUS, r"TRUNCATE\s+TABLE", "SQL TRUNCATE operation", re.I),
    _p(
        EscalationLevel.DANGEROUS,
        r"DELETE\s+FROM\s+\w+\s*(;|$)",
        "SQL DELETE without WHERE clause",
        re.I | re.M,
    ),
    _p(EscalationLevel.DANGEROUS, r"rm\s+(-[^\s]*)?r", "Recursive delete"),
    # Modifies state, worth a look
    _p(EscalationLevel.CAUTION, r"git\s+checkout\s+\.", "Discard all local changes"),
    _p(EscalationLevel.CAUTION, r"git\s+clean\s+-[^\s]*f", "Force clean untracked files"),
    _p(EscalationLevel.CAUTION, r"chmod\s+", "Permission change"),
    _p(EscalationLevel.CAUTION, r"chown\s+", "Ownership change"),
    _p(EscalationLevel.CAUTION, r"npm\s+publish|yarn\s+publish", "Package publish"),
    _p(EscalationLevel.CAUTION, r"curl\s+.*\|\s*(ba)?sh", "Piping remote script to shell"),
]


def checkable_text(request: ToolRequest) -> str:
    """The part of the request the patterns are matched against."""
    if request.tool_name == "Bash":
        return request.command
    if request.tool_name in FILE_TOOLS:
        return request.file_path
    return json.dumps(request.tool_input, default=str)


def classify_escalation(
    request: ToolRequest,
    patterns: list[EscalationPattern] | None = None,
) -> EscalationResult:
    """Classify a request; the level is the highest among matching patterns."""
    catalogue = ESCALATION_PATTERNS if patterns is None else patterns
    text = checkable_text(request)
    if not text:
        return EscalationResult()

    matched: list[str] = []
    highest = EscalationLevel.SAFE
    for ep in catalogue:
        if ep.tool_name and ep.tool_name != request.tool_name:
            continue
        try:
            hit = ep.pattern.search(text) is not None
        except (TypeError, ValueError) as e:
            logger.debug("Escalation pattern %r skipped: %s", ep.description, e)
            continue
        if hit:
            matched.append(ep.description)
            highest = max(highest, ep.level)

    if not matched:
        return EscalationResult()
    return EscalationResult(level=highest, reason=", ".join(matched), patterns=matched)


_ICONS = {
    EscalationLevel.SAFE: "",
    EscalationLevel.CAUTION: "⚠️",
    EscalationLevel.DANGEROUS: "⚠️⚠️",
    EscalationLevel.CRITICAL: "\U0001f6d1",
}

_LABELS = {
    EscalationLevel.SAFE: "",
    EscalationLevel.CAUTION: "Caution",
    EscalationLevel.DANGEROUS: "DANGEROUS",
    EscalationLevel.CRITICAL: "CRITICAL",
}


def format_escalation_warning(result: EscalationResult) -> str:
    """One-line warning for a decision channel; empty for safe requests."""
    if result.level == EscalationLevel.SAFE:
        return ""
    return f"{_ICONS[result.level]} {_LABELS[result.level]}: {result.reason}"
