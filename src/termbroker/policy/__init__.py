"""Policy engine — auto-approve rules and advisory escalation levels.

Both halves are pure functions of a ``ToolRequest``; nothing here holds
state between evaluations.
"""

from termbroker.policy.escalation import (
    ESCALATION_PATTERNS,
    EscalationLevel,
    EscalationPattern,
    EscalationResult,
    classify_escalation,
    format_escalation_warning,
)
from termbroker.policy.models import ToolRequest
from termbroker.policy.rules import (
    AutoApproveRule,
    RuleMatch,
    default_rules,
    effective_rules,
    evaluate_auto_approve,
)

__all__ = [
    "ESCALATION_PATTERNS",
    "AutoApproveRule",
    "EscalationLevel",
    "EscalationPattern",
    "EscalationResult",
    "RuleMatch",
    "ToolRequest",
    "classify_escalation",
    "default_rules",
    "effective_rules",
    "evaluate_auto_approve",
    "format_escalation_warning",
]
