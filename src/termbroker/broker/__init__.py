"""Decision broker: approvals, escalation warnings and remote question answering."""

from termbroker.broker.broker import DecisionBroker
from termbroker.broker.models import (
    Decision,
    PendingApproval,
    PendingQuestionSet,
    Question,
    QuestionOption,
    SelectionResult,
    SubmitResult,
    Verdict,
)

__all__ = [
    "Decision",
    "DecisionBroker",
    "PendingApproval",
    "PendingQuestionSet",
    "Question",
    "QuestionOption",
    "SelectionResult",
    "SubmitResult",
    "Verdict",
]
