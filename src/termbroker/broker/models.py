"""Decision broker data types."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from termbroker.policy.escalation import EscalationResult
from termbroker.policy.models import ToolRequest
from termbroker.text import summarize_tool_input

Verdict = Literal["allow", "deny"]


@dataclass
class Decision:
    """Final answer for a tool request."""

    decision: Verdict
    reason: str
    escalation: EscalationResult | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"

    def to_hook_response(self) -> dict[str, Any]:
        """The body the agent's PreToolUse hook expects back."""
        return {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": self.decision,
                "permissionDecisionReason": self.reason,
            }
        }


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class Question(BaseModel):
    """One question of a structured multi-question prompt.

    Accepts the agent's camelCase ``multiSelect`` as well as ``multi_select``.
    """

    model_config = ConfigDict(populate_by_name=True)

    question: str
    header: str = ""
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


@dataclass
class PendingApproval:
    """A tool request waiting for an external decision."""

    id: str
    request: ToolRequest
    future: asyncio.Future[Decision]
    escalation: EscalationResult | None = None
    created_at: float = field(default_factory=time.time)
    warning_handle: asyncio.TimerHandle | None = None
    timeout_handle: asyncio.TimerHandle | None = None

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def tool_name(self) -> str:
        return self.request.tool_name

    @property
    def cwd(self) -> str:
        return self.request.cwd

    def cancel_timers(self) -> None:
        for handle in (self.warning_handle, self.timeout_handle):
            if handle is not None:
                handle.cancel()
        self.warning_handle = None
        self.timeout_handle = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "tool_input": self.request.tool_input,
            "summary": summarize_tool_input(self.tool_name, self.request.tool_input),
            "cwd": self.cwd,
            "created_at": self.created_at,
            "escalation": self.escalation.level.label if self.escalation else "safe",
        }


@dataclass
class PendingQuestionSet:
    """A structured multi-question prompt being answered remotely.

    ``selections`` maps question index to 0-based option indices;
    ``CUSTOM_TEXT`` (-1) stands for the free-text answer in
    ``custom_texts``. A question is answered once its selection is
    non-empty.
    """

    request_id: str
    cwd: str
    questions: list[Question]
    selections: dict[int, set[int]] = field(default_factory=dict)
    custom_texts: dict[int, str] = field(default_factory=dict)
    message_handles: list[Any] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    expiry_handle: asyncio.TimerHandle | None = None

    def is_answered(self, index: int) -> bool:
        return bool(self.selections.get(index))

    def first_unanswered(self) -> int | None:
        for i in range(len(self.questions)):
            if not self.is_answered(i):
                return i
        return None

    def cancel_timers(self) -> None:
        if self.expiry_handle is not None:
            self.expiry_handle.cancel()
            self.expiry_handle = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "cwd": self.cwd,
            "questions": [q.model_dump() for q in self.questions],
            "selections": {i: sorted(s) for i, s in self.selections.items()},
            "custom_texts": dict(self.custom_texts),
        }


@dataclass
class SelectionResult:
    accepted: bool
    submitted: bool = False
    reason: str = ""


@dataclass
class SubmitResult:
    ok: bool
    unanswered: int | None = None  # 0-based index of the first unanswered question
    reason: str = ""
    session_id: str | None = None
