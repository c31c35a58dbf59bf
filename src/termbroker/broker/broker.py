"""Decision broker: settles tool requests and answers structured questions.

A tool request is settled by the first of:

1. an auto-approve rule (no timers, no notification),
2. ``AskUserQuestion`` interception (the questions are answered later
   through keystrokes, so the tool itself is allowed),
3. allow-all mode,
4. a human on the decision channel, with a warning before the deadline
   and an automatic deny when it passes.

Everything runs on one event loop. Every path that settles a pending entry
removes it from its map before any side effect, so a late timer or a second
click finds nothing and does nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from termbroker.broker.models import (
    Decision,
    PendingApproval,
    PendingQuestionSet,
    Question,
    SelectionResult,
    SubmitResult,
    Verdict,
)
from termbroker.config import ApprovalConfig
from termbroker.keys import CUSTOM_TEXT, describe_keys, synthesize_answers
from termbroker.policy.escalation import (
    EscalationLevel,
    classify_escalation,
    format_escalation_warning,
)
from termbroker.policy.models import ToolRequest
from termbroker.policy.rules import AutoApproveRule, effective_rules, evaluate_auto_approve
from termbroker.session.wire import EventType

if TYPE_CHECKING:
    from termbroker.pty.manager import SessionSupervisor
    from termbroker.session.wire import Wire

logger = logging.getLogger(__name__)

ASK_USER_QUESTION = "AskUserQuestion"
TIMED_OUT = "timed out"


class DecisionBroker:
    """Owns the pending-approval and pending-question maps.

    Constructed once per process and handed the supervisor it writes
    answers into. Killing a session does not settle its pending entries;
    they run out on their own timers.
    """

    def __init__(
        self,
        supervisor: SessionSupervisor,
        wire: Wire | None = None,
        rules: list[AutoApproveRule] | None = None,
        config: ApprovalConfig | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._wire = wire
        self._user_rules = list(rules or [])
        self._config = config or ApprovalConfig()
        self._approvals: dict[str, PendingApproval] = {}
        self._questions: dict[str, PendingQuestionSet] = {}
        self._counter = 0
        self.auto_approve_mode = False
        self.auto_approve_count = 0

    def set_rules(self, rules: list[AutoApproveRule]) -> None:
        """Replace the user rules; defaults still run first."""
        self._user_rules = list(rules)

    def _next_id(self) -> str:
        self._counter += 1
        return f"req-{self._counter}"

    # ------------------------------------------------------------------
    # Tool requests
    # ------------------------------------------------------------------

    async def request_decision(
        self, request: ToolRequest, request_id: str | None = None
    ) -> Decision:
        """Settle a tool request. Blocks until someone decides or time runs out."""
        approval_id = request_id or self._next_id()
        logger.info("[%s] Permission request: %s", approval_id, request.tool_name)

        rule = evaluate_auto_approve(request, effective_rules(self._user_rules))
        if rule is not None:
            logger.info("[%s] Rule %s: %s", approval_id, rule.name, rule.action)
            return Decision(rule.action, rule.reason or f"Matched rule {rule.name}")

        if request.tool_name == ASK_USER_QUESTION:
            self._intercept_questions(approval_id, request)
            return Decision("allow", "AskUserQuestion intercepted for remote answering")

        escalation = classify_escalation(request)
        warning = format_escalation_warning(escalation)

        if self.auto_approve_mode:
            self.auto_approve_count += 1
            logger.info("[%s] Auto-approved: %s", approval_id, request.tool_name)
            if warning and self._wire:
                self._wire.send_escalation(request.tool_name, escalation.level.label, warning)
            return Decision("allow", "Auto-approved (Allow All mode)", escalation)

        if self._wire is None or not self._wire.has_subscribers(EventType.APPROVAL_REQUEST):
            logger.info("[%s] No decision channel connected. Denying by default.", approval_id)
            return Decision("deny", "No decision channel connected", escalation)

        loop = asyncio.get_running_loop()
        pending = PendingApproval(
            id=approval_id,
            request=request,
            future=loop.create_future(),
            escalation=escalation,
        )
        pending.warning_handle = loop.call_later(
            self._config.warning_after, self._on_warning, approval_id
        )
        pending.timeout_handle = loop.call_later(
            self._config.timeout_after, self._on_timeout, approval_id
        )
        self._approvals[approval_id] = pending

        if escalation.level > EscalationLevel.SAFE:
            logger.warning("[%s] %s", approval_id, warning)
        self._wire.send_approval_request(pending.to_dict(), warning)

        try:
            return await pending.future
        except asyncio.CancelledError:
            # The hook caller gave up; nobody is left to answer.
            dropped = self._approvals.pop(approval_id, None)
            if dropped is not None:
                dropped.cancel_timers()
            raise

    def resolve(self, approval_id: str, decision: Verdict, reason: str | None = None) -> bool:
        """Settle a pending approval. Unknown or settled ids are a no-op.

        Returns True if this call settled the request.
        """
        if decision not in ("allow", "deny"):
            logger.warning("[%s] Ignoring unknown decision %r", approval_id, decision)
            return False

        pending = self._approvals.pop(approval_id, None)
        if pending is None:
            logger.info("[%s] Request expired or not found", approval_id)
            if self._wire:
                self._wire.send_approval_expired(approval_id)
            return False

        pending.cancel_timers()
        if reason is None:
            reason = (
                "Approved via decision channel"
                if decision == "allow"
                else "Denied via decision channel"
            )
        if not pending.future.done():
            pending.future.set_result(Decision(decision, reason, pending.escalation))

        logger.info("[%s] Decision: %s (%s)", approval_id, decision, reason)
        if self._wire:
            self._wire.send_approval_resolved(approval_id, decision, reason)
        return True

    def allow_all(self, approval_id: str) -> bool:
        """Approve this request and every later one until ``stop_allow_all()``."""
        self.auto_approve_mode = True
        logger.info("Allow All mode enabled")
        return self.resolve(approval_id, "allow", "Approved (Allow All mode enabled)")

    def stop_allow_all(self) -> int:
        """Leave allow-all mode. Returns how many requests it approved."""
        count = self.auto_approve_count
        self.auto_approve_mode = False
        self.auto_approve_count = 0
        logger.info("Allow All mode disabled after %d auto-approvals", count)
        return count

    def pending_approvals(self) -> list[PendingApproval]:
        return list(self._approvals.values())

    def _on_warning(self, approval_id: str) -> None:
        pending = self._approvals.get(approval_id)
        if pending is None:
            return
        remaining = self._config.timeout_after - self._config.warning_after
        logger.info("[%s] Still pending, auto-deny in %.0fs", approval_id, remaining)
        if self._wire:
            self._wire.send_approval_warning(approval_id, remaining)

    def _on_timeout(self, approval_id: str) -> None:
        pending = self._approvals.pop(approval_id, None)
        if pending is None:
            return
        pending.cancel_timers()
        if not pending.future.done():
            pending.future.set_result(Decision("deny", TIMED_OUT, pending.escalation))
        logger.info("[%s] Timed out, auto-denied: %s", approval_id, pending.tool_name)
        if self._wire:
            self._wire.send_approval_timeout(approval_id, pending.tool_name)

    # ------------------------------------------------------------------
    # Structured questions
    # ------------------------------------------------------------------

    def _intercept_questions(self, request_id: str, request: ToolRequest) -> None:
        questions = request.tool_input.get("questions") or []
        if not questions:
            return
        try:
            self.register_questions(request_id, request.cwd, questions)
        except (ValidationError, TypeError) as e:
            logger.warning("[%s] Malformed AskUserQuestion input: %s", request_id, e)

    def register_questions(
        self,
        request_id: str,
        cwd: str,
        questions: Iterable[Question | dict[str, Any]],
    ) -> PendingQuestionSet:
        """Start collecting answers for a structured question prompt."""
        parsed = [q if isinstance(q, Question) else Question.model_validate(q) for q in questions]
        qset = PendingQuestionSet(request_id=request_id, cwd=cwd, questions=parsed)

        previous = self._questions.pop(request_id, None)
        if previous is not None:
            previous.cancel_timers()

        loop = asyncio.get_running_loop()
        qset.expiry_handle = loop.call_later(
            self._config.question_expiry, self._expire_questions, request_id
        )
        self._questions[request_id] = qset

        logger.info("[%s] %d question(s) pending for %s", request_id, len(parsed), cwd)
        if self._wire:
            self._wire.send_questions(qset.to_dict())
        return qset

    def get_questions(self, request_id: str) -> PendingQuestionSet | None:
        return self._questions.get(request_id)

    def pending_questions(self) -> list[PendingQuestionSet]:
        return list(self._questions.values())

    def attach_message(self, request_id: str, handle: Any) -> bool:
        """Remember a rendered collaborator message for later cleanup."""
        qset = self._questions.get(request_id)
        if qset is None:
            return False
        qset.message_handles.append(handle)
        return True

    def select_option(
        self, request_id: str, question_index: int, option_index: int
    ) -> SelectionResult:
        """Record a click on option ``option_index`` (0-based).

        Multi-select questions toggle. Single-select questions replace the
        selection, and a set of exactly one question is submitted at once.
        """
        qset = self._questions.get(request_id)
        if qset is None:
            return SelectionResult(False, reason="Question set expired or not found")
        if not 0 <= question_index < len(qset.questions):
            return SelectionResult(False, reason=f"No question {question_index + 1}")
        question = qset.questions[question_index]
        if not 0 <= option_index < len(question.options):
            return SelectionResult(False, reason=f"No option {option_index + 1}")

        qset.custom_texts.pop(question_index, None)
        if question.multi_select:
            selection = qset.selections.setdefault(question_index, set())
            selection.discard(CUSTOM_TEXT)
            selection ^= {option_index}
            self._notify_update(qset, question_index)
            return SelectionResult(True)

        qset.selections[question_index] = {option_index}
        self._notify_update(qset, question_index)
        return self._auto_submit(qset)

    def set_custom_text(self, request_id: str, question_index: int, text: str) -> SelectionResult:
        """Answer a question with free text instead of a listed option."""
        qset = self._questions.get(request_id)
        if qset is None:
            return SelectionResult(False, reason="Question set expired or not found")
        if not 0 <= question_index < len(qset.questions):
            return SelectionResult(False, reason=f"No question {question_index + 1}")
        if not text:
            return SelectionResult(False, reason="Empty answer")

        qset.selections[question_index] = {CUSTOM_TEXT}
        qset.custom_texts[question_index] = text
        self._notify_update(qset, question_index)
        if qset.questions[question_index].multi_select:
            return SelectionResult(True)
        return self._auto_submit(qset)

    def _auto_submit(self, qset: PendingQuestionSet) -> SelectionResult:
        if len(qset.questions) != 1:
            return SelectionResult(True)
        result = self.submit(qset.request_id)
        return SelectionResult(True, submitted=result.ok, reason=result.reason)

    def _notify_update(self, qset: PendingQuestionSet, question_index: int) -> None:
        if self._wire:
            selection = sorted(qset.selections.get(question_index, ()))
            self._wire.send_question_update(qset.request_id, question_index, selection)

    def submit(self, request_id: str) -> SubmitResult:
        """Type every answer into the session as one write.

        Rejected while any question is unanswered; the set keeps collecting.
        """
        qset = self._questions.get(request_id)
        if qset is None:
            return SubmitResult(False, reason="Question set expired or not found")

        missing = qset.first_unanswered()
        if missing is not None:
            header = qset.questions[missing].header or qset.questions[missing].question
            return SubmitResult(
                False,
                unanswered=missing,
                reason=f"Question {missing + 1} ({header}) has no answer yet",
            )

        session = self._supervisor.find_by_cwd(qset.cwd)
        if session is None:
            return SubmitResult(False, reason=f"No active session in {qset.cwd}")

        keys = synthesize_answers(qset.questions, qset.selections, qset.custom_texts)
        del self._questions[request_id]
        logger.debug("[%s] Answer keystrokes: %s", request_id, describe_keys(keys))
        if not self._supervisor.send_input(session.id, keys):
            self._questions[request_id] = qset
            return SubmitResult(False, reason=f"Could not write to session {session.id}")

        qset.cancel_timers()
        logger.info("[%s] Answers delivered to %s", request_id, session.id)
        if self._wire:
            self._wire.send_questions_submitted(request_id, session.id)
        return SubmitResult(True, session_id=session.id)

    def _expire_questions(self, request_id: str) -> None:
        qset = self._questions.pop(request_id, None)
        if qset is None:
            return
        qset.cancel_timers()
        logger.info("[%s] Unanswered questions expired", request_id)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Deny everything still pending and drop all question sets."""
        for approval_id in list(self._approvals):
            self.resolve(approval_id, "deny", "Broker shutting down")
        for qset in self._questions.values():
            qset.cancel_timers()
        self._questions.clear()
