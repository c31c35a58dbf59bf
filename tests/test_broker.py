"""Tests for termbroker.broker (DecisionBroker approvals and question sets)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from termbroker.broker import Decision, DecisionBroker, Question
from termbroker.config import ApprovalConfig
from termbroker.keys import DOWN, ENTER, SPACE
from termbroker.policy import AutoApproveRule, EscalationLevel, RuleMatch, ToolRequest
from termbroker.session.wire import EventType, Wire, WireEvent

WARNING_AFTER = 0.05
TIMEOUT_AFTER = 0.1


@dataclass
class FakeSession:
    id: str
    cwd: str


class RecordingSupervisor:
    """Stands in for SessionSupervisor: records every write."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.writes: list[tuple[str, str]] = []
        self.accept = True

    def add(self, session_id: str, cwd: str) -> FakeSession:
        session = FakeSession(session_id, cwd)
        self.sessions.append(session)
        return session

    def find_by_cwd(self, cwd: str) -> FakeSession | None:
        for session in reversed(self.sessions):
            if session.cwd == cwd:
                return session
        return None

    def send_input(self, session_id: str, text: str) -> bool:
        if not self.accept:
            return False
        self.writes.append((session_id, text))
        return True


def drain(q: asyncio.Queue[WireEvent | None]) -> list[WireEvent]:
    events = []
    while not q.empty():
        event = q.get_nowait()
        if event is not None:
            events.append(event)
    return events


def bash(command: str, cwd: str = "/work") -> ToolRequest:
    return ToolRequest(session_id="s1", tool_name="Bash", tool_input={"command": command}, cwd=cwd)


def question(text: str, labels: list[str], multi: bool = False) -> dict:
    return {
        "question": text,
        "header": text.split()[0],
        "options": [{"label": label, "description": ""} for label in labels],
        "multiSelect": multi,
    }


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def supervisor() -> RecordingSupervisor:
    sup = RecordingSupervisor()
    sup.add("session-1", "/work")
    return sup


@pytest.fixture
def broker(wire: Wire, supervisor: RecordingSupervisor) -> DecisionBroker:
    config = ApprovalConfig(
        warning_after=WARNING_AFTER, timeout_after=TIMEOUT_AFTER, question_expiry=TIMEOUT_AFTER
    )
    return DecisionBroker(supervisor, wire=wire, config=config)  # type: ignore[arg-type]


@pytest.fixture
def channel(wire: Wire) -> asyncio.Queue[WireEvent | None]:
    """A decision channel listening to every topic."""
    return wire.subscribe()


async def next_request(channel: asyncio.Queue[WireEvent | None]) -> WireEvent:
    while True:
        event = await asyncio.wait_for(channel.get(), timeout=1)
        assert event is not None
        if event.type == EventType.APPROVAL_REQUEST:
            return event


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


class TestDecision:
    def test_hook_response(self) -> None:
        decision = Decision("deny", "nope")
        assert not decision.allowed
        assert decision.to_hook_response() == {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": "nope",
            }
        }


# ---------------------------------------------------------------------------
# Policy short-circuits
# ---------------------------------------------------------------------------


class TestAutoRules:
    async def test_safe_read_is_silent(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        req = ToolRequest(tool_name="Read", tool_input={"file_path": "/etc/passwd"})
        decision = await broker.request_decision(req)
        assert decision.decision == "allow"
        assert decision.reason == "Read-only operations are safe"
        assert drain(channel) == []
        assert broker.pending_approvals() == []

    async def test_default_deny(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        decision = await broker.request_decision(bash("git push --force origin main"))
        assert decision.decision == "deny"
        assert decision.reason == "Force push can destroy remote history"
        assert drain(channel) == []

    async def test_user_rule(self, broker: DecisionBroker, channel) -> None:
        broker.set_rules(
            [AutoApproveRule(name="npm", match=RuleMatch(command_pattern=r"^npm test"), action="allow")]
        )
        decision = await broker.request_decision(bash("npm test"))
        assert decision.allowed
        assert decision.reason == "Matched rule npm"

    async def test_no_channel_denies(self, broker: DecisionBroker) -> None:
        decision = await broker.request_decision(bash("make deploy"))
        assert decision.decision == "deny"
        assert decision.reason == "No decision channel connected"

    async def test_no_wire_denies(self, supervisor: RecordingSupervisor) -> None:
        broker = DecisionBroker(supervisor)  # type: ignore[arg-type]
        decision = await broker.request_decision(bash("make deploy"))
        assert decision.reason == "No decision channel connected"

    async def test_unrelated_subscriber_is_not_a_channel(
        self, broker: DecisionBroker, wire: Wire
    ) -> None:
        wire.subscribe([EventType.SESSION_OUTPUT])
        decision = await broker.request_decision(bash("make deploy"))
        assert decision.reason == "No decision channel connected"


# ---------------------------------------------------------------------------
# Pending approvals
# ---------------------------------------------------------------------------


class TestPendingApproval:
    async def test_timeout_with_warning(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("rm -rf /tmp/x")))
        request = await next_request(channel)
        approval = request.data["approval"]
        assert approval["id"] == "req-1"
        assert approval["tool_name"] == "Bash"
        assert approval["summary"] == "rm -rf /tmp/x"
        assert approval["escalation"] == "dangerous"
        assert request.data["warning"].startswith("⚠️⚠️ DANGEROUS")
        assert [p.id for p in broker.pending_approvals()] == ["req-1"]

        decision = await asyncio.wait_for(task, timeout=2)
        assert decision.decision == "deny"
        assert decision.reason == "timed out"
        assert decision.escalation is not None
        assert decision.escalation.level == EscalationLevel.DANGEROUS

        events = drain(channel)
        assert [e.type for e in events] == [EventType.APPROVAL_WARNING, EventType.APPROVAL_TIMEOUT]
        assert events[0].data["remaining"] == pytest.approx(TIMEOUT_AFTER - WARNING_AFTER)
        assert events[1].data == {"approval_id": "req-1", "tool_name": "Bash"}
        assert broker.pending_approvals() == []

        # A click arriving after the timeout changes nothing
        assert broker.resolve("req-1", "allow") is False
        [expired] = drain(channel)
        assert expired.type == EventType.APPROVAL_EXPIRED

    async def test_resolve_is_at_most_once(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make deploy")))
        await next_request(channel)

        assert broker.resolve("req-1", "allow") is True
        assert broker.resolve("req-1", "deny") is False

        decision = await task
        assert decision.decision == "allow"
        assert decision.reason == "Approved via decision channel"

        events = drain(channel)
        assert [e.type for e in events] == [EventType.APPROVAL_RESOLVED, EventType.APPROVAL_EXPIRED]
        assert events[0].data["decision"] == "allow"

    async def test_resolve_cancels_timers(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make deploy")))
        await next_request(channel)
        broker.resolve("req-1", "deny", "not now")
        assert (await task).reason == "not now"

        await asyncio.sleep(TIMEOUT_AFTER * 2)
        assert [e.type for e in drain(channel)] == [EventType.APPROVAL_RESOLVED]

    async def test_deny_default_reason(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make deploy")))
        await next_request(channel)
        broker.resolve("req-1", "deny")
        assert (await task).reason == "Denied via decision channel"

    async def test_unknown_decision_is_ignored(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make deploy")))
        await next_request(channel)
        assert broker.resolve("req-1", "maybe") is False  # type: ignore[arg-type]
        assert len(broker.pending_approvals()) == 1
        broker.resolve("req-1", "allow")
        assert (await task).allowed

    async def test_resolve_unknown_id(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        assert broker.resolve("req-404", "allow") is False
        [event] = drain(channel)
        assert event.type == EventType.APPROVAL_EXPIRED
        assert event.data["approval_id"] == "req-404"

    async def test_independent_requests(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        first = asyncio.create_task(broker.request_decision(bash("make a")))
        second = asyncio.create_task(broker.request_decision(bash("make b")))
        await next_request(channel)
        await next_request(channel)
        broker.resolve("req-2", "deny")
        broker.resolve("req-1", "allow")
        assert (await first).allowed
        assert not (await second).allowed

    async def test_caller_supplied_id(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make"), request_id="hook-7"))
        request = await next_request(channel)
        assert request.data["approval"]["id"] == "hook-7"
        broker.resolve("hook-7", "allow")
        assert (await task).allowed

    async def test_cancelled_caller_drops_entry(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make")))
        await next_request(channel)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert broker.pending_approvals() == []
        await asyncio.sleep(TIMEOUT_AFTER * 2)
        assert drain(channel) == []

    async def test_shutdown_denies_pending(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make")))
        await next_request(channel)
        broker.shutdown()
        decision = await task
        assert decision.decision == "deny"
        assert decision.reason == "Broker shutting down"


# ---------------------------------------------------------------------------
# Allow-all mode
# ---------------------------------------------------------------------------


class TestAllowAll:
    async def test_allow_all_approves_current_and_later(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        task = asyncio.create_task(broker.request_decision(bash("make")))
        await next_request(channel)
        assert broker.allow_all("req-1") is True
        decision = await task
        assert decision.reason == "Approved (Allow All mode enabled)"
        drain(channel)

        later = await broker.request_decision(bash("git reset --hard"))
        assert later.allowed
        assert later.reason == "Auto-approved (Allow All mode)"
        [event] = drain(channel)
        assert event.type == EventType.ESCALATION
        assert event.data["level"] == "dangerous"

        await broker.request_decision(bash("ls"))
        assert drain(channel) == []  # safe: no escalation notice
        assert broker.auto_approve_count == 2

    async def test_rules_still_apply_in_allow_all(self, broker: DecisionBroker) -> None:
        broker.auto_approve_mode = True
        decision = await broker.request_decision(bash("rm -rf ~"))
        assert decision.decision == "deny"
        assert broker.auto_approve_count == 0

    async def test_stop_allow_all(self, broker: DecisionBroker, channel) -> None:
        broker.auto_approve_mode = True
        await broker.request_decision(bash("make"))
        assert broker.stop_allow_all() == 1
        assert broker.auto_approve_mode is False
        assert broker.auto_approve_count == 0


# ---------------------------------------------------------------------------
# Structured questions
# ---------------------------------------------------------------------------


class TestQuestionInterception:
    async def test_ask_user_question_is_allowed_and_registered(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        req = ToolRequest(
            tool_name="AskUserQuestion",
            tool_input={"questions": [question("Which db?", ["Postgres", "SQLite"])]},
            cwd="/work",
        )
        decision = await broker.request_decision(req)
        assert decision.allowed
        assert decision.reason == "AskUserQuestion intercepted for remote answering"

        qset = broker.get_questions("req-1")
        assert qset is not None
        assert qset.cwd == "/work"
        assert qset.questions[0].options[1].label == "SQLite"

        [event] = drain(channel)
        assert event.type == EventType.QUESTIONS
        assert event.data["question_set"]["request_id"] == "req-1"

    async def test_malformed_questions_still_allowed(self, broker: DecisionBroker) -> None:
        req = ToolRequest(
            tool_name="AskUserQuestion",
            tool_input={"questions": [{"options": "not a list"}]},
            cwd="/work",
        )
        decision = await broker.request_decision(req)
        assert decision.allowed
        assert broker.pending_questions() == []


class TestQuestionAnswering:
    async def test_single_question_auto_submits(
        self,
        broker: DecisionBroker,
        supervisor: RecordingSupervisor,
        channel: asyncio.Queue[WireEvent | None],
    ) -> None:
        broker.register_questions("q1", "/work", [question("Which db?", ["A", "B", "C", "D"])])
        result = broker.select_option("q1", 0, 2)
        assert result.accepted and result.submitted
        assert supervisor.writes == [("session-1", DOWN + DOWN + ENTER)]
        assert broker.get_questions("q1") is None
        types = [e.type for e in drain(channel)]
        assert types == [EventType.QUESTIONS, EventType.QUESTION_UPDATE, EventType.QUESTIONS_SUBMITTED]

    async def test_two_questions_need_both_answers(
        self, broker: DecisionBroker, supervisor: RecordingSupervisor
    ) -> None:
        broker.register_questions(
            "q2",
            "/work",
            [question("Which db?", ["A", "B"]), question("Which cache?", ["X", "Y", "Z"])],
        )
        result = broker.select_option("q2", 0, 1)
        assert result.accepted and not result.submitted

        rejected = broker.submit("q2")
        assert not rejected.ok
        assert rejected.unanswered == 1
        assert "Question 2" in rejected.reason
        assert supervisor.writes == []

        broker.select_option("q2", 1, 2)
        submitted = broker.submit("q2")
        assert submitted.ok
        assert submitted.session_id == "session-1"
        assert supervisor.writes == [("session-1", DOWN + ENTER + DOWN + DOWN + ENTER)]
        assert broker.submit("q2").ok is False

    async def test_multi_select_toggles(
        self, broker: DecisionBroker, supervisor: RecordingSupervisor
    ) -> None:
        broker.register_questions("q3", "/work", [question("Which envs?", ["a", "b", "c"], multi=True)])
        broker.select_option("q3", 0, 0)
        broker.select_option("q3", 0, 2)
        result = broker.select_option("q3", 0, 0)
        assert result.accepted and not result.submitted
        qset = broker.get_questions("q3")
        assert qset is not None
        assert qset.selections[0] == {2}

        assert broker.submit("q3").ok
        assert supervisor.writes == [("session-1", DOWN + DOWN + SPACE + ENTER)]

    async def test_toggling_everything_off_is_unanswered(self, broker: DecisionBroker) -> None:
        broker.register_questions("q4", "/work", [question("Which?", ["a", "b"], multi=True)])
        broker.select_option("q4", 0, 1)
        broker.select_option("q4", 0, 1)
        assert broker.submit("q4").unanswered == 0

    async def test_custom_text_auto_submits(
        self, broker: DecisionBroker, supervisor: RecordingSupervisor
    ) -> None:
        broker.register_questions("q5", "/work", [question("Which db?", ["A", "B"])])
        result = broker.set_custom_text("q5", 0, "DynamoDB")
        assert result.submitted
        assert supervisor.writes == [("session-1", DOWN + DOWN + "DynamoDB" + ENTER)]

    async def test_option_replaces_custom_text(self, broker: DecisionBroker) -> None:
        broker.register_questions(
            "q6",
            "/work",
            [question("Which?", ["a", "b"], multi=True), question("Other?", ["x", "y"])],
        )
        broker.set_custom_text("q6", 0, "something else")
        broker.select_option("q6", 0, 1)
        qset = broker.get_questions("q6")
        assert qset is not None
        assert qset.selections[0] == {1}
        assert 0 not in qset.custom_texts

    async def test_empty_custom_text_rejected(self, broker: DecisionBroker) -> None:
        broker.register_questions("q7", "/work", [question("Which?", ["a", "b"])])
        assert not broker.set_custom_text("q7", 0, "").accepted

    async def test_out_of_range_selection(self, broker: DecisionBroker) -> None:
        broker.register_questions("q8", "/work", [question("Which?", ["a", "b"])])
        assert not broker.select_option("q8", 1, 0).accepted
        assert not broker.select_option("q8", 0, 5).accepted
        assert not broker.select_option("missing", 0, 0).accepted

    async def test_no_session_keeps_set(self, broker: DecisionBroker) -> None:
        broker.register_questions("q9", "/elsewhere", [question("Which?", ["a", "b"])])
        result = broker.select_option("q9", 0, 0)
        assert result.accepted and not result.submitted
        assert "No active session" in result.reason
        assert broker.get_questions("q9") is not None

    async def test_failed_write_keeps_set(
        self, broker: DecisionBroker, supervisor: RecordingSupervisor
    ) -> None:
        supervisor.accept = False
        broker.register_questions("q10", "/work", [question("Which?", ["a", "b"])])
        assert not broker.select_option("q10", 0, 1).submitted
        assert broker.get_questions("q10") is not None
        supervisor.accept = True
        assert broker.submit("q10").ok

    async def test_question_set_expires_silently(
        self, broker: DecisionBroker, channel: asyncio.Queue[WireEvent | None]
    ) -> None:
        broker.register_questions("q11", "/work", [question("Which?", ["a", "b"])])
        drain(channel)
        await asyncio.sleep(TIMEOUT_AFTER * 2)
        assert broker.get_questions("q11") is None
        assert drain(channel) == []
        assert not broker.submit("q11").ok

    async def test_attach_message(self, broker: DecisionBroker) -> None:
        broker.register_questions("q12", "/work", [Question(question="Which?", options=[])])
        assert broker.attach_message("q12", {"chat": 1, "message": 42})
        qset = broker.get_questions("q12")
        assert qset is not None
        assert qset.message_handles == [{"chat": 1, "message": 42}]
        assert not broker.attach_message("missing", 1)

    async def test_shutdown_clears_questions(self, broker: DecisionBroker) -> None:
        broker.register_questions("q13", "/work", [question("Which?", ["a", "b"])])
        broker.shutdown()
        assert broker.pending_questions() == []
