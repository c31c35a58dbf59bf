"""Wire protocol — decouples the broker core from its decision channels.

Events flow from the supervisor and the decision broker to collaborators
(chat bot, CLI, audit writer). Each event kind is its own topic: a
collaborator subscribes to the topics it renders and receives nothing
else.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SESSION_OUTPUT = "session_output"
    PROMPT = "prompt"
    SESSION_EXIT = "session_exit"
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_WARNING = "approval_warning"
    APPROVAL_RESOLVED = "approval_resolved"
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_EXPIRED = "approval_expired"
    ESCALATION = "escalation"
    QUESTIONS = "questions"
    QUESTION_UPDATE = "question_update"
    QUESTIONS_SUBMITTED = "questions_submitted"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Subscription:
    queue: asyncio.Queue[WireEvent | None]
    types: frozenset[EventType] | None  # None = every topic

    def wants(self, event_type: EventType) -> bool:
        return self.types is None or event_type in self.types


class Wire:
    """Async message bus: core -> collaborator subscribers.

    Single-producer, multi-consumer broadcast, filtered per subscriber.
    """

    def __init__(self) -> None:
        self._subscribers: list[_Subscription] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to every subscriber of its topic.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for sub in self._subscribers:
            if sub.wants(event.type):
                sub.queue.put_nowait(event)

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self.send(WireEvent(type=event_type, data=data))

    # -- session supervisor ----------------------------------------------

    def send_output(self, session_id: str, data: str) -> None:
        self._emit(EventType.SESSION_OUTPUT, session_id=session_id, data=data)

    def send_prompt(self, session_id: str, prompt: dict[str, Any]) -> None:
        self._emit(EventType.PROMPT, session_id=session_id, prompt=prompt)

    def send_session_exit(
        self,
        session_id: str,
        task: str,
        exit_code: int | None,
        last_output: str = "",
    ) -> None:
        """Notify subscribers that a supervised agent exited."""
        self._emit(
            EventType.SESSION_EXIT,
            session_id=session_id,
            task=task,
            exit_code=exit_code,
            last_output=last_output[:500],
        )

    # -- approvals ---------------------------------------------------------

    def send_approval_request(self, approval: dict[str, Any], warning: str = "") -> None:
        self._emit(EventType.APPROVAL_REQUEST, approval=approval, warning=warning)

    def send_approval_warning(self, approval_id: str, remaining: float) -> None:
        self._emit(EventType.APPROVAL_WARNING, approval_id=approval_id, remaining=remaining)

    def send_approval_resolved(self, approval_id: str, decision: str, reason: str) -> None:
        self._emit(
            EventType.APPROVAL_RESOLVED,
            approval_id=approval_id,
            decision=decision,
            reason=reason,
        )

    def send_approval_timeout(self, approval_id: str, tool_name: str) -> None:
        self._emit(EventType.APPROVAL_TIMEOUT, approval_id=approval_id, tool_name=tool_name)

    def send_approval_expired(self, approval_id: str) -> None:
        self._emit(EventType.APPROVAL_EXPIRED, approval_id=approval_id)

    def send_escalation(self, tool_name: str, level: str, warning: str) -> None:
        self._emit(EventType.ESCALATION, tool_name=tool_name, level=level, warning=warning)

    # -- structured questions ---------------------------------------------

    def send_questions(self, question_set: dict[str, Any]) -> None:
        self._emit(EventType.QUESTIONS, question_set=question_set)

    def send_question_update(self, request_id: str, question_index: int, selection: list[int]) -> None:
        self._emit(
            EventType.QUESTION_UPDATE,
            request_id=request_id,
            question_index=question_index,
            selection=selection,
        )

    def send_questions_submitted(self, request_id: str, session_id: str) -> None:
        self._emit(EventType.QUESTIONS_SUBMITTED, request_id=request_id, session_id=session_id)

    # -- subscription ------------------------------------------------------

    def subscribe(
        self, types: Iterable[EventType] | None = None
    ) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events, optionally limited to some topics.

        Returns a queue to read from.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        topics = frozenset(types) if types is not None else None
        self._subscribers.append(_Subscription(queue=q, types=topics))
        return q

    def has_subscribers(self, event_type: EventType) -> bool:
        """True if someone would receive an event of this topic."""
        return not self._closed and any(s.wants(event_type) for s in self._subscribers)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for sub in self._subscribers:
            sub.queue.put_nowait(None)
