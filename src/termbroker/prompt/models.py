"""Parsed prompt data types."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class PromptType(enum.Enum):
    MULTI_OPTION = "multi_option"
    YES_NO = "yes_no"
    PERMISSION = "permission"
    COMPLETION = "completion"


@dataclass
class PromptOption:
    index: int  # 1-based, as rendered
    label: str
    is_selected: bool = False


@dataclass
class ParsedPrompt:
    """An on-screen question the agent is currently asking.

    Recomputed for every output chunk. ``raw`` keeps the chunk as received,
    control codes included.
    """

    type: PromptType
    raw: str = ""
    question: str | None = None
    options: list[PromptOption] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "question": self.question,
            "options": [
                {"index": o.index, "label": o.label, "is_selected": o.is_selected}
                for o in self.options
            ],
        }
