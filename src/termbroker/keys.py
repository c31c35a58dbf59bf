"""Keystroke synthesis for the agent's on-screen menus.

Structured answers are turned into the exact byte sequence a person would
type: arrow keys to move the highlight, space to toggle a checkbox, Enter
to confirm. Each question's cursor starts on its first option, and the
free-text entry ("Type something") sits directly after the listed options.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Protocol

UP = "\x1b[A"
DOWN = "\x1b[B"
RIGHT = "\x1b[C"
LEFT = "\x1b[D"
ENTER = "\r"
TAB = "\t"
SHIFT_TAB = "\x1b[Z"
SPACE = " "
ESCAPE = "\x1b"
CTRL_C = "\x03"

CUSTOM_TEXT = -1  # selection sentinel for the free-text option

KEY_MAP: dict[str, str] = {
    "up": UP,
    "down": DOWN,
    "left": LEFT,
    "right": RIGHT,
    "enter": ENTER,
    "return": ENTER,
    "tab": TAB,
    "shift+tab": SHIFT_TAB,
    "shifttab": SHIFT_TAB,
    "space": SPACE,
    "esc": ESCAPE,
    "escape": ESCAPE,
    "ctrl+c": CTRL_C,
    "ctrlc": CTRL_C,
    **{str(d): str(d) for d in range(10)},
}

_READABLE = [
    (UP, "↑"),
    (DOWN, "↓"),
    (RIGHT, "→"),
    (LEFT, "←"),
    (SHIFT_TAB, "⇤"),
    ("\r", "⏎"),
    ("\n", "↵"),
    ("\t", "⇥"),
    (" ", "␣"),
    (CTRL_C, "^C"),
    (ESCAPE, "⎋"),
]


class MenuQuestion(Protocol):
    @property
    def options(self) -> Sequence[object]: ...

    @property
    def multi_select(self) -> bool: ...


def keys_from_names(names: Iterable[str]) -> str:
    """Join named keys into one sequence; unknown names are dropped."""
    return "".join(KEY_MAP.get(name.lower(), "") for name in names)


def describe_keys(sequence: str) -> str:
    """Printable rendering of a keystroke sequence, for logs."""
    for seq, symbol in _READABLE:
        sequence = sequence.replace(seq, symbol)
    return sequence


def question_keystrokes(
    question: MenuQuestion,
    selection: Iterable[int],
    custom_text: str | None = None,
) -> str:
    """Keystrokes answering one question (0-based option indices)."""
    selected = set(selection)

    if CUSTOM_TEXT in selected:
        return DOWN * len(question.options) + (custom_text or "") + ENTER

    if question.multi_select:
        keys = []
        cursor = 0
        for index in sorted(selected):
            keys.append(DOWN * (index - cursor) + SPACE)
            cursor = index
        return "".join(keys) + ENTER

    index = min(selected) if selected else 0
    return DOWN * index + ENTER


def synthesize_answers(
    questions: Sequence[MenuQuestion],
    selections: Mapping[int, Iterable[int]],
    custom_texts: Mapping[int, str] | None = None,
) -> str:
    """The full sequence answering every question, in question order."""
    custom_texts = custom_texts or {}
    return "".join(
        question_keystrokes(q, selections.get(i, ()), custom_texts.get(i))
        for i, q in enumerate(questions)
    )
