"""Output classifier — turn raw terminal output into a structured prompt.

The agent's TUI renders questions like::

    Would you like to proceed?
    ❯ 1. Yes, and auto-accept edits
      2. Yes, and manually approve edits
      3. No, keep planning

    Enter to select · ↑/↓ to navigate · Esc to cancel

The prompt sits at the bottom of the chunk, usually under plan text or
tool output, so the option block is located by searching backwards. The
signals overlap (a numbered menu can also contain "(y/n)" text), so the
classifiers are tried in a fixed order and the first hit wins.
"""

from __future__ import annotations

import logging
import re

from termbroker.prompt.models import ParsedPrompt, PromptOption, PromptType
from termbroker.text import clean_terminal_text

logger = logging.getLogger(__name__)

CURSOR_MARKERS = ("❯", "►")
SELECTED_RADIO = ("●", "■", "◉")
FOOTER_PREFIXES = ("Enter to", "ctrl-", "Tab/", "Esc to")

_NUMBERED_RE = re.compile(r"^[❯►]?\s*(\d+)[.)]\s*(.+)$")
_RADIO_RE = re.compile(r"^[❯►]?\s*[○●□■◉◎]\s*(.+)$")
_SEPARATOR_RE = re.compile(r"^[-=─━]+$")

_YES_NO_RE = re.compile(r"[(\[]\s*(?:y|yes)\s*/\s*(?:n|no)\s*[)\]]", re.IGNORECASE)

_PERMISSION_RES = [
    re.compile(r"Allow\s+(?:Claude|this tool)\s+to\s+(.+?)\?", re.IGNORECASE),
    re.compile(r"Do you want to allow\s+(.+?)\?", re.IGNORECASE),
    re.compile(r"Permission\s+(?:needed|required)\s+to\s+(.+)", re.IGNORECASE),
    re.compile(r"May\s+I\s+(.+?)\?", re.IGNORECASE),
]

_COMPLETION_RES = [
    re.compile(r"[✓✔]\s*(?:Task\s+)?(?:completed|done|finished)", re.IGNORECASE),
    re.compile(r"^\s*Done!?\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*Finished!?\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*Complete!?\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"successfully\s+(?:completed|finished)", re.IGNORECASE),
]


class OutputClassifier:
    """Stateless ``text -> prompt-or-None`` parser."""

    def classify(self, chunk: str) -> ParsedPrompt | None:
        cleaned = clean_terminal_text(chunk).replace("\r\n", "\n")

        for parse in (
            self._parse_multi_option,
            self._parse_yes_no,
            self._parse_permission,
            self._parse_completion,
        ):
            prompt = parse(cleaned, chunk)
            if prompt is not None:
                logger.debug("Classified chunk as %s", prompt.type.value)
                return prompt
        return None

    # ------------------------------------------------------------------
    # Multi-option menus
    # ------------------------------------------------------------------

    def _parse_multi_option(self, cleaned: str, raw: str) -> ParsedPrompt | None:
        lines = [line.strip() for line in cleaned.split("\n")]

        start = self._find_cursor_line(lines)
        if start != -1:
            # The cursor may sit on a later option after arrow navigation.
            while start > 0 and self._is_option_line(lines[start - 1]):
                start -= 1
        else:
            start = self._find_numbered_after_question(lines)
        if start == -1:
            return None

        options = self._collect_options(lines, start)
        if len(options) < 2:
            return None

        return ParsedPrompt(
            type=PromptType.MULTI_OPTION,
            question=self._find_question(lines, start),
            options=options,
            raw=raw,
        )

    @staticmethod
    def _is_option_line(line: str) -> bool:
        return bool(_NUMBERED_RE.match(line) or _RADIO_RE.match(line))

    @staticmethod
    def _find_cursor_line(lines: list[str]) -> int:
        for i in range(len(lines) - 1, -1, -1):
            if any(marker in lines[i] for marker in CURSOR_MARKERS):
                return i
        return -1

    @staticmethod
    def _find_numbered_after_question(lines: list[str]) -> int:
        for i in range(len(lines) - 2, -1, -1):
            if not lines[i].endswith("?"):
                continue
            for j in range(i + 1, len(lines)):
                if not lines[j]:
                    continue
                if _NUMBERED_RE.match(lines[j]):
                    return j
                break
        return -1

    @staticmethod
    def _find_question(lines: list[str], start: int) -> str | None:
        i = start - 1
        while i >= 0 and not lines[i]:
            i -= 1
        for i in range(i, -1, -1):
            line = lines[i]
            if not line or _SEPARATOR_RE.match(line):
                break
            if line.endswith("?"):
                return line
        return None

    @staticmethod
    def _collect_options(lines: list[str], start: int) -> list[PromptOption]:
        options: list[PromptOption] = []
        for line in lines[start:]:
            if not line:
                continue
            if line.startswith(FOOTER_PREFIXES):
                break

            match = _NUMBERED_RE.match(line)
            if match:
                options.append(
                    PromptOption(
                        index=int(match.group(1)),
                        label=match.group(2).strip(),
                        is_selected=any(m in line for m in CURSOR_MARKERS),
                    )
                )
                continue

            match = _RADIO_RE.match(line)
            if match:
                bullet = line.lstrip("❯► ")[:1]
                options.append(
                    PromptOption(
                        index=len(options) + 1,
                        label=match.group(1).strip(),
                        is_selected=bullet in SELECTED_RADIO,
                    )
                )
                continue

            if options:
                break
        return options

    # ------------------------------------------------------------------
    # Single-line prompts
    # ------------------------------------------------------------------

    def _parse_yes_no(self, cleaned: str, raw: str) -> ParsedPrompt | None:
        match = _YES_NO_RE.search(cleaned)
        if not match:
            return None
        before = cleaned[: match.start()]
        line_start = before.rfind("\n") + 1
        question = before[line_start:].strip() or before.strip()
        return ParsedPrompt(
            type=PromptType.YES_NO,
            question=question or None,
            options=[PromptOption(1, "Yes"), PromptOption(2, "No")],
            raw=raw,
        )

    def _parse_permission(self, cleaned: str, raw: str) -> ParsedPrompt | None:
        for pattern in _PERMISSION_RES:
            match = pattern.search(cleaned)
            if match:
                return ParsedPrompt(
                    type=PromptType.PERMISSION,
                    question=match.group(0).strip(),
                    options=[PromptOption(1, "Allow"), PromptOption(2, "Deny")],
                    raw=raw,
                )
        return None

    def _parse_completion(self, cleaned: str, raw: str) -> ParsedPrompt | None:
        if any(pattern.search(cleaned) for pattern in _COMPLETION_RES):
            return ParsedPrompt(type=PromptType.COMPLETION, raw=raw)
        return None

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------

    @staticmethod
    def input_for_option(prompt: ParsedPrompt, option_index: int) -> str:
        """Keystrokes that pick ``option_index`` (1-based) on ``prompt``.

        A digit on a numbered menu selects and advances by itself, so no
        Enter follows it.
        """
        if prompt.type == PromptType.MULTI_OPTION:
            return str(option_index)
        if prompt.type in (PromptType.YES_NO, PromptType.PERMISSION):
            return "y\r" if option_index == 1 else "n\r"
        return "\r"


_default = OutputClassifier()


def classify(chunk: str) -> ParsedPrompt | None:
    return _default.classify(chunk)


def get_input_for_option(prompt: ParsedPrompt, option_index: int) -> str:
    return OutputClassifier.input_for_option(prompt, option_index)
