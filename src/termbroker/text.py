"""Terminal text helpers — ANSI stripping, sanitising and summaries."""

from __future__ import annotations

import json
import re
from typing import Any

# CSI (cursor movement, colors, private modes like ``?25l``), OSC (window
# titles, hyperlinks) and the remaining two-byte escapes.
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ESC_RE = re.compile(r"\x1b[@-Z\\-_]")

SUMMARY_MAX = 200


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    text = _OSC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    return _ESC_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from output.

    Keeps printable chars, tabs, newlines, and carriage returns.
    Strips everything else (control chars, undefined code points, format chars).
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            if cp not in range(0xFFF9, 0xFFFC):
                cleaned.append(ch)
    return "".join(cleaned)


def clean_terminal_text(text: str) -> str:
    """ANSI-strip and sanitise a chunk of raw terminal output."""
    return sanitize_binary_output(strip_ansi(text))


def truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def summarize_tool_input(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Summarize tool input for logs and notifications (the key field only)."""
    if tool_name == "Bash":
        value = tool_input.get("command", "")
    elif tool_name in ("Read", "Write", "Edit", "MultiEdit"):
        value = tool_input.get("file_path", "")
    elif tool_name in ("Glob", "Grep"):
        value = tool_input.get("pattern", "")
    elif tool_name == "Task":
        value = tool_input.get("prompt", "")
    else:
        value = json.dumps(tool_input, default=str)
    return truncate(str(value or ""), SUMMARY_MAX)
