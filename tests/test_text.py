"""Tests for termbroker.text."""

from __future__ import annotations

from termbroker.text import (
    SUMMARY_MAX,
    clean_terminal_text,
    sanitize_binary_output,
    strip_ansi,
    summarize_tool_input,
    truncate,
)


class TestStripAnsi:
    def test_colors(self) -> None:
        assert strip_ansi("\x1b[1;31mred\x1b[0m") == "red"

    def test_private_modes_and_cursor(self) -> None:
        assert strip_ansi("\x1b[?25l\x1b[2K\x1b[1Gtext\x1b[?2004h") == "text"

    def test_osc_title(self) -> None:
        assert strip_ansi("\x1b]0;claude\x07after") == "after"
        assert strip_ansi("\x1b]8;;http://x\x1b\\link") == "link"

    def test_plain_text_untouched(self) -> None:
        assert strip_ansi("❯ 1. Yes") == "❯ 1. Yes"


class TestSanitize:
    def test_keeps_whitespace_controls(self) -> None:
        assert sanitize_binary_output("a\tb\nc\r") == "a\tb\nc\r"

    def test_drops_other_controls(self) -> None:
        assert sanitize_binary_output("a\x00b\x07c\x08") == "abc"

    def test_drops_c1_controls(self) -> None:
        assert sanitize_binary_output("a\x85b\x9bc") == "abc"

    def test_clean_terminal_text(self) -> None:
        assert clean_terminal_text("\x1b[32mok\x1b[0m\x00") == "ok"


class TestTruncate:
    def test_short(self) -> None:
        assert truncate("abc", 5) == "abc"

    def test_long(self) -> None:
        assert truncate("abcdef", 3) == "abc..."


class TestSummarizeToolInput:
    def test_bash(self) -> None:
        assert summarize_tool_input("Bash", {"command": "ls -la"}) == "ls -la"

    def test_file_tools(self) -> None:
        for tool in ("Read", "Write", "Edit", "MultiEdit"):
            assert summarize_tool_input(tool, {"file_path": "/a/b.py"}) == "/a/b.py"

    def test_search_tools(self) -> None:
        assert summarize_tool_input("Grep", {"pattern": "TODO"}) == "TODO"

    def test_task(self) -> None:
        assert summarize_tool_input("Task", {"prompt": "review"}) == "review"

    def test_other_tool_is_json(self) -> None:
        assert summarize_tool_input("WebFetch", {"url": "https://x"}) == '{"url": "https://x"}'

    def test_missing_key(self) -> None:
        assert summarize_tool_input("Bash", {}) == ""

    def test_truncated(self) -> None:
        summary = summarize_tool_input("Bash", {"command": "x" * 500})
        assert summary == "x" * SUMMARY_MAX + "..."
