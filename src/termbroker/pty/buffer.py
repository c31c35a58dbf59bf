"""Bounded output buffers for supervised agent sessions."""

from __future__ import annotations

from collections import deque

from termbroker.text import clean_terminal_text


class OutputBuffer:
    """Rolling buffer for one session's terminal output.

    Keeps two tracks:

    * **lines** — the last ``max_lines`` non-empty, ANSI-stripped lines,
      oldest dropped first. This is what observers read as "recent output".
    * **raw** — the verbatim terminal stream, control codes included,
      capped at ``max_raw_size`` characters and trimmed from the front.
      Suitable for re-rendering the screen.
    """

    def __init__(self, max_lines: int = 100, max_raw_size: int = 50_000) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._raw: str = ""
        self._max_raw_size = max_raw_size

    def append(self, chunk: str) -> None:
        """Append a raw chunk of terminal output to both tracks."""
        for line in clean_terminal_text(chunk).split("\n"):
            line = line.rstrip("\r")
            if line.strip():
                self._lines.append(line)

        self._raw += chunk
        if len(self._raw) > self._max_raw_size:
            self._raw = self._raw[-self._max_raw_size :]

    def read_tail(self, n: int = 20) -> list[str]:
        """Read the last N cleaned lines."""
        if n <= 0:
            return []
        lines = list(self._lines)
        return lines[-n:] if len(lines) > n else lines

    def read_all(self) -> str:
        """Read all buffered cleaned lines as a single string."""
        return "\n".join(self._lines)

    @property
    def raw(self) -> str:
        """The raw terminal stream kept so far."""
        return self._raw

    @property
    def line_count(self) -> int:
        """Current number of lines in the buffer."""
        return len(self._lines)
