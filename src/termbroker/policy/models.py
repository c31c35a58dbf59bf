"""Inbound tool-invocation request, as delivered by the agent's permission hook."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolRequest(BaseModel):
    """A tool the supervised agent wants to run.

    Field names follow the hook payload (``session_id``, ``tool_name``,
    ``tool_input``, ``cwd``) so the JSON body validates directly. Extra
    payload keys such as ``transcript_path`` are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    session_id: str = ""
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    cwd: str = ""

    @property
    def command(self) -> str:
        """Shell command for Bash requests, or ``""``."""
        value = self.tool_input.get("command")
        return value if isinstance(value, str) else ""

    @property
    def file_path(self) -> str:
        """Target path for file tools, or ``""``."""
        value = self.tool_input.get("file_path") or self.tool_input.get("path")
        return value if isinstance(value, str) else ""
