"""PTY session supervision — the agent runs in a managed pseudo-terminal.

Every agent session runs with process group isolation, bounded output
buffers, prompt classification and automatic cleanup.
"""

from termbroker.pty.buffer import OutputBuffer
from termbroker.pty.manager import SessionSupervisor
from termbroker.pty.session import (
    PERMISSION_MODES,
    AgentSession,
    PermissionMode,
    SessionStatus,
    build_agent_command,
)

__all__ = [
    "PERMISSION_MODES",
    "AgentSession",
    "OutputBuffer",
    "PermissionMode",
    "SessionStatus",
    "SessionSupervisor",
    "build_agent_command",
]
