"""Session supervisor — owns every agent session for the process lifetime."""

from __future__ import annotations

import errno
import logging
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Callable

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from termbroker.config import SessionConfig
from termbroker.errors import SpawnError
from termbroker.keys import describe_keys, keys_from_names
from termbroker.prompt.classifier import OutputClassifier
from termbroker.prompt.models import PromptType
from termbroker.pty.buffer import OutputBuffer
from termbroker.pty.session import (
    PERMISSION_MODES,
    AgentSession,
    PermissionMode,
    SessionStatus,
    build_agent_command,
)

if TYPE_CHECKING:
    from termbroker.session.wire import Wire

logger = logging.getLogger(__name__)

CommandFactory = Callable[[str, str], list[str]]


def _is_transient_pty_error(exc: BaseException) -> bool:
    """PTY pool exhaustion is worth a retry; anything else is not."""
    return isinstance(exc, OSError) and exc.errno in (errno.EAGAIN, errno.ENFILE)


@retry(
    retry=retry_if_exception(_is_transient_pty_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _start_with_retry(session: AgentSession) -> None:
    await session.start()


class SessionSupervisor:
    """Manages the lifecycle of agent sessions.

    The supervisor ensures:
    - Sessions are tracked by id (``session-N``, unique for the process)
    - Output is buffered, classified and announced with debouncing
    - Input only reaches sessions that have not completed
    - Exit notifications are fired via Wire (if attached)

    All methods run on the event loop; nothing here needs a lock.
    """

    def __init__(
        self,
        wire: Wire | None = None,
        config: SessionConfig | None = None,
        classifier: OutputClassifier | None = None,
        command_factory: CommandFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, AgentSession] = {}
        self._counter = 0
        self._wire = wire
        self._config = config or SessionConfig()
        self._classifier = classifier or OutputClassifier()
        self._command_factory = command_factory or self._default_command
        self._clock = clock

    def _default_command(self, task: str, mode: str) -> list[str]:
        return build_agent_command(
            task,
            mode,
            executable=self._config.agent_executable,
            shell=self._config.shell,
        )

    async def spawn(
        self,
        task: str,
        cwd: str,
        permission_mode: PermissionMode = "default",
    ) -> AgentSession:
        """Start an agent on ``task`` in ``cwd``.

        Returns as soon as the process is running, with status ``active``.
        Raises SpawnError if it cannot be started; nothing is registered
        in that case.
        """
        if permission_mode not in PERMISSION_MODES:
            raise SpawnError(task, cwd, f"unknown permission mode {permission_mode!r}")

        self._counter += 1
        session = AgentSession(
            id=f"session-{self._counter}",
            task=task,
            cwd=cwd,
            permission_mode=permission_mode,
            command=self._command_factory(task, permission_mode),
            cols=self._config.cols,
            rows=self._config.rows,
            buffer=OutputBuffer(
                max_lines=self._config.max_buffer_lines,
                max_raw_size=self._config.max_raw_size,
            ),
        )
        session.set_on_output(self.handle_output)
        session.set_on_exit(self._handle_exit)

        logger.info("Spawning session %s in %s (mode=%s)", session.id, cwd, permission_mode)
        logger.debug("Session %s task: %s", session.id, task)

        try:
            await _start_with_retry(session)
        except OSError as e:
            raise SpawnError(task, cwd, str(e)) from e

        self._sessions[session.id] = session
        return session

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def handle_output(self, session: AgentSession, chunk: str) -> None:
        """Buffer a chunk, classify it and announce any prompt.

        A prompt is announced (and the session marked ``waiting``) when no
        prompt is tracked, when its type changed, or when the debounce
        window has passed since the last announcement. Otherwise the
        tracked prompt is refreshed silently. Completion prompts are always
        announced and leave the status alone.
        """
        session.buffer.append(chunk)
        if self._wire:
            self._wire.send_output(session.id, chunk)

        prompt = self._classifier.classify(chunk)
        if prompt is None or not session.alive:
            return

        now = self._clock()
        if prompt.type == PromptType.COMPLETION:
            session.current_prompt = prompt
            session.last_prompt_time = now
            self._announce(session)
            return

        tracked = session.current_prompt
        is_new = tracked is None or tracked.type != prompt.type
        is_stale = (
            session.last_prompt_time is None
            or now - session.last_prompt_time >= self._config.prompt_debounce
        )

        session.current_prompt = prompt
        if is_new or is_stale:
            session.last_prompt_time = now
            session.mark_waiting()
            self._announce(session)

    def _announce(self, session: AgentSession) -> None:
        prompt = session.current_prompt
        if prompt is None:
            return
        logger.info("Detected %s prompt in session %s", prompt.type.value, session.id)
        if self._wire:
            self._wire.send_prompt(session.id, prompt.to_dict())

    def _handle_exit(self, session: AgentSession, exit_code: int | None) -> None:
        if self._wire:
            tail = "\n".join(session.buffer.read_tail(3))
            self._wire.send_session_exit(session.id, session.task, exit_code, tail)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def send_input(self, session_id: str, text: str) -> bool:
        """Write raw keystrokes to a session. Never raises.

        On success the session is ``active`` again and its tracked prompt
        is cleared, since the agent is consuming the input.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.error("Session %s not found", session_id)
            return False
        if session.status == SessionStatus.COMPLETED:
            logger.error("Session %s has already completed", session_id)
            return False
        if not session.attached:
            logger.error("Session %s has no terminal attached", session_id)
            return False

        logger.debug("Sending input to %s: %s", session_id, describe_keys(text))
        try:
            session.write(text)
        except (OSError, RuntimeError) as e:
            logger.warning("Write to session %s failed: %s", session_id, e)
            return False

        session.mark_active()
        session.current_prompt = None
        return True

    def send_keys(self, session_id: str, names: Iterable[str]) -> bool:
        """Send named keys (``down``, ``enter``, ``ctrl+c``...) to a session."""
        sequence = keys_from_names(names)
        if not sequence:
            return False
        return self.send_input(session_id, sequence)

    # ------------------------------------------------------------------
    # Lookup & introspection
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> AgentSession | None:
        """Get a session by ID."""
        return self._sessions.get(session_id)

    def find_by_cwd(self, cwd: str) -> AgentSession | None:
        """Most recently spawned live session working in exactly ``cwd``."""
        for session in reversed(list(self._sessions.values())):
            if session.cwd == cwd and session.alive:
                return session
        return None

    def get_context(self, session_id: str, lines: int = 20) -> list[str]:
        """Last ``lines`` lines of cleaned output, or ``[]``."""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return session.buffer.read_tail(lines)

    def get_raw_output(self, session_id: str) -> str:
        """Raw terminal output (control codes kept), or ``""``."""
        session = self._sessions.get(session_id)
        if session is None:
            return ""
        return session.buffer.raw

    def set_permission_mode(self, session_id: str, mode: PermissionMode) -> bool:
        """Record a mode change made inside the agent (e.g. via shift+tab)."""
        session = self._sessions.get(session_id)
        if session is None or mode not in PERMISSION_MODES:
            return False
        session.permission_mode = mode
        return True

    def list_sessions(self) -> list[dict[str, Any]]:
        """Summaries of every tracked session."""
        return [
            {
                "id": s.id,
                "task": s.task,
                "cwd": s.cwd,
                "status": s.status.value,
                "permission_mode": s.permission_mode,
                "age_minutes": s.age_minutes,
                "lines": s.buffer.line_count,
            }
            for s in self._sessions.values()
        ]

    def active_sessions(self) -> list[AgentSession]:
        return [s for s in self._sessions.values() if s.alive]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def kill(self, session_id: str) -> bool:
        """Kill a session. It stays listed as completed until ``cleanup()``."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        logger.info("Killing session %s", session_id)
        session.kill()
        return True

    def kill_all(self) -> None:
        """Kill every live session. Called on shutdown."""
        for session in self._sessions.values():
            session.kill()
        logger.info("All sessions killed")

    def cleanup(self) -> int:
        """Forget completed sessions. Returns how many were removed."""
        done = [sid for sid, s in self._sessions.items() if not s.alive]
        for sid in done:
            del self._sessions[sid]
        return len(done)

    def __len__(self) -> int:
        return len(self._sessions)
