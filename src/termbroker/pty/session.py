"""Agent session — one interactive coding agent running in a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import shlex
import signal
import struct
import subprocess
import termios
import time
from dataclasses import dataclass, field
from typing import Callable, Literal

from termbroker.prompt.models import ParsedPrompt
from termbroker.pty.buffer import OutputBuffer

logger = logging.getLogger(__name__)

PermissionMode = Literal["plan", "auto", "ask", "default"]
PERMISSION_MODES: tuple[str, ...] = ("plan", "auto", "ask", "default")

# Agent CLI flag for each mode; "default" passes no flag.
_MODE_FLAGS = {
    "plan": "plan",
    "auto": "bypassPermissions",
    "ask": "default",
}

_READ_SIZE = 4096
# Seconds between checks on whether the agent process has exited.
_POLL_INTERVAL = 0.1
# Upper bound on reads after exit; a surviving child may keep writing.
_DRAIN_READS = 64


class SessionStatus(enum.Enum):
    """Lifecycle states for an agent session.

    ``active`` and ``waiting`` may alternate; ``completed`` is terminal.
    """

    ACTIVE = "active"
    WAITING = "waiting"  # A prompt is on screen
    COMPLETED = "completed"


def build_agent_command(
    task: str,
    mode: str = "default",
    executable: str = "claude",
    shell: str = "/bin/sh",
) -> list[str]:
    """Command line that launches the agent through a login shell.

    Going through ``shell -l -c`` resolves the agent on the user's PATH.
    ``--`` keeps a task starting with ``-`` from being read as a flag.
    """
    agent = [executable]
    flag = _MODE_FLAGS.get(mode)
    if flag:
        agent += ["--permission-mode", flag]
    agent += ["--", task]
    return [shell, "-l", "-c", shlex.join(agent)]


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


@dataclass
class AgentSession:
    """A supervised agent process.

    Wraps the agent with:
    - Process group isolation (start_new_session) for safe tree-killing
    - Bounded line and raw output buffers
    - Prompt tracking (current prompt + last announcement time)
    - Output and exit callbacks, both invoked on the event loop

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    id: str
    task: str = ""
    cwd: str = field(default_factory=os.getcwd)
    permission_mode: PermissionMode = "default"
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 120
    rows: int = 40
    buffer: OutputBuffer = field(default_factory=OutputBuffer)
    created_at: float = field(default_factory=time.time)

    current_prompt: ParsedPrompt | None = None
    last_prompt_time: float | None = None
    exit_code: int | None = None

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _watch_task: asyncio.Task | None = field(default=None, init=False)
    _decoder: codecs.IncrementalDecoder | None = field(default=None, init=False)
    _pending_input: bytearray = field(default_factory=bytearray, init=False)
    _writer_registered: bool = field(default=False, init=False)
    _status: SessionStatus = field(default=SessionStatus.ACTIVE, init=False)
    _exit_notified: bool = field(default=False, init=False)
    _on_output: Callable[[AgentSession, str], None] | None = field(
        default=None, init=False
    )
    _on_exit: Callable[[AgentSession, int | None], None] | None = field(
        default=None, init=False
    )

    def set_on_output(self, callback: Callable[[AgentSession, str], None]) -> None:
        """Set a callback receiving each decoded output chunk."""
        self._on_output = callback

    def set_on_exit(self, callback: Callable[[AgentSession, int | None], None]) -> None:
        """Set a callback invoked once when the process is gone.

        The callback receives (session, exit_code). It fires whether the
        process exited on its own or was killed.
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the agent in a new PTY with its own process group."""
        master_fd, slave_fd = pty.openpty()

        env = {**os.environ, **self.env}
        env["TERM"] = "xterm-256color"
        env["FORCE_COLOR"] = "1"

        try:
            _set_winsize(slave_fd, self.rows, self.cols)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                env=env,
                cwd=self.cwd,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._status = SessionStatus.ACTIVE

        # Output is read by the loop's selector; no thread is parked per session.
        os.set_blocking(master_fd, False)
        # A multi-byte character can straddle two reads.
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._read_chunk)
        self._watch_task = asyncio.create_task(self._watch_process())

        logger.info(
            "Session %s started: pid=%d pgid=%d cwd=%s mode=%s",
            self.id,
            self._proc.pid,
            self._pgid,
            self.cwd,
            self.permission_mode,
        )

    def _read_chunk(self) -> bool:
        """Read one chunk from the PTY master and hand it on.

        Returns False when nothing more can be read now. Once every slave
        fd is closed the terminal is detached, so no later write can land
        on a reused fd number.
        """
        if self._master_fd < 0:
            return False
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return False
        except OSError:
            # EIO once the slave side closes
            data = b""
        if not data:
            self._close_master()
            return False

        text = self._decoder.decode(data) if self._decoder else ""
        if text and self._on_output:
            try:
                self._on_output(self, text)
            except Exception:
                logger.exception("Error in output callback for session %s", self.id)
        return True

    async def _watch_process(self) -> None:
        """Wait for the agent process itself to exit, then finish the session.

        Exit is taken from the process, not from terminal EOF: a background
        child can hold the slave open long after the agent is gone.
        """
        proc = self._proc
        if proc is None:
            return
        try:
            while proc.poll() is None:
                await asyncio.sleep(_POLL_INTERVAL)
            # Pick up what the process wrote just before exiting.
            for _ in range(_DRAIN_READS):
                if not self._read_chunk():
                    break
        finally:
            self._close_master()
        self._finish(proc.returncode)

    def _close_master(self) -> None:
        fd, self._master_fd = self._master_fd, -1
        if fd < 0:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(fd)
            if self._writer_registered:
                self._loop.remove_writer(fd)
        self._writer_registered = False
        if self._pending_input:
            logger.debug(
                "Session %s dropped %d unwritten bytes", self.id, len(self._pending_input)
            )
            self._pending_input.clear()
        try:
            os.close(fd)
        except OSError:
            pass
        logger.debug("Session %s terminal closed", self.id)

    def _finish(self, exit_code: int | None) -> None:
        self.exit_code = exit_code
        self._status = SessionStatus.COMPLETED
        self.current_prompt = None
        if self._exit_notified:
            return
        self._exit_notified = True
        logger.info("Session %s exited (code=%s)", self.id, exit_code)
        if self._on_exit:
            try:
                self._on_exit(self, exit_code)
            except Exception:
                logger.exception("Error in exit callback for session %s", self.id)

    def write(self, data: str) -> None:
        """Queue keystrokes for the PTY. Bytes are delivered in call order.

        Whatever the terminal cannot take at once is flushed when the
        master fd becomes writable again.
        """
        if self._status == SessionStatus.COMPLETED:
            raise RuntimeError(f"Session {self.id} has completed")
        if self._master_fd < 0:
            raise RuntimeError(f"Session {self.id} has no terminal")
        self._pending_input += data.encode()
        try:
            self._flush_input()
        except OSError:
            self._pending_input.clear()
            raise

    def _flush_input(self) -> None:
        while self._pending_input:
            try:
                written = os.write(self._master_fd, self._pending_input)
            except BlockingIOError:
                break
            del self._pending_input[:written]

        if self._pending_input and not self._writer_registered and self._loop is not None:
            self._loop.add_writer(self._master_fd, self._on_writable)
            self._writer_registered = True
        elif not self._pending_input and self._writer_registered and self._loop is not None:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False

    def _on_writable(self) -> None:
        try:
            self._flush_input()
        except OSError as e:
            logger.warning("Write to session %s failed: %s", self.id, e)
            self._close_master()

    def mark_active(self) -> None:
        if self._status != SessionStatus.COMPLETED:
            self._status = SessionStatus.ACTIVE

    def mark_waiting(self) -> None:
        if self._status != SessionStatus.COMPLETED:
            self._status = SessionStatus.WAITING

    def kill(self) -> None:
        """Kill the entire process tree. Status flips to completed at once.

        The exit callback still fires from the watcher once the process is
        reaped.
        """
        if self._status == SessionStatus.COMPLETED:
            return

        self._status = SessionStatus.COMPLETED
        self.current_prompt = None
        if self._proc is None:
            return
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing session %s: %s", self.id, e)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def alive(self) -> bool:
        return self._status != SessionStatus.COMPLETED

    @property
    def attached(self) -> bool:
        """True while the terminal is open and can take input."""
        return self._master_fd >= 0

    @property
    def age_minutes(self) -> int:
        return int((time.time() - self.created_at) // 60)

    async def wait_for_exit(self, timeout: float | None = None) -> int | None:
        """Wait until the watcher has reaped the process. Returns the exit code.

        Returns None on timeout.
        """
        if self._watch_task is None:
            return self.exit_code
        try:
            await asyncio.wait_for(asyncio.shield(self._watch_task), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.exit_code

    def __del__(self) -> None:
        """Ensure the process tree dies with the session object."""
        if self._proc is not None and self._proc.poll() is None:
            try:
                os.killpg(self._pgid, signal.SIGKILL)
            except OSError:
                pass
