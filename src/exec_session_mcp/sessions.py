"""Session store.

The only shared mutable structure of the server: a table of execution
sessions, each with its replay buffer, completion state and the handle of
its running interpreter (if any).

- SessionStore: create/get/delete plus the narrow mutations the runner,
  dispatcher and controller need
- SessionView / BufferSnapshot: immutable copies handed to readers

Thread safety: every operation takes the store lock, so the surface server
thread can read catch-up state while the event loop appends output.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TypeVar

__all__ = [
    "SessionState",
    "ExecutionResult",
    "SessionView",
    "BufferSnapshot",
    "SessionStore",
    "command_echo",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    """Execution state of a session.

    CREATED -> RUNNING -> COMPLETED, or CREATED -> FAILED when the
    interpreter could not be resolved or started.
    """

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


@dataclass(frozen=True)
class ExecutionResult:
    """Completion record of one execution.

    Attributes:
        stdout: Accumulated stdout text
        stderr: Accumulated stderr text
        exit_code: Process exit code, None when killed by a signal or never run
        was_interrupted: A user interrupt was sent to the process
        error: System error message (unsupported language, spawn failure)
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    was_interrupted: bool = False
    error: str | None = None

    @classmethod
    def failure(cls, message: str, stdout: str = "", stderr: str = "") -> "ExecutionResult":
        return cls(stdout=stdout, stderr=stderr, exit_code=None, error=message)

    def to_dict(self) -> dict[str, Any]:
        """Wire form sent to rendering surfaces and callers."""
        data: dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "wasInterrupted": self.was_interrupted,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def command_echo(code: str) -> str:
    """Synthetic first buffer chunk echoing the invoked command."""
    return f"\x1b[1;36m└─$ {code}\x1b[0m\r\n"


@dataclass
class _Session:
    session_id: int
    language: str
    code: str
    buffer: list[str]
    surface_id: str | None = None
    state: SessionState = SessionState.CREATED
    process: asyncio.subprocess.Process | None = None
    was_interrupted: bool = False
    last_result: ExecutionResult | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_complete(self) -> bool:
        return self.state.is_terminal


@dataclass(frozen=True)
class SessionView:
    """Read-only copy of a session at one point in time."""

    session_id: int
    language: str
    code: str
    state: SessionState
    buffer: tuple[str, ...]
    was_interrupted: bool
    last_result: ExecutionResult | None
    surface_id: str | None
    has_process: bool
    pid: int | None
    created_at: datetime

    @property
    def is_complete(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "language": self.language,
            "state": self.state.value,
            "isComplete": self.is_complete,
            "wasInterrupted": self.was_interrupted,
            "pid": self.pid,
            "createdAt": self.created_at.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class BufferSnapshot:
    """Catch-up answer for a surface attaching late.

    Attributes:
        session_id: Session identifier
        buffer: Everything written so far
        chunk_count: Number of buffer chunks; the next output seq
        is_complete: Whether the completion record is set
        last_result: The completion record, if complete
    """

    session_id: int
    buffer: str
    chunk_count: int
    is_complete: bool
    last_result: ExecutionResult | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "buffer": self.buffer,
            "isComplete": self.is_complete,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }


def _kill_process(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


class SessionStore:
    """Concurrency-safe table of execution sessions.

    Session ids are issued from a monotonically increasing counter and are
    never reused. Sessions are only mutated through the methods below;
    readers get SessionView/BufferSnapshot copies.

    Example:
        store = SessionStore()
        session_id = store.create("python", "print('hi')")
        store.begin_run(session_id)
        seq = store.append_output(session_id, "hi\\n")
        store.complete(session_id, ExecutionResult(stdout="hi\\n", exit_code=0))
        store.snapshot(session_id).buffer
    """

    def __init__(
        self,
        kill_process: Callable[[asyncio.subprocess.Process], None] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            kill_process: Forceful kill used when a session with a running
                process is deleted
        """
        self._sessions: dict[int, _Session] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._kill_process = kill_process or _kill_process

    # ------------------------------------------------------------------
    # Table
    # ------------------------------------------------------------------

    def create(self, language: str, code: str, surface_id: str | None = None) -> int:
        """Create a session and return its id.

        The buffer starts with an echo of the command.
        """
        with self._lock:
            session_id = next(self._ids)
            self._sessions[session_id] = _Session(
                session_id=session_id,
                language=language,
                code=code,
                buffer=[command_echo(code)],
                surface_id=surface_id,
            )
        logger.debug(f"Created session {session_id} ({language})")
        return session_id

    def get(self, session_id: int) -> Optional[SessionView]:
        """Return a copy of the session, or None if unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return self._view(session)

    def delete(self, session_id: int) -> bool:
        """Remove a session, killing its running process first.

        Returns:
            Whether the session existed
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.process is not None:
                logger.debug(
                    f"Killing pid={session.process.pid} before deleting session {session_id}"
                )
                try:
                    self._kill_process(session.process)
                except Exception as e:
                    logger.warning(f"Error killing process of session {session_id}: {e}")
                session.process = None
            del self._sessions[session_id]
        logger.debug(f"Deleted session {session_id}")
        return True

    def list(self) -> list[SessionView]:
        """All sessions, oldest first."""
        with self._lock:
            return [self._view(s) for s in sorted(self._sessions.values(), key=lambda s: s.session_id)]

    def running_ids(self) -> list[int]:
        """Ids of RUNNING sessions, including ones still spawning."""
        with self._lock:
            return [sid for sid, s in self._sessions.items() if s.state is SessionState.RUNNING]

    def set_surface(self, session_id: int, surface_id: str | None) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.surface_id = surface_id
            return True

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def begin_run(self, session_id: int) -> bool:
        """Move CREATED -> RUNNING. False if unknown or already run."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state is not SessionState.CREATED:
                return False
            session.state = SessionState.RUNNING
            return True

    def attach_process(self, session_id: int, process: asyncio.subprocess.Process) -> bool:
        """Hand ownership of a started process to the session.

        Returns False (and kills the process) when the session is gone,
        complete, or already owns a process.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_complete or session.process is not None:
                self._kill_process(process)
                return False
            session.process = process
        logger.debug(f"Session {session_id} owns pid={process.pid}")
        return True

    def append_output(self, session_id: int, text: str) -> Optional[int]:
        """Append a chunk to the buffer.

        Returns:
            The chunk's sequence number, or None if the session is unknown
            or already complete
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_complete:
                return None
            session.buffer.append(text)
            return len(session.buffer) - 1

    def complete(
        self,
        session_id: int,
        result: ExecutionResult,
        *,
        failed: bool = False,
    ) -> bool:
        """Record the completion result. One-shot.

        Args:
            session_id: Session identifier
            result: Completion record
            failed: Mark FAILED instead of COMPLETED

        Returns:
            True if this call completed the session
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_complete:
                return False
            session.process = None
            session.last_result = result
            session.state = SessionState.FAILED if failed else SessionState.COMPLETED
        logger.debug(
            f"Session {session_id} {'failed' if failed else 'completed'}: "
            f"exit_code={result.exit_code} interrupted={result.was_interrupted}"
        )
        return True

    def was_interrupted(self, session_id: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return bool(session and session.was_interrupted)

    def mark_interrupted(self, session_id: int) -> bool:
        """Flag a running session as interrupted.

        A session that is RUNNING but still spawning has no process yet;
        the flag is kept and applied once the process is attached.

        Returns:
            False if the session is unknown or not running
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state is not SessionState.RUNNING:
                return False
            session.was_interrupted = True
            return True

    # ------------------------------------------------------------------
    # Process access
    # ------------------------------------------------------------------

    def signal_process(
        self,
        session_id: int,
        action: Callable[[asyncio.subprocess.Process], T],
    ) -> Optional[T]:
        """Run ``action`` on the session's active process.

        The handle never leaves the store; ``action`` must not block.

        Returns:
            The action's return value, or None when there is no active process
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.process is None:
                return None
            return action(session.process)

    def write_input(self, session_id: int, data: bytes) -> bool:
        """Write bytes to the active process's stdin.

        Returns:
            False if there is no active process or its stdin is closed
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.process is None:
                return False
            stdin = session.process.stdin
            if stdin is None or stdin.is_closing():
                return False
            try:
                stdin.write(data)
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                logger.debug(f"stdin write failed for session {session_id}: {e}")
                return False
            return True

    # ------------------------------------------------------------------
    # Catch-up
    # ------------------------------------------------------------------

    def snapshot(self, session_id: int) -> Optional[BufferSnapshot]:
        """Buffered history and completion state, or None if unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return BufferSnapshot(
                session_id=session_id,
                buffer="".join(session.buffer),
                chunk_count=len(session.buffer),
                is_complete=session.is_complete,
                last_result=session.last_result,
            )

    @staticmethod
    def _view(session: _Session) -> SessionView:
        return SessionView(
            session_id=session.session_id,
            language=session.language,
            code=session.code,
            state=session.state,
            buffer=tuple(session.buffer),
            was_interrupted=session.was_interrupted,
            last_result=session.last_result,
            surface_id=session.surface_id,
            has_process=session.process is not None,
            pid=session.process.pid if session.process is not None else None,
            created_at=session.created_at,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
