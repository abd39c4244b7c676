"""Session lifecycle controller.

Ties the language registry, process runner, session store and streaming
dispatcher together behind the operations callers use:

- begin_session / execute: allocate a session and run code in it
- send_input / interrupt / close_session: control a running session
- attach / get_buffer: catch-up for surfaces attaching late

Per-session state machine:
    CREATED -> RUNNING -> COMPLETED
    CREATED -> FAILED (unsupported language, spawn error)

An interrupt while RUNNING sets wasInterrupted, asks the process to stop
cooperatively and kills it after the grace window. An interrupt that lands
while the interpreter is still spawning is applied as soon as it starts.
Closing a session kills a running process immediately and deletes the
session.

All methods must be called on the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import anyio

from .config import Config, PtyMode, get_config
from .dispatcher import RenderingSurface, StreamingDispatcher
from .languages import LanguageRegistry, UnsupportedLanguageError, default_registry
from .runtime import ProcessRunner, ProcessSpec, build_argv, pty_available
from .sessions import BufferSnapshot, ExecutionResult, SessionState, SessionStore

__all__ = ["SessionController", "SESSION_NOT_FOUND"]

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session not found"


def _exit_code(returncode: int | None) -> int | None:
    """Signal-terminated processes have no meaningful exit code."""
    if returncode is None or returncode < 0:
        return None
    return returncode


class SessionController:
    """Creates, runs, controls and tears down execution sessions.

    Example:
        controller = SessionController()

        # Headless
        result = await controller.execute("print('hi')", "python")

        # With a surface
        session_id = controller.begin_session("bash", "read name; echo $name")
        snapshot = controller.attach(session_id, surface)
        task = asyncio.create_task(controller.execute(code, "bash", session_id))
        controller.send_input(session_id, "world\\r")
        result = await task
        controller.close_session(session_id)
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        runner: ProcessRunner | None = None,
        store: SessionStore | None = None,
        dispatcher: StreamingDispatcher | None = None,
        languages: LanguageRegistry | None = None,
    ) -> None:
        self.config = config or get_config()
        self.runner = runner or ProcessRunner()
        self.store = store or SessionStore(kill_process=self.runner.kill)
        self.dispatcher = dispatcher or StreamingDispatcher(self.store)
        self.languages = languages or default_registry(self.config.languages)
        self.interrupt_grace = self.config.interrupt_grace
        self.workdir = self.config.workdir
        self.use_pty = self._resolve_pty(self.config.pty_mode)
        self._escalations: set[asyncio.Task[None]] = set()

        logger.debug(
            f"SessionController ready (pty={self.use_pty}, workdir={self.workdir}, "
            f"grace={self.interrupt_grace}s)"
        )

    @staticmethod
    def _resolve_pty(mode: PtyMode) -> bool:
        if mode is PtyMode.ALWAYS:
            return True
        if mode is PtyMode.NEVER:
            return False
        return pty_available()

    # ------------------------------------------------------------------
    # Creation and execution
    # ------------------------------------------------------------------

    def begin_session(
        self,
        language: str,
        code: str,
        surface: RenderingSurface | None = None,
    ) -> int:
        """Allocate a session before execution starts.

        Args:
            language: Language tag (resolved at execute time)
            code: Code the session will run
            surface: Rendering surface to attach right away

        Returns:
            The new session id
        """
        session_id = self.store.create(language, code)
        logger.info(f"Session {session_id} created ({language})")
        if surface is not None:
            self.attach(session_id, surface)
        return session_id

    async def execute(
        self,
        code: str,
        language: str,
        session_id: int | None = None,
    ) -> dict[str, Any]:
        """Run code and return the completion record.

        Without a session id the code runs in a hidden session that is
        removed afterwards.

        Returns:
            ``{stdout, stderr, exitCode, wasInterrupted}`` (plus ``error``),
            or ``{"error": "Session not found"}`` for an unknown session
        """
        if session_id is not None:
            return await self._execute(session_id, code, language)

        hidden_id = self.store.create(language, code)
        try:
            return await self._execute(hidden_id, code, language)
        finally:
            self.close_session(hidden_id)

    async def _execute(self, session_id: int, code: str, language: str) -> dict[str, Any]:
        view = self.store.get(session_id)
        if view is None:
            logger.warning(f"execute: session {session_id} not found")
            return {"error": SESSION_NOT_FOUND}
        if view.state is not SessionState.CREATED:
            return {"error": f"Session {session_id} already executed ({view.state.value})"}

        try:
            spec = self.languages.resolve(language)
        except UnsupportedLanguageError as e:
            logger.info(f"Session {session_id}: {e}")
            return self._fail(session_id, str(e))

        self.store.begin_run(session_id)
        argv = build_argv(spec, code, use_pty=self.use_pty)
        process_spec = ProcessSpec(argv=argv, cwd=self.workdir)

        def on_chunk(stream: str, text: str) -> None:
            seq = self.store.append_output(session_id, text)
            if seq is not None:
                self.dispatcher.publish_output(session_id, seq, stream, text)

        def on_spawn(process: asyncio.subprocess.Process) -> None:
            if self.store.attach_process(session_id, process) and self.store.was_interrupted(
                session_id
            ):
                # interrupt requested while spawning
                self._signal_interrupt(session_id)

        try:
            outcome = await self.runner.run(process_spec, on_chunk, on_spawn=on_spawn)
        except OSError as e:
            logger.warning(f"Session {session_id}: failed to start {argv[0]}: {e}")
            return self._fail(session_id, str(e))
        except asyncio.CancelledError:
            logger.info(f"Session {session_id}: execution cancelled")
            self._finish(
                session_id,
                ExecutionResult(
                    exit_code=None,
                    was_interrupted=True,
                    error="Execution cancelled",
                ),
            )
            raise

        result = ExecutionResult(
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=_exit_code(outcome.returncode),
            was_interrupted=self.store.was_interrupted(session_id),
        )
        self._finish(session_id, result)
        logger.info(
            f"Session {session_id} finished: exit_code={result.exit_code} "
            f"interrupted={result.was_interrupted}"
        )
        return result.to_dict()

    def _fail(self, session_id: int, message: str) -> dict[str, Any]:
        result = ExecutionResult.failure(message)
        self._finish(session_id, result, failed=True)
        return result.to_dict()

    def _finish(self, session_id: int, result: ExecutionResult, *, failed: bool = False) -> None:
        if self.store.complete(session_id, result, failed=failed):
            self.dispatcher.publish_completion(session_id, result)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def send_input(self, session_id: int, text: str) -> bool:
        """Relay surface input to the process. Dropped if nothing runs."""
        return self.dispatcher.relay_input(session_id, text)

    def interrupt(self, session_id: int) -> bool:
        """Interrupt a running session, escalating to a kill after the grace window.

        A session still spawning is interrupted as soon as its process starts.

        Returns:
            False if the session is not running
        """
        if not self.store.mark_interrupted(session_id):
            return False
        if not self.store.get(session_id).has_process:
            logger.info(f"Session {session_id} interrupt pending until spawn")
            return True
        self._signal_interrupt(session_id)
        return True

    def _signal_interrupt(self, session_id: int) -> None:
        path = self.store.signal_process(session_id, self.runner.interrupt)
        logger.info(f"Session {session_id} interrupted via {path}")

        task = asyncio.create_task(
            self._escalate(session_id),
            name=f"escalate-{session_id}",
        )
        self._escalations.add(task)
        task.add_done_callback(self._escalations.discard)

    async def _escalate(self, session_id: int) -> None:
        await anyio.sleep(self.interrupt_grace)
        if self.store.signal_process(session_id, self._force_kill):
            logger.warning(
                f"Session {session_id} still running {self.interrupt_grace}s "
                f"after interrupt, killed"
            )

    def _force_kill(self, process: asyncio.subprocess.Process) -> bool:
        self.runner.kill(process)
        return True

    def close_session(self, session_id: int) -> bool:
        """Tear down a session, killing a running process without grace.

        Returns:
            Whether the session existed
        """
        existed = self.store.delete(session_id)
        self.dispatcher.close(session_id)
        if existed:
            logger.info(f"Session {session_id} closed")
        return existed

    # ------------------------------------------------------------------
    # Surfaces
    # ------------------------------------------------------------------

    def attach(self, session_id: int, surface: RenderingSurface) -> Optional[BufferSnapshot]:
        """Catch up a surface and subscribe it to live events.

        Output already contained in the returned snapshot, and a completion
        already reported by it, are not delivered again.

        Returns:
            The snapshot, or None if the session is unknown
        """
        snapshot = self.store.snapshot(session_id)
        if snapshot is None:
            return None
        self.dispatcher.subscribe(
            session_id,
            surface,
            start_seq=snapshot.chunk_count,
            completion_seen=snapshot.is_complete,
        )
        self.store.set_surface(session_id, surface.surface_id)
        return snapshot

    def detach(self, session_id: int, surface_id: str) -> bool:
        return self.dispatcher.unsubscribe(session_id, surface_id)

    def get_buffer(self, session_id: int) -> Optional[dict[str, Any]]:
        """Catch-up query: ``{buffer, isComplete, lastResult}`` or None."""
        snapshot = self.store.snapshot(session_id)
        return snapshot.to_dict() if snapshot else None

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[dict[str, Any]]:
        """Session summaries with the number of attached surfaces."""
        return [
            {**view.to_dict(), "surfaces": self.dispatcher.subscriber_count(view.session_id)}
            for view in self.store.list()
        ]

    def has_running_sessions(self) -> bool:
        return bool(self.store.running_ids())

    def interrupt_all(self) -> int:
        """Interrupt every running session.

        Returns:
            Number of sessions interrupted
        """
        count = sum(1 for session_id in self.store.running_ids() if self.interrupt(session_id))
        if count:
            logger.info(f"Interrupted {count} running session(s)")
        return count

    async def shutdown(self) -> None:
        """Close every session and stop dispatching."""
        for view in self.store.list():
            self.close_session(view.session_id)
        for task in list(self._escalations):
            task.cancel()
        await self.dispatcher.aclose()
        logger.debug("SessionController shut down")
