"""Process runner for interpreter subprocesses.

exec-session-mcp runtime module

This module provides:
- Interpreter invocation building, optionally wrapped in a pseudo-terminal
- Cross-platform subprocess isolation (new session/process group)
- Concurrent stdout/stderr streaming in arrival order
- Cooperative interruption (Ctrl+C byte or SIGINT) and forced kill
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so signals reach the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- stdin stays open as a pipe for interactive input
- The `script` pseudo-terminal wrapper exists only on Linux; elsewhere the
  child sees plain pipes, so TTY-only prompts (passwords, isatty checks)
  behave non-interactively
- Under the wrapper the terminal line discipline applies: output lines end
  in CRLF, the child's stderr arrives merged into stdout, typed input is
  echoed, and the Ctrl+C byte becomes SIGINT for the interpreter
- The wrapper runs the interpreter in its own session, so a forced kill
  also signals every descendant found under /proc
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

from ..languages import LanguageSpec

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "ProcessOutcome",
    "build_argv",
    "descendant_pids",
    "pty_available",
    "shell_quote",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_LINUX = sys.platform.startswith("linux")

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

READ_CHUNK_SIZE = 4096
INTERRUPT_BYTE = b"\x03"
TERMINAL_ENV = {"TERM": "xterm-256color"}

# (stream name, decoded text)
ChunkCallback = Callable[[str, str], None]


def shell_quote(code: str) -> str:
    """Single-quote text for a POSIX shell.

    Embedded single quotes become close-quote, escaped quote, reopen-quote.
    """
    return "'" + code.replace("'", "'\\''") + "'"


def descendant_pids(pid: int) -> list[int]:
    """Descendants of ``pid`` read from /proc, nearest first.

    `script` runs the interpreter in a session of its own, so a signal to
    the wrapper's process group never reaches it. Empty off Linux.
    """
    if not IS_LINUX:
        return []

    children: dict[int, list[int]] = {}
    try:
        entries = [e.name for e in os.scandir("/proc") if e.name.isdigit()]
    except OSError:
        return []
    for name in entries:
        try:
            with open(f"/proc/{name}/stat", "rb") as f:
                stat = f.read()
        except OSError:
            continue
        # comm may contain spaces; state and ppid follow its closing paren
        fields = stat[stat.rfind(b")") + 2:].split()
        if len(fields) > 1:
            children.setdefault(int(fields[1]), []).append(int(name))

    result: list[int] = []
    pending = [pid]
    while pending:
        for child in children.get(pending.pop(0), ()):
            result.append(child)
            pending.append(child)
    return result


def pty_available() -> bool:
    """Whether the `script` pseudo-terminal wrapper can be used."""
    return IS_LINUX and shutil.which("script") is not None


def build_argv(language: LanguageSpec, code: str, *, use_pty: bool = False) -> list[str]:
    """Build the interpreter argv that runs ``code`` as a single unit.

    Args:
        language: Resolved interpreter spec
        code: Source text passed verbatim as one argument
        use_pty: Wrap with `script` so the child sees an interactive terminal

    Returns:
        argv list for create_subprocess_exec
    """
    if not use_pty:
        return language.argv(code)

    inner = " ".join([language.command, *language.arg_prefix, shell_quote(code)])
    return ["script", "-qfec", inner, "/dev/null"]


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Extra environment variables merged over the parent's
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None


@dataclass(frozen=True)
class ProcessOutcome:
    """Accumulated output and exit status of a finished process.

    Attributes:
        stdout: All decoded stdout text
        stderr: All decoded stderr text
        returncode: Exit code; negative when terminated by a signal
    """

    stdout: str
    stderr: str
    returncode: int | None


@dataclass
class ProcessRunner:
    """Cross-platform interpreter runner with streaming and interruption.

    This class manages subprocess execution with:
    - Process group/session isolation
    - Stdout/stderr pumped concurrently, each chunk reported as it arrives
    - Interrupt (Ctrl+C byte or SIGINT) and kill (SIGKILL to the group and descendants)
    - Graceful termination for shutdown (SIGTERM -> timeout -> SIGKILL)

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(argv=["python3", "-c", "print(1)"], cwd=Path.home())

        outcome = await runner.run(spec, on_chunk=lambda stream, text: print(stream, text))
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def run(
        self,
        spec: ProcessSpec,
        on_chunk: ChunkCallback,
        *,
        on_spawn: Callable[[asyncio.subprocess.Process], None] | None = None,
    ) -> ProcessOutcome:
        """Spawn the process, stream its output and wait for exit.

        Args:
            spec: Process specification
            on_chunk: Called synchronously for every decoded chunk
            on_spawn: Called with the process right after it starts

        Returns:
            Accumulated output and return code

        Raises:
            OSError: If the executable cannot be started
        """
        process = await self.spawn(spec)
        try:
            if on_spawn:
                on_spawn(process)
            return await self.pump(process, on_chunk)
        finally:
            if process.returncode is None:
                await self._safe_cleanup(process)

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the subprocess with all three standard streams piped."""
        kwargs = self._build_subprocess_kwargs(spec)

        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )
        return process

    async def pump(
        self,
        process: asyncio.subprocess.Process,
        on_chunk: ChunkCallback,
    ) -> ProcessOutcome:
        """Read stdout and stderr until EOF, then wait for exit.

        Chunks from both streams are reported in the order the reads
        complete, so the callback sees process-wide arrival order.
        """
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        readers = [
            asyncio.create_task(
                self._read_stream(process.stdout, "stdout", on_chunk, stdout_parts)
            ),
            asyncio.create_task(
                self._read_stream(process.stderr, "stderr", on_chunk, stderr_parts)
            ),
        ]
        try:
            await asyncio.gather(*readers)
            await process.wait()
        finally:
            for task in readers:
                if not task.done():
                    task.cancel()

        logger.debug(
            f"Subprocess completed pid={process.pid} "
            f"returncode={process.returncode}"
        )
        return ProcessOutcome(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            returncode=process.returncode,
        )

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        on_chunk: ChunkCallback,
        sink: list[str],
    ) -> None:
        """Decode one stream incrementally and forward every chunk."""
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                sink.append(text)
                try:
                    on_chunk(name, text)
                except Exception as e:
                    logger.warning(f"Error in {name} chunk callback: {e}")
            if not data:
                break

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        env = dict(os.environ)
        env.update(TERMINAL_ENV)
        if spec.env is not None:
            env.update(spec.env)
        kwargs["env"] = env

        # Platform-specific isolation
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    @staticmethod
    def stdin_writable(process: asyncio.subprocess.Process) -> bool:
        return process.stdin is not None and not process.stdin.is_closing()

    def interrupt(self, process: asyncio.subprocess.Process) -> str:
        """Ask the process to stop cooperatively.

        Writes the Ctrl+C byte when stdin is writable (a pseudo-terminal
        turns it into SIGINT for the foreground job), otherwise sends SIGINT
        (CTRL_BREAK_EVENT on Windows) to the process group.

        Returns:
            "stdin" or "signal", the path that was used
        """
        if self.stdin_writable(process):
            try:
                process.stdin.write(INTERRUPT_BYTE)
                logger.debug(f"Wrote interrupt byte to pid={process.pid}")
                return "stdin"
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Interrupt byte failed, falling back to signal: {e}")

        if IS_WINDOWS:
            self._windows_interrupt(process)
        else:
            self._posix_signal(process, signal.SIGINT)
        return "signal"

    def kill(self, process: asyncio.subprocess.Process) -> None:
        """Forcefully kill the process group and every descendant, without waiting."""
        if process.returncode is not None:
            return
        if IS_WINDOWS:
            self._windows_kill(process)
            return
        # collected first: once the wrapper dies its children are reparented
        descendants = descendant_pids(process.pid)
        self._posix_signal(process, signal.SIGKILL)
        self._kill_groups(descendants)

    def _kill_groups(self, pids: list[int]) -> None:
        """SIGKILL the process group of each pid, or the pid alone."""
        own_group = os.getpgrp()
        for pid in pids:
            try:
                pgid = os.getpgid(pid)
                if pgid == own_group:
                    os.kill(pid, signal.SIGKILL)
                else:
                    os.killpg(pgid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                continue
            logger.debug(f"Killed descendant pid={pid}")

    async def wait_exited(self, process: asyncio.subprocess.Process, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for exit; True if it exited."""
        with anyio.move_on_after(timeout):
            await process.wait()
        return process.returncode is not None

    async def _safe_cleanup(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process, shielded from cancellation.

        Args:
            process: The subprocess to terminate
        """
        try:
            await asyncio.shield(self.terminate(process))
        except asyncio.CancelledError:
            # Shield cancelled: still make sure nothing is left behind
            self.kill(process)
            raise

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
        """
        pid = process.pid
        if process.returncode is not None:
            return
        logger.debug(f"Terminating subprocess pid={pid}")
        descendants = descendant_pids(pid)

        try:
            if IS_WINDOWS:
                self._windows_interrupt(process)
            else:
                self._posix_signal(process, signal.SIGTERM)

            if await self.wait_exited(process, self.term_timeout):
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                # a wrapped interpreter may outlive its exited wrapper
                self._kill_groups(descendants)
                return

            logger.debug(f"Force killing subprocess pid={pid}")
            self.kill(process)

            if await self.wait_exited(process, self.kill_timeout):
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            else:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    def _posix_signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send a signal to the process group on POSIX systems.

        Args:
            process: The subprocess
            sig: Signal number
        """
        try:
            # Process group ID equals pid due to start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent signal {sig} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _windows_interrupt(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT on Windows.

        Args:
            process: The subprocess
        """
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()

    def _windows_kill(self, process: asyncio.subprocess.Process) -> None:
        """Force kill on Windows.

        Args:
            process: The subprocess
        """
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass
