"""ESM environment configuration.

Environment variables:
    ESM_GUI: start the terminal surface server
        - true/1/yes = start (default)
        - false/0/no = headless

    ESM_GUI_HOST / ESM_GUI_PORT: surface server bind address
        - default 127.0.0.1 / 0 (0 = random port)

    ESM_DEBUG: debug mode
        - true/1/yes = tool responses include timing information
        - false/0/no = off (default)

    ESM_LOG_DEBUG: log debug mode
        - true/1/yes = DEBUG logs are written to a temporary file
        - false/0/no = INFO logs to stderr (default)

    ESM_SIGINT_MODE: SIGINT (Ctrl+C) handling
        - interrupt = interrupt running sessions, exit when none run (default)
        - exit = exit immediately
        - interrupt_then_exit = interrupt first, exit on the second Ctrl+C

    ESM_SIGINT_DOUBLE_TAP_WINDOW: double Ctrl+C window in seconds (default 1.0)

    ESM_INTERRUPT_GRACE: seconds between an interrupt request and the forced
        kill of the interpreter (default 3.0)

    ESM_PTY: pseudo-terminal wrapping of interpreters
        - auto = wrap with `script` on Linux when available (default)
        - always = always wrap
        - never = plain pipes

    ESM_WORKDIR: working directory for interpreters (default: user home)

    ESM_LANGUAGES: extra language registrations
        - "tag=command arg;tag2=command2 arg"
        - e.g. "ruby=ruby -e;perl=perl -e"
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode", "PtyMode"]


class SigintMode(Enum):
    """SIGINT handling mode.

    - INTERRUPT: interrupt running sessions (exit when nothing runs)
    - EXIT: exit the process (classic behaviour)
    - INTERRUPT_THEN_EXIT: interrupt first, the second SIGINT exits
    """

    INTERRUPT = "interrupt"
    EXIT = "exit"
    INTERRUPT_THEN_EXIT = "interrupt_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """Parse a mode string.

        Args:
            value: interrupt/exit/interrupt_then_exit

        Returns:
            The matching mode, INTERRUPT for unknown values
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.INTERRUPT


class PtyMode(Enum):
    """Pseudo-terminal wrapping mode."""

    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"

    @classmethod
    def from_string(cls, value: str) -> "PtyMode":
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.AUTO


DEFAULT_INTERRUPT_GRACE = 3.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """Parse a float environment variable clamped to [low, high]."""
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


def _parse_port(value: str | None) -> int:
    if not value:
        return 0
    try:
        port = int(value)
    except ValueError:
        return 0
    return port if 0 <= port <= 65535 else 0


def _parse_languages(value: str | None) -> dict[str, list[str]]:
    """Parse extra language registrations.

    Args:
        value: "tag=command arg;tag2=command2 arg"

    Returns:
        Mapping of lower-cased tag to [command, *args]; malformed items are skipped
    """
    if not value or not value.strip():
        return {}

    languages: dict[str, list[str]] = {}
    for item in value.split(";"):
        tag, sep, invocation = item.partition("=")
        tag = tag.strip().lower()
        parts = invocation.split()
        if not sep or not tag or not parts:
            continue
        languages[tag] = parts

    return languages


@dataclass
class Config:
    """ESM configuration.

    Attributes:
        gui_enabled: start the terminal surface server
        gui_host: surface server host
        gui_port: surface server port (0 = random)
        debug: tool responses include timing information
        log_debug: DEBUG logs go to a temporary file
        log_file: log file path (set when log_debug=True)
        sigint_mode: SIGINT handling mode
        sigint_double_tap_window: double Ctrl+C window (seconds)
        interrupt_grace: seconds before an interrupted process is killed
        pty_mode: pseudo-terminal wrapping mode
        workdir: interpreter working directory
        languages: extra language registrations
    """

    gui_enabled: bool = True
    gui_host: str = "127.0.0.1"
    gui_port: int = 0
    debug: bool = False
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.INTERRUPT
    sigint_double_tap_window: float = 1.0
    interrupt_grace: float = DEFAULT_INTERRUPT_GRACE
    pty_mode: PtyMode = PtyMode.AUTO
    workdir: Path = field(default_factory=Path.home)
    languages: dict[str, list[str]] = field(default_factory=dict)

    def __repr__(self) -> str:
        languages_str = ",".join(sorted(self.languages)) or "builtin"
        return (
            f"Config(gui_enabled={self.gui_enabled}, "
            f"gui={self.gui_host}:{self.gui_port}, "
            f"debug={self.debug}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window}, "
            f"interrupt_grace={self.interrupt_grace}, "
            f"pty_mode={self.pty_mode.value}, "
            f"workdir={self.workdir}, "
            f"languages={languages_str})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "exec-session-mcp"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"esm_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_workdir(value: str | None) -> Path:
    if not value or not value.strip():
        return Path.home()
    return Path(value).expanduser()


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("ESM_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        gui_enabled=_parse_bool(os.environ.get("ESM_GUI"), default=True),
        gui_host=os.environ.get("ESM_GUI_HOST", "").strip() or "127.0.0.1",
        gui_port=_parse_port(os.environ.get("ESM_GUI_PORT")),
        debug=_parse_bool(os.environ.get("ESM_DEBUG"), default=False),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(os.environ.get("ESM_SIGINT_MODE") or ""),
        sigint_double_tap_window=_parse_float(
            os.environ.get("ESM_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
        interrupt_grace=_parse_float(
            os.environ.get("ESM_INTERRUPT_GRACE"), DEFAULT_INTERRUPT_GRACE, 0.1, 60.0
        ),
        pty_mode=PtyMode.from_string(os.environ.get("ESM_PTY") or ""),
        workdir=_parse_workdir(os.environ.get("ESM_WORKDIR")),
        languages=_parse_languages(os.environ.get("ESM_LANGUAGES")),
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
