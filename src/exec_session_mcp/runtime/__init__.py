"""Runtime module for interpreter subprocess management.

This module provides isolated process execution with streaming output,
cooperative interruption and reliable termination.
"""

from __future__ import annotations

from .process_runner import (
    ProcessOutcome,
    ProcessRunner,
    ProcessSpec,
    build_argv,
    descendant_pids,
    pty_available,
    shell_quote,
)

__all__ = [
    "ProcessOutcome",
    "ProcessRunner",
    "ProcessSpec",
    "build_argv",
    "descendant_pids",
    "pty_available",
    "shell_quote",
]
