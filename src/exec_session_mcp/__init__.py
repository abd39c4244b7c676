"""Exec Session MCP - code execution sessions with live terminal surfaces.

Environment variables:
    ESM_GUI: start the terminal surface server (default true)
    ESM_PTY: auto/always/never pseudo-terminal wrapping (default auto)
    ESM_INTERRUPT_GRACE: seconds between interrupt and kill (default 3)

Usage:
    uvx exec-session-mcp
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
