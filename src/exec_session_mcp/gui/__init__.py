"""Terminal surface: browser rendering of execution sessions over HTTP + SSE."""

from __future__ import annotations

from .server import SSEClientSurface, ServerConfig, SurfaceServer
from .template import generate_index_html, generate_terminal_html

__all__ = [
    "SSEClientSurface",
    "ServerConfig",
    "SurfaceServer",
    "generate_index_html",
    "generate_terminal_html",
]
