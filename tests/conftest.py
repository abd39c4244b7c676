"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the path (development checkout)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from exec_session_mcp.config import Config, PtyMode  # noqa: E402


class RecordingSurface:
    """Rendering surface that records everything delivered to it."""

    def __init__(self, surface_id: str = "surface-1", *, fail_on_output: bool = False) -> None:
        self.surface_id = surface_id
        self.alive = True
        self.fail_on_output = fail_on_output
        self.outputs: list[tuple[int, dict[str, Any]]] = []
        self.completions: list[tuple[int, dict[str, Any]]] = []

    def is_alive(self) -> bool:
        return self.alive

    def deliver_output(self, session_id: int, event: dict[str, Any]) -> None:
        if self.fail_on_output:
            raise RuntimeError("surface rendering failed")
        self.outputs.append((session_id, event))

    def deliver_completion(self, session_id: int, result: dict[str, Any]) -> None:
        self.completions.append((session_id, result))

    @property
    def text(self) -> str:
        return "".join(event["data"] for _, event in self.outputs)


@pytest.fixture
def surface() -> RecordingSurface:
    return RecordingSurface()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Headless config: plain pipes, short grace window, temp workdir."""
    return Config(
        gui_enabled=False,
        interrupt_grace=0.5,
        pty_mode=PtyMode.NEVER,
        workdir=tmp_path,
    )
