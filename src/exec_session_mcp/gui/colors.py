"""Terminal surface color scheme.

Dark theme in the VS Code style.
"""

from __future__ import annotations

__all__ = [
    "COLORS",
    "ANSI",
]

COLORS = {
    # Background and borders
    "bg": "#1E1E1E",
    "bg_secondary": "#2D2D2D",
    "border": "#3D3D3D",

    # Text
    "fg": "#D4D4D4",
    "fg_muted": "#6A6A6A",

    # Buttons
    "button": "#0E639C",
    "button_hover": "#1177BB",
    "danger": "#D83B01",
    "danger_hover": "#EF4444",

    # Status
    "success": "#89D185",
    "error": "#F44747",
    "running": "#4FC1FF",
}

# Escape sequences written into the terminal by the page
ANSI = {
    "success": "\\x1B[1;32m",
    "error": "\\x1B[1;31m",
    "stderr": "\\x1B[31m",
    "reset": "\\x1B[0m",
    "hide_cursor": "\\x1b[?25l",
}
