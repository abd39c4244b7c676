"""Exec Session MCP entry point.

Supports: python -m exec_session_mcp
"""

from .app import main

if __name__ == "__main__":
    main()
