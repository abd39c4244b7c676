"""Tool schema definitions.

Tool descriptions, input schemas and the schema factory.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "SUPPORTED_TOOLS",
    "TOOL_DESCRIPTIONS",
    "create_tool_schema",
]

SUPPORTED_TOOLS = [
    "execute",
    "begin_session",
    "send_input",
    "interrupt",
    "close_session",
    "get_buffer",
    "list_sessions",
    "list_languages",
]

TOOL_DESCRIPTIONS = {
    "execute": """Run a code snippet with a local interpreter and return its output.

The code runs as a single unit (`python3 -c`, `bash -c`, `node -e`, ...) in the
user's home directory. It is NOT sandboxed.

MODES:
- Plain: runs headless, returns stdout/stderr/exit code when it finishes.
- show_terminal=true: opens a live terminal session first; output streams to it
  and the user can type into the program (prompts, passwords).
- session_id: run inside a session created by begin_session.

Returns exit_code, interrupted, stdout and stderr.""",

    "begin_session": """Allocate a terminal session without running anything yet.

Returns the session id and, when the terminal surface is enabled, the URL of its
live terminal page. Call `execute` with the session_id to start the code.""",

    "send_input": """Send keystrokes to the program running in a session.

Carriage returns are converted to newlines. Use "\\u0003" for Ctrl+C.
Input for a session with no running program is dropped.""",

    "interrupt": """Interrupt the program running in a session.

Sends Ctrl+C (or SIGINT); if it is still running after the grace window it is
killed. The result reports interrupted=true.""",

    "close_session": """Close a session. A program still running is killed immediately.""",

    "get_buffer": """Return a session's complete output so far and its completion state.""",

    "list_sessions": """List live sessions with their language and state.""",

    "list_languages": """List the language tags that can be executed.""",
}


def _session_id_property() -> dict[str, Any]:
    return {
        "type": "integer",
        "minimum": 1,
        "description": "Session id returned by begin_session.",
    }


def create_tool_schema(tool_name: str) -> dict[str, Any]:
    """Build the input schema for a tool.

    Args:
        tool_name: One of SUPPORTED_TOOLS

    Returns:
        JSON schema dict
    """
    if tool_name == "execute":
        return {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Source code to run.",
                },
                "language": {
                    "type": "string",
                    "description": "Language tag, e.g. python, bash, js, powershell.",
                },
                "session_id": _session_id_property(),
                "show_terminal": {
                    "type": "boolean",
                    "default": False,
                    "description": "Open a live terminal session for this run.",
                },
                "debug": {
                    "type": "boolean",
                    "description": "Include timing information in the response.",
                },
            },
            "required": ["code", "language"],
        }

    if tool_name == "begin_session":
        return {
            "type": "object",
            "properties": {
                "language": {"type": "string", "description": "Language tag."},
                "code": {"type": "string", "description": "Code the session will run."},
            },
            "required": ["language", "code"],
        }

    if tool_name == "send_input":
        return {
            "type": "object",
            "properties": {
                "session_id": _session_id_property(),
                "text": {"type": "string", "description": "Text to type."},
            },
            "required": ["session_id", "text"],
        }

    if tool_name in ("interrupt", "close_session", "get_buffer"):
        return {
            "type": "object",
            "properties": {"session_id": _session_id_property()},
            "required": ["session_id"],
        }

    if tool_name in ("list_sessions", "list_languages"):
        return {"type": "object", "properties": {}, "required": []}

    raise ValueError(f"Unknown tool '{tool_name}'")
