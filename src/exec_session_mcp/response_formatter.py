"""MCP response formatter.

Execution results are returned as XML-wrapped text, which LLM clients
read reliably:

    <response>
      <session_id>3</session_id>
      <exit_code>0</exit_code>
      <interrupted>false</interrupted>
      <stdout>...</stdout>
      <stderr>...</stderr>
      <terminal_url>...</terminal_url>
      <debug_info>...</debug_info>
    </response>

Errors are always ``<response><error>...</error></response>``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp.types import TextContent

__all__ = [
    "DebugInfo",
    "ResponseData",
    "ResponseFormatter",
    "get_formatter",
    "format_error_response",
    "format_json_response",
]


@dataclass
class DebugInfo:
    """Debug information."""

    duration_sec: float = 0.0
    language: str | None = None
    pty: bool | None = None
    log_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"duration_sec": round(self.duration_sec, 3)}
        if self.language:
            data["language"] = self.language
        if self.pty is not None:
            data["pty"] = self.pty
        if self.log_file:
            data["log_file"] = self.log_file
        return data


@dataclass
class ResponseData:
    """Completion record plus presentation extras.

    Attributes:
        result: Wire-form completion record from the controller
        session_id: Session the code ran in, if visible
        terminal_url: Surface URL for the session, if any
        debug_info: Debug information (debug mode only)
    """

    result: dict[str, Any]
    session_id: int | None = None
    terminal_url: str | None = None
    debug_info: DebugInfo | None = None

    @property
    def error(self) -> str | None:
        return self.result.get("error")


class ResponseFormatter:
    """Formats completion records as XML-wrapped text.

    Example:
        >>> formatter = ResponseFormatter()
        >>> data = ResponseData(result={"stdout": "hi\\n", "stderr": "", "exitCode": 0,
        ...                             "wasInterrupted": False})
        >>> output = formatter.format(data)
    """

    def format(self, data: ResponseData, *, debug: bool = False) -> str:
        """Format one execution response.

        Args:
            data: Response data
            debug: Include debug information

        Returns:
            XML-wrapped response string
        """
        result = data.result
        parts = ["<response>"]

        if data.error:
            parts.append(f"  <error>{data.error}</error>")
        if data.session_id is not None:
            parts.append(f"  <session_id>{data.session_id}</session_id>")
        if "exitCode" in result:
            exit_code = result.get("exitCode")
            parts.append(f"  <exit_code>{'null' if exit_code is None else exit_code}</exit_code>")
            parts.append(f"  <interrupted>{str(bool(result.get('wasInterrupted'))).lower()}</interrupted>")
        if result.get("stdout"):
            parts.append(f"  <stdout>\n{result['stdout']}\n  </stdout>")
        if result.get("stderr"):
            parts.append(f"  <stderr>\n{result['stderr']}\n  </stderr>")
        if data.terminal_url:
            parts.append(f"  <terminal_url>{data.terminal_url}</terminal_url>")
        if debug and data.debug_info:
            parts.append(self._format_debug_info(data.debug_info))

        parts.append("</response>")
        return "\n".join(parts)

    def _format_debug_info(self, debug_info: DebugInfo) -> str:
        lines = ["  <debug_info>"]
        for key, value in debug_info.to_dict().items():
            if isinstance(value, bool):
                value = str(value).lower()
            lines.append(f"    <{key}>{value}</{key}>")
        lines.append("  </debug_info>")
        return "\n".join(lines)

    def format_error(self, error: str) -> str:
        return "\n".join(["<response>", f"  <error>{error}</error>", "</response>"])


# Global instance
_formatter: ResponseFormatter | None = None


def get_formatter() -> ResponseFormatter:
    """Return the shared formatter."""
    global _formatter
    if _formatter is None:
        _formatter = ResponseFormatter()
    return _formatter


def format_error_response(error: str) -> list[TextContent]:
    """Uniform error response: ``<response><error>...</error></response>``."""
    from mcp.types import TextContent

    return [TextContent(type="text", text=get_formatter().format_error(error))]


def format_json_response(payload: Any) -> list[TextContent]:
    """Structured responses for control and query tools."""
    from mcp.types import TextContent

    return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False, indent=2))]
