"""Exec Session MCP Server.

Exposes execution sessions as MCP tools: run code with a local
interpreter, stream it to a live terminal page, type into it, interrupt
and close it.

Environment variables:
    ESM_GUI: start the terminal surface server (default true)
    ESM_INTERRUPT_GRACE: seconds before an interrupted program is killed
    ESM_PTY: auto/always/never pseudo-terminal wrapping
    ESM_SIGINT_MODE: SIGINT handling (interrupt/exit/interrupt_then_exit)

Usage:
    uvx exec-session-mcp
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config, get_config
from .lifecycle import SESSION_NOT_FOUND, SessionController
from .response_formatter import (
    DebugInfo,
    ResponseData,
    format_error_response,
    format_json_response,
    get_formatter,
)
from .tool_schema import SUPPORTED_TOOLS, TOOL_DESCRIPTIONS, create_tool_schema

if TYPE_CHECKING:
    from .gui import SurfaceServer

__all__ = ["create_server", "SessionTools", "ToolError", "parse_session_id"]

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[list[TextContent]]]


class ToolError(ValueError):
    """Invalid tool arguments."""


def parse_session_id(value: Any, *, required: bool = True) -> int | None:
    """Validate a session id argument.

    Accepts positive integers and digit strings.

    Raises:
        ToolError: If the value is missing (when required) or malformed
    """
    if value is None or value == "":
        if required:
            raise ToolError("session_id is required")
        return None
    if isinstance(value, bool):
        raise ToolError(f"Invalid session_id: {value!r}")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 1:
        raise ToolError(f"Invalid session_id: {value!r}")
    return value


def _require_str(arguments: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ToolError(f"{key} must be a non-empty string")
    return value


def _truncate_arguments(arguments: dict[str, Any]) -> str:
    shown = {
        k: v[:100] + "..." if isinstance(v, str) and len(v) > 100 else v
        for k, v in arguments.items()
    }
    return json.dumps(shown, ensure_ascii=False, default=str)


class SessionTools:
    """Tool handlers bound to one controller.

    Attributes:
        controller: Session lifecycle controller
        surface_server: Terminal surface server, None when the GUI is off
    """

    def __init__(
        self,
        controller: SessionController,
        surface_server: "SurfaceServer | None" = None,
        config: Config | None = None,
    ) -> None:
        self.controller = controller
        self.surface_server = surface_server
        self.config = config or get_config()
        self._handlers: dict[str, Handler] = {
            "execute": self.execute,
            "begin_session": self.begin_session,
            "send_input": self.send_input,
            "interrupt": self.interrupt,
            "close_session": self.close_session,
            "get_buffer": self.get_buffer,
            "list_sessions": self.list_sessions,
            "list_languages": self.list_languages,
        }
        if surface_server is not None:
            self._handlers["get_gui_url"] = self.get_gui_url

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def list_tools(self) -> list[Tool]:
        tools = [
            Tool(
                name=name,
                description=TOOL_DESCRIPTIONS[name],
                inputSchema=create_tool_schema(name),
            )
            for name in SUPPORTED_TOOLS
        ]
        if self.surface_server is not None:
            tools.append(
                Tool(
                    name="get_gui_url",
                    description="Get the terminal surface URL listing live sessions.",
                    inputSchema={"type": "object", "properties": {}, "required": []},
                )
            )
        return tools

    async def call(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """Dispatch one tool call; argument and runtime errors become error responses."""
        handler = self._handlers.get(name)
        if handler is None:
            return format_error_response(f"Unknown tool '{name}'")

        try:
            return await handler(arguments or {})

        except asyncio.CancelledError:
            logger.info(f"Tool '{name}' cancelled")
            raise

        except ToolError as e:
            return format_error_response(str(e))

        except Exception as e:
            logger.error(f"Tool '{name}' failed: type={type(e).__name__}, msg={e}")
            return format_error_response(str(e))

    def _terminal_url(self, session_id: int | None) -> str | None:
        if self.surface_server is None or session_id is None:
            return None
        return self.surface_server.session_url(session_id)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def execute(self, arguments: dict[str, Any]) -> list[TextContent]:
        code = _require_str(arguments, "code", allow_empty=True)
        language = _require_str(arguments, "language")
        session_id = parse_session_id(arguments.get("session_id"), required=False)
        debug = bool(arguments["debug"]) if "debug" in arguments else self.config.debug

        if session_id is None and arguments.get("show_terminal"):
            session_id = self.controller.begin_session(language, code)

        started = time.monotonic()
        result = await self.controller.execute(code, language, session_id)
        if result.get("error") == SESSION_NOT_FOUND:
            return format_error_response(f"Session {session_id} not found")

        data = ResponseData(
            result=result,
            session_id=session_id,
            terminal_url=self._terminal_url(session_id),
            debug_info=DebugInfo(
                duration_sec=time.monotonic() - started,
                language=language,
                pty=self.controller.use_pty,
                log_file=self.config.log_file,
            ),
        )
        return [TextContent(type="text", text=get_formatter().format(data, debug=debug))]

    async def begin_session(self, arguments: dict[str, Any]) -> list[TextContent]:
        language = _require_str(arguments, "language")
        code = _require_str(arguments, "code", allow_empty=True)
        session_id = self.controller.begin_session(language, code)
        payload: dict[str, Any] = {"sessionId": session_id}
        url = self._terminal_url(session_id)
        if url:
            payload["terminalUrl"] = url
        return format_json_response(payload)

    async def send_input(self, arguments: dict[str, Any]) -> list[TextContent]:
        session_id = parse_session_id(arguments.get("session_id"))
        text = _require_str(arguments, "text", allow_empty=True)
        return format_json_response({"delivered": self.controller.send_input(session_id, text)})

    async def interrupt(self, arguments: dict[str, Any]) -> list[TextContent]:
        session_id = parse_session_id(arguments.get("session_id"))
        return format_json_response({"interrupted": self.controller.interrupt(session_id)})

    async def close_session(self, arguments: dict[str, Any]) -> list[TextContent]:
        session_id = parse_session_id(arguments.get("session_id"))
        closed = self.controller.close_session(session_id)
        if closed and self.surface_server is not None:
            self.surface_server.notify_closed(session_id)
        return format_json_response({"closed": closed})

    async def get_buffer(self, arguments: dict[str, Any]) -> list[TextContent]:
        session_id = parse_session_id(arguments.get("session_id"))
        data = self.controller.get_buffer(session_id)
        if data is None:
            return format_error_response(f"Session {session_id} not found")
        return format_json_response(data)

    async def list_sessions(self, arguments: dict[str, Any]) -> list[TextContent]:
        return format_json_response(self.controller.list_sessions())

    async def list_languages(self, arguments: dict[str, Any]) -> list[TextContent]:
        return format_json_response(self.controller.languages.supported())

    async def get_gui_url(self, arguments: dict[str, Any]) -> list[TextContent]:
        if self.surface_server is not None and self.surface_server.port:
            return [TextContent(type="text", text=self.surface_server.url)]
        return [TextContent(type="text", text="Terminal surface not available")]


def create_server(
    controller: SessionController,
    surface_server: "SurfaceServer | None" = None,
) -> Server:
    """Create the MCP Server instance.

    Args:
        controller: Session lifecycle controller
        surface_server: Terminal surface server (optional)
    """
    tools = SessionTools(controller, surface_server)
    server = Server("exec-session-mcp")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        result = tools.list_tools()
        logger.debug(f"[MCP] list_tools returning {len(result)} tools")
        return result

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Call a tool."""
        logger.debug(
            f"[MCP] call_tool request:\n"
            f"  Tool: {name}\n"
            f"  Arguments: {_truncate_arguments(arguments or {})}"
        )
        return await tools.call(name, arguments)

    return server
