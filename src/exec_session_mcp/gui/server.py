"""Built-in HTTP + SSE terminal surface server.

Serves a terminal page per session and streams the session's events over
SSE. Each SSE connection is one rendering surface. Supports multiple
clients per session.

Routes:
    GET  /                  session index page
    GET  /sessions          session list (JSON)
    GET  /session/<id>      terminal page
    GET  /sse/<id>          event stream: snapshot, then output/complete
    GET  /buffer/<id>       catch-up query (JSON)
    POST /input/<id>        keystrokes for the running process
    POST /interrupt/<id>    interrupt the running process
    POST /close/<id>        close the session

The HTTP server runs in background threads; every controller call is
marshalled onto the event loop that owns the controller.
"""

from __future__ import annotations

import asyncio
import http.server
import json
import logging
import queue
import re
import secrets
import socketserver
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from .template import generate_index_html, generate_terminal_html

if TYPE_CHECKING:
    from ..lifecycle import SessionController

logger = logging.getLogger(__name__)

__all__ = [
    "SurfaceServer",
    "ServerConfig",
    "SSEClientSurface",
]

T = TypeVar("T")

_ROUTE = re.compile(r"^/(session|sse|buffer|input|interrupt|close)/(\d+)/?$")


@dataclass
class ServerConfig:
    """Server configuration."""
    host: str = "127.0.0.1"
    port: int = 0  # 0 = random port
    max_clients: int = 20
    client_queue_size: int = 2000
    ping_interval: float = 25.0
    call_timeout: float = 5.0


class ReusableTCPServer(socketserver.ThreadingTCPServer):
    """TCP server with address reuse."""
    allow_reuse_address = True


class SSEClientSurface:
    """Rendering surface backed by one SSE connection.

    Events are queued for the connection thread; a full queue means the
    client stopped reading and the surface is declared dead.
    """

    def __init__(self, session_id: int, maxsize: int = 2000) -> None:
        self.surface_id = f"sse-{secrets.token_hex(6)}"
        self.session_id = session_id
        self.queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=maxsize)
        self._alive = threading.Event()
        self._alive.set()

    def is_alive(self) -> bool:
        return self._alive.is_set()

    def close(self) -> None:
        self._alive.clear()

    def deliver_output(self, session_id: int, event: dict[str, Any]) -> None:
        self.push({"kind": "output", "sessionId": session_id, **event})

    def deliver_completion(self, session_id: int, result: dict[str, Any]) -> None:
        self.push({"kind": "complete", "sessionId": session_id, "result": result})

    def push(self, message: dict[str, Any]) -> None:
        if not self.is_alive():
            return
        try:
            self.queue.put_nowait(message)
        except queue.Full:
            logger.warning(f"Surface {self.surface_id} queue full, dropping client")
            self.close()


class SurfaceServer:
    """HTTP server rendering sessions of a SessionController."""

    def __init__(
        self,
        controller: "SessionController",
        loop: asyncio.AbstractEventLoop,
        config: ServerConfig | None = None,
    ):
        self.controller = controller
        self.config = config or ServerConfig()
        self._loop = loop
        self._clients: dict[str, SSEClientSurface] = {}
        self._lock = threading.Lock()
        self._server: socketserver.TCPServer | None = None
        self._actual_port: int = 0

    @property
    def port(self) -> int:
        """Bound port."""
        return self._actual_port

    @property
    def url(self) -> str:
        """Server URL."""
        return f"http://{self.config.host}:{self._actual_port}"

    def session_url(self, session_id: int) -> str:
        return f"{self.url}/session/{session_id}"

    def start(self) -> int:
        """Start serving in a background thread; returns the bound port."""
        handler = self._create_handler()

        self._server = ReusableTCPServer(
            (self.config.host, self.config.port), handler
        )
        self._server.daemon_threads = True  # SSE threads do not block exit
        self._server.block_on_close = False

        self._actual_port = self._server.server_address[1]

        thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="surface_http_server"
        )
        thread.start()

        logger.info(f"Terminal surface server started at {self.url}")
        return self._actual_port

    def stop(self):
        """Stop the server and drop every client."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for surface in clients:
            surface.close()
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.debug("Terminal surface server stopped")

    @property
    def client_count(self) -> int:
        """Connected SSE clients."""
        with self._lock:
            return len(self._clients)

    def notify_closed(self, session_id: int) -> None:
        """Tell every client of a session that it was closed."""
        with self._lock:
            clients = [c for c in self._clients.values() if c.session_id == session_id]
        for surface in clients:
            surface.push({"kind": "closed", "sessionId": session_id})

    def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(*args)`` on the controller's event loop and wait for it."""
        async def _invoke() -> T:
            return fn(*args)

        future = asyncio.run_coroutine_threadsafe(_invoke(), self._loop)
        return future.result(timeout=self.config.call_timeout)

    def _client_connected(self, surface: SSEClientSurface) -> bool:
        """Register a client; False when at capacity."""
        with self._lock:
            if len(self._clients) >= self.config.max_clients:
                logger.warning(f"Max clients ({self.config.max_clients}) reached")
                return False
            self._clients[surface.surface_id] = surface
            logger.debug(f"Client {surface.surface_id} connected, total: {len(self._clients)}")
            return True

    def _client_disconnected(self, surface: SSEClientSurface):
        surface.close()
        with self._lock:
            self._clients.pop(surface.surface_id, None)
            remaining = len(self._clients)
        logger.debug(f"Client {surface.surface_id} disconnected, remaining: {remaining}")
        try:
            self.call(self.controller.detach, surface.session_id, surface.surface_id)
        except Exception as e:
            logger.debug(f"Detach after disconnect failed: {e}")

    def _create_handler(self):
        server = self

        class Handler(http.server.BaseHTTPRequestHandler):
            protocol_version = 'HTTP/1.1'

            def do_GET(self):
                if self.path == '/':
                    self._send_html(generate_index_html())
                    return
                if self.path == '/sessions':
                    self._send_json(server.call(server.controller.list_sessions))
                    return

                match = _ROUTE.match(self.path)
                if not match:
                    self.send_error(404)
                    return
                action, session_id = match.group(1), int(match.group(2))

                if action == 'session':
                    self._serve_session_page(session_id)
                elif action == 'sse':
                    self._serve_sse(session_id)
                elif action == 'buffer':
                    data = server.call(server.controller.get_buffer, session_id)
                    if data is None:
                        self._send_json({"error": "Session not found"}, status=404)
                    else:
                        self._send_json(data)
                else:
                    self.send_error(405)

            def do_POST(self):
                match = _ROUTE.match(self.path)
                if not match or match.group(1) not in ('input', 'interrupt', 'close'):
                    self.send_error(404)
                    return
                action, session_id = match.group(1), int(match.group(2))
                body = self._read_body()

                if action == 'input':
                    ok = server.call(server.controller.send_input, session_id, body)
                elif action == 'interrupt':
                    ok = server.call(server.controller.interrupt, session_id)
                else:
                    ok = server.call(server.controller.close_session, session_id)
                    if ok:
                        server.notify_closed(session_id)
                self._send_json({"ok": bool(ok)})

            def _read_body(self) -> str:
                length = int(self.headers.get('Content-Length') or 0)
                if length <= 0:
                    return ''
                return self.rfile.read(length).decode('utf-8', errors='replace')

            def _serve_session_page(self, session_id: int):
                view = server.call(server.controller.store.get, session_id)
                if view is None:
                    self.send_error(404, "Session not found")
                    return
                self._send_html(
                    generate_terminal_html(
                        session_id, title=f"Terminal Output - {view.language}"
                    )
                )

            def _serve_sse(self, session_id: int):
                surface = SSEClientSurface(session_id, server.config.client_queue_size)

                if not server._client_connected(surface):
                    self.send_error(503, "Too many clients")
                    return

                snapshot = server.call(server.controller.attach, session_id, surface)
                if snapshot is None:
                    server._client_disconnected(surface)
                    self.send_error(404, "Session not found")
                    return

                self.send_response(200)
                self.send_header('Content-Type', 'text/event-stream')
                self.send_header('Cache-Control', 'no-cache')
                self.send_header('Connection', 'keep-alive')
                self.send_header('X-Accel-Buffering', 'no')
                self.end_headers()

                try:
                    self._write_event({"kind": "snapshot", "sessionId": session_id, **snapshot.to_dict()})
                    while surface.is_alive():
                        try:
                            message = surface.queue.get(timeout=server.config.ping_interval)
                        except queue.Empty:
                            self.wfile.write(b": ping\n\n")
                            self.wfile.flush()
                            continue
                        self._write_event(message)
                        if message.get("kind") == "closed":
                            break
                except (BrokenPipeError, ConnectionResetError, OSError, TimeoutError):
                    pass
                finally:
                    server._client_disconnected(surface)

            def _write_event(self, message: dict[str, Any]):
                data = json.dumps(message, ensure_ascii=False)
                self.wfile.write(f"data: {data}\n\n".encode('utf-8'))
                self.wfile.flush()

            def _send_html(self, text: str):
                content = text.encode('utf-8')
                self.send_response(200)
                self.send_header('Content-Type', 'text/html; charset=utf-8')
                self.send_header('Content-Length', str(len(content)))
                self.end_headers()
                self.wfile.write(content)

            def _send_json(self, payload: Any, status: int = 200):
                content = json.dumps(payload, ensure_ascii=False).encode('utf-8')
                self.send_response(status)
                self.send_header('Content-Type', 'application/json; charset=utf-8')
                self.send_header('Content-Length', str(len(content)))
                self.end_headers()
                self.wfile.write(content)

            def log_message(self, format, *args):
                pass

        return Handler
