"""SurfaceServer tests.

The HTTP server runs in its own threads; requests are issued from worker
threads so the event loop stays free to serve the marshalled controller
calls.
"""

from __future__ import annotations

import asyncio
import json
import sys
import urllib.error
import urllib.request
from typing import Any

import pytest
import pytest_asyncio

from exec_session_mcp.config import Config
from exec_session_mcp.gui import ServerConfig, SSEClientSurface, SurfaceServer
from exec_session_mcp.languages import LanguageRegistry
from exec_session_mcp.lifecycle import SessionController


@pytest_asyncio.fixture
async def controller(test_config: Config):
    registry = LanguageRegistry(platform="linux")
    registry.register("python", sys.executable, ["-c"])
    controller = SessionController(test_config, languages=registry)
    yield controller
    await controller.shutdown()


@pytest_asyncio.fixture
async def surface_server(controller: SessionController):
    server = SurfaceServer(
        controller,
        asyncio.get_running_loop(),
        ServerConfig(ping_interval=0.5),
    )
    server.start()
    yield server
    server.stop()


def _request(url: str, data: bytes | None = None) -> tuple[int, str]:
    try:
        with urllib.request.urlopen(url, data=data, timeout=5) as resp:
            return resp.status, resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        return e.code, ""


async def get(url: str) -> tuple[int, str]:
    return await asyncio.to_thread(_request, url)


async def post(url: str, body: str = "") -> tuple[int, Any]:
    status, text = await asyncio.to_thread(_request, url, body.encode("utf-8"))
    return status, json.loads(text) if text else None


def _read_sse(url: str, until_kind: str, limit: int = 50) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    with urllib.request.urlopen(url, timeout=10) as resp:
        for raw in resp:
            line = raw.decode("utf-8").strip()
            if not line.startswith("data: "):
                continue
            message = json.loads(line[len("data: "):])
            messages.append(message)
            if message.get("kind") == until_kind or len(messages) >= limit:
                break
    return messages


async def wait_for_clients(server: SurfaceServer, count: int) -> None:
    for _ in range(250):
        if server.client_count == count:
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"expected {count} SSE client(s)")


async def wait_for_subscriber(controller: SessionController, session_id: int) -> None:
    for _ in range(250):
        if controller.dispatcher.subscriber_count(session_id) == 1:
            return
        await asyncio.sleep(0.02)
    raise AssertionError("SSE client never attached")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_url(self, surface_server: SurfaceServer):
        assert surface_server.port > 0
        assert surface_server.url.startswith("http://127.0.0.1:")
        assert surface_server.session_url(3) == f"{surface_server.url}/session/3"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, controller: SessionController):
        server = SurfaceServer(controller, asyncio.get_running_loop())
        server.start()
        server.stop()
        server.stop()


class TestPages:
    @pytest.mark.asyncio
    async def test_index(self, surface_server: SurfaceServer):
        status, body = await get(surface_server.url + "/")
        assert status == 200
        assert "/sessions" in body

    @pytest.mark.asyncio
    async def test_session_page(self, surface_server: SurfaceServer, controller: SessionController):
        session_id = controller.begin_session("python", "print(1)")
        status, body = await get(surface_server.session_url(session_id))
        assert status == 200
        assert "xterm" in body
        assert f"const sessionId = {session_id};" in body

    @pytest.mark.asyncio
    async def test_unknown_session_page(self, surface_server: SurfaceServer):
        status, _ = await get(surface_server.session_url(999))
        assert status == 404

    @pytest.mark.asyncio
    async def test_unknown_route(self, surface_server: SurfaceServer):
        status, _ = await get(surface_server.url + "/nope")
        assert status == 404


class TestQueries:
    @pytest.mark.asyncio
    async def test_sessions(self, surface_server: SurfaceServer, controller: SessionController):
        session_id = controller.begin_session("python", "print(1)")
        status, body = await get(surface_server.url + "/sessions")
        assert status == 200
        assert [s["sessionId"] for s in json.loads(body)] == [session_id]

    @pytest.mark.asyncio
    async def test_buffer(self, surface_server: SurfaceServer, controller: SessionController):
        session_id = controller.begin_session("python", "print('hi')")
        await controller.execute("print('hi')", "python", session_id)

        status, body = await get(f"{surface_server.url}/buffer/{session_id}")
        data = json.loads(body)
        assert status == 200
        assert data["isComplete"] is True
        assert data["buffer"].endswith("hi\n")
        assert data["lastResult"]["exitCode"] == 0

    @pytest.mark.asyncio
    async def test_buffer_unknown(self, surface_server: SurfaceServer):
        status, _ = await get(f"{surface_server.url}/buffer/999")
        assert status == 404


class TestControl:
    @pytest.mark.asyncio
    async def test_input(self, surface_server: SurfaceServer, controller: SessionController):
        code = "print('got ' + input())"
        session_id = controller.begin_session("python", code)
        task = asyncio.create_task(controller.execute(code, "python", session_id))
        for _ in range(250):
            if controller.store.get(session_id).has_process:
                break
            await asyncio.sleep(0.02)

        status, data = await post(f"{surface_server.url}/input/{session_id}", "yes\r")
        assert status == 200
        assert data == {"ok": True}

        result = await asyncio.wait_for(task, 10)
        assert result["stdout"] == "got yes\n"

    @pytest.mark.asyncio
    async def test_input_without_process(
        self, surface_server: SurfaceServer, controller: SessionController
    ):
        session_id = controller.begin_session("python", "print(1)")
        _, data = await post(f"{surface_server.url}/input/{session_id}", "x")
        assert data == {"ok": False}

    @pytest.mark.asyncio
    async def test_interrupt_idle(self, surface_server: SurfaceServer, controller: SessionController):
        session_id = controller.begin_session("python", "print(1)")
        _, data = await post(f"{surface_server.url}/interrupt/{session_id}")
        assert data == {"ok": False}

    @pytest.mark.asyncio
    async def test_close(self, surface_server: SurfaceServer, controller: SessionController):
        session_id = controller.begin_session("python", "print(1)")
        _, data = await post(f"{surface_server.url}/close/{session_id}")
        assert data == {"ok": True}
        assert controller.store.get(session_id) is None

        _, data = await post(f"{surface_server.url}/close/{session_id}")
        assert data == {"ok": False}


class TestSSE:
    @pytest.mark.asyncio
    async def test_snapshot_then_live_events(
        self, surface_server: SurfaceServer, controller: SessionController
    ):
        code = "print('streamed')"
        session_id = controller.begin_session("python", code)
        reader = asyncio.create_task(
            asyncio.to_thread(_read_sse, f"{surface_server.url}/sse/{session_id}", "complete")
        )
        await wait_for_subscriber(controller, session_id)

        result = await controller.execute(code, "python", session_id)
        messages = await asyncio.wait_for(reader, 10)

        assert messages[0]["kind"] == "snapshot"
        assert messages[0]["isComplete"] is False
        outputs = [m for m in messages if m["kind"] == "output"]
        assert "".join(m["data"] for m in outputs) == "streamed\n"
        assert messages[-1] == {"kind": "complete", "sessionId": session_id, "result": result}

    @pytest.mark.asyncio
    async def test_late_attach_gets_completed_snapshot(
        self, surface_server: SurfaceServer, controller: SessionController
    ):
        session_id = controller.begin_session("python", "print('early')")
        await controller.execute("print('early')", "python", session_id)

        messages = await asyncio.to_thread(
            _read_sse, f"{surface_server.url}/sse/{session_id}", "snapshot"
        )
        snapshot = messages[0]
        assert snapshot["isComplete"] is True
        assert snapshot["buffer"].endswith("early\n")
        assert snapshot["lastResult"]["exitCode"] == 0

    @pytest.mark.asyncio
    async def test_close_notifies_clients(
        self, surface_server: SurfaceServer, controller: SessionController
    ):
        session_id = controller.begin_session("python", "print(1)")
        reader = asyncio.create_task(
            asyncio.to_thread(_read_sse, f"{surface_server.url}/sse/{session_id}", "closed")
        )
        await wait_for_subscriber(controller, session_id)

        _, data = await post(f"{surface_server.url}/close/{session_id}")
        messages = await asyncio.wait_for(reader, 10)

        assert data == {"ok": True}
        assert messages[-1] == {"kind": "closed", "sessionId": session_id}
        await wait_for_clients(surface_server, 0)

    @pytest.mark.asyncio
    async def test_unknown_session_stream(self, surface_server: SurfaceServer):
        status, _ = await get(f"{surface_server.url}/sse/999")
        assert status == 404
        assert surface_server.client_count == 0


class TestSSEClientSurface:
    def test_full_queue_marks_dead(self):
        surface = SSEClientSurface(1, maxsize=1)
        surface.deliver_output(1, {"type": "stdout", "data": "a"})
        assert surface.is_alive()
        surface.deliver_output(1, {"type": "stdout", "data": "b"})
        assert not surface.is_alive()

    def test_messages(self):
        surface = SSEClientSurface(4)
        surface.deliver_output(4, {"type": "stdout", "data": "x"})
        surface.deliver_completion(4, {"exitCode": 0})
        assert surface.queue.get_nowait() == {
            "kind": "output",
            "sessionId": 4,
            "type": "stdout",
            "data": "x",
        }
        assert surface.queue.get_nowait() == {
            "kind": "complete",
            "sessionId": 4,
            "result": {"exitCode": 0},
        }

    def test_ids_unique(self):
        assert SSEClientSurface(1).surface_id != SSEClientSurface(1).surface_id
