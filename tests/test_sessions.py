"""SessionStore tests."""

from __future__ import annotations

import threading
from unittest import mock

import pytest

from exec_session_mcp.sessions import (
    BufferSnapshot,
    ExecutionResult,
    SessionState,
    SessionStore,
    command_echo,
)


def fake_process(pid: int = 4242, *, stdin_closing: bool = False) -> mock.MagicMock:
    process = mock.MagicMock()
    process.pid = pid
    process.returncode = None
    process.stdin.is_closing.return_value = stdin_closing
    return process


@pytest.fixture
def killed() -> list:
    return []


@pytest.fixture
def store(killed: list) -> SessionStore:
    return SessionStore(kill_process=killed.append)


# =============================================================================
# Result record
# =============================================================================


class TestExecutionResult:
    def test_to_dict(self):
        result = ExecutionResult(stdout="hi\n", exit_code=0)
        assert result.to_dict() == {
            "stdout": "hi\n",
            "stderr": "",
            "exitCode": 0,
            "wasInterrupted": False,
        }

    def test_failure(self):
        result = ExecutionResult.failure("Unsupported language: cobol")
        data = result.to_dict()
        assert data["error"] == "Unsupported language: cobol"
        assert data["exitCode"] is None


class TestCommandEcho:
    def test_format(self):
        assert command_echo("ls -la") == "\x1b[1;36m└─$ ls -la\x1b[0m\r\n"


# =============================================================================
# Table
# =============================================================================


class TestCreate:
    def test_ids_increase_and_are_not_reused(self, store: SessionStore):
        first = store.create("python", "print(1)")
        second = store.create("bash", "echo 2")
        assert (first, second) == (1, 2)
        store.delete(second)
        assert store.create("bash", "echo 3") == 3

    def test_initial_state(self, store: SessionStore):
        session_id = store.create("python", "print('hi')", surface_id="s-1")
        view = store.get(session_id)
        assert view.state is SessionState.CREATED
        assert view.buffer == (command_echo("print('hi')"),)
        assert view.surface_id == "s-1"
        assert view.has_process is False
        assert view.last_result is None
        assert not view.is_complete

    def test_get_unknown(self, store: SessionStore):
        assert store.get(99) is None
        assert store.snapshot(99) is None

    def test_views_are_copies(self, store: SessionStore):
        session_id = store.create("python", "x")
        view = store.get(session_id)
        store.begin_run(session_id)
        store.append_output(session_id, "more")
        assert view.state is SessionState.CREATED
        assert len(view.buffer) == 1

    def test_list_and_len(self, store: SessionStore):
        ids = [store.create("sh", str(i)) for i in range(3)]
        assert [v.session_id for v in store.list()] == ids
        assert len(store) == 3
        assert ids[0] in store
        assert 99 not in store

    def test_to_dict(self, store: SessionStore):
        view = store.get(store.create("python", "x"))
        data = view.to_dict()
        assert data["sessionId"] == view.session_id
        assert data["language"] == "python"
        assert data["state"] == "created"
        assert data["isComplete"] is False
        assert data["pid"] is None


class TestDelete:
    def test_delete_unknown(self, store: SessionStore):
        assert store.delete(7) is False

    def test_delete_kills_running_process(self, store: SessionStore, killed: list):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        process = fake_process()
        store.attach_process(session_id, process)

        assert store.delete(session_id) is True
        assert killed == [process]
        assert store.get(session_id) is None

    def test_delete_idle_does_not_kill(self, store: SessionStore, killed: list):
        assert store.delete(store.create("python", "x"))
        assert killed == []


# =============================================================================
# Execution state
# =============================================================================


class TestExecutionState:
    def test_begin_run_once(self, store: SessionStore):
        session_id = store.create("python", "x")
        assert store.begin_run(session_id) is True
        assert store.begin_run(session_id) is False
        assert store.get(session_id).state is SessionState.RUNNING

    def test_attach_process(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        process = fake_process(pid=77)
        assert store.attach_process(session_id, process)
        view = store.get(session_id)
        assert view.has_process and view.pid == 77
        assert store.running_ids() == [session_id]

    def test_attach_to_deleted_session_kills(self, store: SessionStore, killed: list):
        session_id = store.create("python", "x")
        store.delete(session_id)
        process = fake_process()
        assert store.attach_process(session_id, process) is False
        assert killed == [process]

    def test_append_output_sequence(self, store: SessionStore):
        session_id = store.create("python", "x")
        assert store.append_output(session_id, "a") == 1
        assert store.append_output(session_id, "b") == 2
        snapshot = store.snapshot(session_id)
        assert snapshot.buffer.endswith("ab")
        assert snapshot.chunk_count == 3

    def test_complete_is_one_shot(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        store.attach_process(session_id, fake_process())
        first = ExecutionResult(stdout="1", exit_code=0)

        assert store.complete(session_id, first) is True
        assert store.complete(session_id, ExecutionResult(exit_code=1)) is False

        view = store.get(session_id)
        assert view.state is SessionState.COMPLETED
        assert view.last_result == first
        assert view.has_process is False
        assert store.running_ids() == []

    def test_complete_failed(self, store: SessionStore):
        session_id = store.create("cobol", "x")
        store.complete(session_id, ExecutionResult.failure("nope"), failed=True)
        assert store.get(session_id).state is SessionState.FAILED
        assert store.get(session_id).is_complete

    def test_no_output_after_completion(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.complete(session_id, ExecutionResult(exit_code=0))
        assert store.append_output(session_id, "late") is None
        assert "late" not in store.snapshot(session_id).buffer

    def test_mark_interrupted_requires_running(self, store: SessionStore):
        session_id = store.create("python", "x")
        assert store.mark_interrupted(session_id) is False
        store.begin_run(session_id)
        store.attach_process(session_id, fake_process())
        assert store.mark_interrupted(session_id) is True
        assert store.was_interrupted(session_id) is True

        store.complete(session_id, ExecutionResult(exit_code=0))
        assert store.mark_interrupted(session_id) is False

    def test_mark_interrupted_while_spawning(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        assert store.running_ids() == [session_id]
        assert store.mark_interrupted(session_id) is True
        assert store.get(session_id).has_process is False
        assert store.was_interrupted(session_id) is True


# =============================================================================
# Process access
# =============================================================================


class TestProcessAccess:
    def test_signal_process(self, store: SessionStore):
        session_id = store.create("python", "x")
        assert store.signal_process(session_id, lambda p: "called") is None
        store.begin_run(session_id)
        process = fake_process()
        store.attach_process(session_id, process)
        assert store.signal_process(session_id, lambda p: p.pid) == process.pid

    def test_write_input(self, store: SessionStore):
        session_id = store.create("python", "x")
        assert store.write_input(session_id, b"hi\n") is False
        store.begin_run(session_id)
        process = fake_process()
        store.attach_process(session_id, process)
        assert store.write_input(session_id, b"hi\n") is True
        process.stdin.write.assert_called_once_with(b"hi\n")

    def test_write_input_closed_stdin(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        store.attach_process(session_id, fake_process(stdin_closing=True))
        assert store.write_input(session_id, b"x") is False

    def test_write_input_broken_pipe(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)
        process = fake_process()
        process.stdin.write.side_effect = BrokenPipeError()
        store.attach_process(session_id, process)
        assert store.write_input(session_id, b"x") is False


# =============================================================================
# Catch-up
# =============================================================================


class TestSnapshot:
    def test_snapshot_dict(self, store: SessionStore):
        session_id = store.create("python", "print('hi')")
        store.begin_run(session_id)
        store.append_output(session_id, "hi\n")
        result = ExecutionResult(stdout="hi\n", exit_code=0)
        store.complete(session_id, result)

        snapshot = store.snapshot(session_id)
        assert isinstance(snapshot, BufferSnapshot)
        assert snapshot.to_dict() == {
            "buffer": command_echo("print('hi')") + "hi\n",
            "isComplete": True,
            "lastResult": result.to_dict(),
        }

    def test_snapshot_incomplete(self, store: SessionStore):
        session_id = store.create("python", "x")
        data = store.snapshot(session_id).to_dict()
        assert data["isComplete"] is False
        assert data["lastResult"] is None

    def test_concurrent_appends(self, store: SessionStore):
        session_id = store.create("python", "x")
        store.begin_run(session_id)

        def writer(n: int) -> None:
            for _ in range(200):
                store.append_output(session_id, str(n))

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.snapshot(session_id).chunk_count == 1 + 800
