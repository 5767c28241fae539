from __future__ import annotations

import os
import time
from typing import Any, Callable, Optional

import pytest

from burstpilot.core.access import AccessGate
from burstpilot.core.runner import ExitStatus
from burstpilot.core.state import StateStore
from burstpilot.core.supervisor import TaskSupervisor

SECRET = "hunter2"


class FakeHandle:
    """Stands in for RunHandle; the test drives output and exit by hand."""

    def __init__(self, burst_id: int, prompt: str, on_line, on_exit) -> None:
        self.burst_id = burst_id
        self.prompt = prompt
        self._on_line = on_line
        self._on_exit = on_exit
        self.terminations: list[bool] = []
        self.pid = 4242 + burst_id

    def emit(self, line: str) -> None:
        self._on_line(self, line)

    def exit(self, returncode: Optional[int] = 0, spawn_error: str = "") -> None:
        self._on_exit(self, ExitStatus(returncode=returncode, spawn_error=spawn_error))

    def terminate(self, force: bool = False) -> None:
        self.terminations.append(force)


class FakeRunner:
    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]

    def run(self, prompt, working_dir, log_path, on_line, on_exit, burst_id=0) -> FakeHandle:
        handle = FakeHandle(burst_id, prompt, on_line, on_exit)
        self.handles.append(handle)
        return handle


class FakeTelegram:
    """Records Bot API calls instead of making them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.deleted: list[tuple[int, int]] = []
        self.answers: list[tuple[str, str]] = []
        self.commands: list[tuple[list, dict]] = []
        self.polling = False
        self.edit_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self._next_id = 100

    def send_message(self, chat_id, text, reply_markup=None):
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup, "message_id": self._next_id})
        return self._next_id

    def edit_message_text(self, chat_id, message_id, text, reply_markup=None):
        if self.edit_error is not None:
            raise self.edit_error
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text, "reply_markup": reply_markup})

    def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True

    def answer_callback_query(self, callback_query_id, text=""):
        self.answers.append((callback_query_id, text))

    def set_my_commands(self, commands, scope):
        self.commands.append((list(commands), scope))

    def start_polling(self, on_update):
        self.polling = True

    def stop_polling(self):
        self.polling = False


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def secret_file(tmp_path) -> str:
    path = tmp_path / ".secret"
    path.write_text(SECRET + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_supervisor(tmp_path, secret_file, fake_runner):
    """Build a launched TaskSupervisor on tmp_path; shut down on teardown."""
    created: list[TaskSupervisor] = []

    def _make(
        quantum_seconds: float = 600.0,
        heartbeat_seconds: float = 600.0,
        runner: Any = None,
        on_snapshot=None,
        launch: bool = True,
    ) -> TaskSupervisor:
        sup = TaskSupervisor(
            store=StateStore(os.path.join(str(tmp_path), "state", "state.json")),
            runner=runner or fake_runner,
            gate=AccessGate(secret_file, ttl_seconds=600),
            workdir=str(tmp_path),
            log_dir=os.path.join(str(tmp_path), "logs"),
            quantum_seconds=quantum_seconds,
            heartbeat_seconds=heartbeat_seconds,
            on_snapshot=on_snapshot,
        )
        if launch:
            sup.launch()
        created.append(sup)
        return sup

    yield _make
    for sup in created:
        sup.shutdown(timeout=5)
