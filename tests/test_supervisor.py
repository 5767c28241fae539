"""Tests for the task supervisor lifecycle state machine."""
from __future__ import annotations

import json
import os
import shlex
import sys
import threading

import pytest

from burstpilot.core import supervisor as sup
from burstpilot.core.runner import ProcessRunner
from burstpilot.core.state import COMPLETED, ERROR, PAUSED, RUNNING, STOPPED, StateStore
from burstpilot.core.status import CONTROLS_NONE, CONTROLS_RESUME

from conftest import SECRET


def _unlocked(make_supervisor, **kwargs):
    s = make_supervisor(**kwargs)
    assert s.unlock(SECRET).accepted
    return s


def _audit_types(s) -> list[str]:
    with open(s.audit_path, "r", encoding="utf-8") as f:
        return [json.loads(line)["type"] for line in f if line.strip()]


# ── Access ───────────────────────────────────────────────────

class TestAccess:
    def test_starts_locked(self, make_supervisor) -> None:
        s = make_supervisor()
        assert not s.is_unlocked()

    def test_unlock_with_wrong_secret_is_denied(self, make_supervisor) -> None:
        s = make_supervisor()
        result = s.unlock("nope")
        assert not result.accepted
        assert result.reason == sup.DENIED
        assert not s.is_unlocked()

    def test_unlock_then_lock(self, make_supervisor) -> None:
        s = make_supervisor()
        assert s.unlock(SECRET).accepted
        assert s.is_unlocked()
        s.lock()
        assert not s.is_unlocked()
        assert _audit_types(s) == ["access.unlock", "access.lock"]

    def test_unlock_without_secret_file(self, make_supervisor, secret_file) -> None:
        os.remove(secret_file)
        s = make_supervisor()
        result = s.unlock(SECRET)
        assert result.reason == "no-secret"

    def test_unlock_window_is_persisted(self, make_supervisor) -> None:
        s = make_supervisor()
        s.unlock(SECRET)
        reloaded = StateStore(s.store.path).load()
        assert reloaded.unlocked_until == pytest.approx(s.state.unlocked_until)

    def test_unlock_check_runs_on_dispatcher(self, make_supervisor) -> None:
        s = make_supervisor()
        seen = []
        real_clock = s.clock

        def clock() -> float:
            seen.append(threading.current_thread().name)
            return real_clock()

        s.clock = clock
        assert not s.is_unlocked()
        assert seen == ["task-supervisor"]


# ── Start ────────────────────────────────────────────────────

class TestStart:
    def test_start_rejected_while_locked(self, make_supervisor, fake_runner) -> None:
        s = make_supervisor()
        result = s.start_task("build it", chat_id=1)
        assert result.reason == sup.LOCKED
        assert fake_runner.handles == []

    def test_start_rejected_for_empty_description(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        assert s.start_task("   ", chat_id=1).reason == sup.EMPTY_DESCRIPTION
        assert fake_runner.handles == []

    def test_start_runs_agent_with_description(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        result = s.start_task("  build it  ", chat_id=55)

        assert result.accepted
        task = s.state.current_task
        assert task.status == RUNNING
        assert task.description == "build it"
        assert task.render_target.chat_id == 55
        assert task.log_path.endswith(f"task-{task.task_id}.log")
        assert fake_runner.last.prompt == "build it"
        assert published and published[-1].status == RUNNING
        assert s.scheduler.active

    def test_second_start_rejected_while_active(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        first = s.start_task("one", chat_id=1)
        second = s.start_task("two", chat_id=1)
        assert second.reason == sup.TASK_ALREADY_ACTIVE
        assert second.detail == RUNNING
        assert s.state.current_task.task_id == first.task_id
        assert len(fake_runner.handles) == 1

    def test_locked_is_checked_before_active(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("one", chat_id=1)
        s.lock()
        assert s.start_task("two", chat_id=1).reason == sup.LOCKED

    def test_start_replaces_finished_task(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        first = s.start_task("one", chat_id=1)
        fake_runner.last.exit(0)
        assert s.status().status == COMPLETED

        second = s.start_task("two", chat_id=1)
        assert second.accepted
        assert second.task_id != first.task_id


# ── Output and exit ──────────────────────────────────────────

class TestBurstEvents:
    def test_output_feeds_status_tail(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        fake_runner.last.emit("compiling")
        fake_runner.last.emit("linking")
        snapshot = s.status()
        assert "compiling\nlinking" in snapshot.text

    def test_exit_zero_completes(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        s.start_task("work", chat_id=1)
        fake_runner.last.emit("all done")
        fake_runner.last.exit(0)

        snapshot = s.status()
        assert snapshot.status == COMPLETED
        task = s.state.current_task
        assert task.last_output_tail == ["all done"]
        assert "exit code: 0" in published[-1].text
        assert published[-1].controls == CONTROLS_NONE
        assert not s.scheduler.active

    def test_nonzero_exit_is_error(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        fake_runner.last.exit(2)
        assert s.status().status == ERROR
        assert "task.error" in _audit_types(s)

    def test_spawn_failure_is_error(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        s.start_task("work", chat_id=1)
        fake_runner.last.exit(None, spawn_error="No such file or directory")
        assert s.status().status == ERROR
        assert "spawn failed" in published[-1].text

    def test_stale_output_does_not_leak_into_next_burst(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        old = fake_runner.last
        s.pause_task()
        s.continue_task()
        old.emit("late line from old process")
        fake_runner.last.emit("fresh")
        snapshot = s.status()
        assert "late line" not in snapshot.text
        assert "fresh" in snapshot.text

    def test_stale_exit_is_ignored(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        old = fake_runner.last
        s.pause_task()
        s.continue_task()
        old.exit(-15)
        assert s.status().status == RUNNING


# ── Pause / continue ─────────────────────────────────────────

class TestPauseContinue:
    def test_pause_requires_running_task(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        assert s.pause_task().reason == sup.NO_RUNNING_TASK

    def test_pause_terminates_gracefully_and_keeps_tail(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        s.start_task("work", chat_id=1)
        handle = fake_runner.last
        handle.emit("step 1")

        result = s.pause_task()
        assert result.accepted
        task = s.state.current_task
        assert task.status == PAUSED
        assert task.pause_reason == "operator"
        assert task.last_output_tail == ["step 1"]
        assert handle.terminations == [False]
        assert published[-1].controls == CONTROLS_RESUME
        assert not s.scheduler.active

    def test_continue_requires_paused_task(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        assert s.continue_task().reason == sup.NO_PAUSED_TASK
        s.start_task("work", chat_id=1)
        assert s.continue_task().reason == sup.NO_PAUSED_TASK

    def test_continue_requires_unlock(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        s.pause_task()
        s.lock()
        assert s.continue_task().reason == sup.LOCKED

    def test_continue_sends_continuation_prompt(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("write the docs", chat_id=1)
        fake_runner.last.emit("chapter 1 written")
        s.pause_task()

        result = s.continue_task()
        assert result.accepted
        assert result.detail == 1
        task = s.state.current_task
        assert task.status == RUNNING
        assert task.continuation_count == 1
        prompt = fake_runner.last.prompt
        assert prompt.startswith("CONTINUATION PROMPT")
        assert "write the docs" in prompt
        assert "chapter 1 written" in prompt
        assert len(fake_runner.handles) == 2

    def test_continuation_count_tracks_each_continue(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("long haul", chat_id=1)
        for expected in (1, 2, 3):
            assert s.pause_task().accepted
            result = s.continue_task()
            assert result.detail == expected
            assert s.state.current_task.continuation_count == expected
        assert len(fake_runner.handles) == 4
        assert StateStore(s.store.path).load().current_task.continuation_count == 3

    def test_continue_with_wrong_task_id(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        s.pause_task()
        assert s.continue_task("someone-else").reason == sup.TASK_MISMATCH
        assert s.state.current_task.status == PAUSED

    def test_quantum_expiry_pauses(self, make_supervisor, fake_runner, wait_until) -> None:
        published = []
        s = _unlocked(make_supervisor, quantum_seconds=0.2, on_snapshot=published.append)
        s.start_task("long job", chat_id=1)
        fake_runner.last.emit("halfway")

        assert wait_until(lambda: s.status().status == PAUSED)
        task = s.state.current_task
        assert task.pause_reason == "timeout"
        assert task.last_output_tail == ["halfway"]
        assert fake_runner.last.terminations == [False]
        assert "Quantum timeout" in published[-1].text
        assert "task.quantum_timeout" in _audit_types(s)

    def test_heartbeat_publishes_while_running(self, make_supervisor, wait_until) -> None:
        published = []
        s = _unlocked(make_supervisor, heartbeat_seconds=0.05, on_snapshot=published.append)
        s.start_task("job", chat_id=1)
        assert wait_until(lambda: len(published) >= 3)
        assert all(p.status == RUNNING for p in published)


# ── Stop / cancel ────────────────────────────────────────────

class TestStopCancel:
    def test_stop_without_task(self, make_supervisor) -> None:
        s = make_supervisor()
        assert s.stop_task().reason == sup.NO_ACTIVE_TASK
        assert s.cancel_task().reason == sup.NO_ACTIVE_TASK

    def test_stop_running_task_returns_to_idle(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        s.start_task("work", chat_id=1)
        handle = fake_runner.last

        result = s.stop_task()
        assert result.accepted
        assert handle.terminations == [False]
        assert s.status() is None
        assert published[-1].status == STOPPED
        assert published[-1].controls == CONTROLS_NONE
        assert StateStore(s.store.path).load().current_task is None

    def test_stop_works_while_locked(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        s.lock()
        assert s.stop_task().accepted

    def test_stop_finished_task_clears_it(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        fake_runner.last.exit(0)
        assert s.stop_task().accepted
        assert s.status() is None

    def test_stop_with_wrong_task_id(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        assert s.stop_task("other").reason == sup.TASK_MISMATCH
        assert s.status().status == RUNNING

    def test_cancel_force_kills_without_publishing(self, make_supervisor, fake_runner) -> None:
        published = []
        s = _unlocked(make_supervisor, on_snapshot=published.append)
        s.start_task("work", chat_id=1)
        count = len(published)

        assert s.cancel_task().accepted
        assert fake_runner.last.terminations == [True]
        assert s.status() is None
        assert len(published) == count
        assert "task.cancel" in _audit_types(s)


# ── Restart and concurrency ──────────────────────────────────

class TestRestart:
    def test_running_task_resumes_paused_after_restart(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=9)
        fake_runner.last.emit("before crash")
        # Simulate a crash: state on disk still says running
        reborn = make_supervisor()
        task = reborn.state.current_task
        assert task.status == PAUSED
        assert task.pause_reason == "restart"
        assert "task.interrupted" in _audit_types(reborn)

    def test_shutdown_terminates_agent_and_saves_task(self, make_supervisor, fake_runner) -> None:
        s = _unlocked(make_supervisor)
        result = s.start_task("work", chat_id=9)
        s.shutdown(timeout=5)

        assert fake_runner.last.terminations == [False]
        assert not s.scheduler.active
        with open(s.store.path, "r", encoding="utf-8") as f:
            on_disk = json.load(f)
        assert on_disk["current_task"]["task_id"] == result.task_id

        task = StateStore(s.store.path).load().current_task
        assert task.task_id == result.task_id
        assert task.status == PAUSED
        assert task.pause_reason == "restart"

    def test_status_message_id_is_recorded(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        result = s.start_task("work", chat_id=1)
        s.attach_status_message(result.task_id, 321)
        assert s.status().message_id == 321
        assert StateStore(s.store.path).load().current_task.render_target.message_id == 321

    def test_attach_for_other_task_is_ignored(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        s.start_task("work", chat_id=1)
        s.attach_status_message("not-this-one", 5)
        assert s.status().message_id is None

    def test_pause_racing_quantum_expiry_pauses_once(self, make_supervisor, fake_runner, wait_until) -> None:
        s = _unlocked(make_supervisor, quantum_seconds=0.05)
        s.start_task("work", chat_id=1)
        results = []
        threads = [threading.Thread(target=lambda: results.append(s.pause_task())) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert wait_until(lambda: s.status().status == PAUSED)
        # At most one operator pause can win; the expiry may beat them all
        assert sum(1 for r in results if r.accepted) <= 1
        assert fake_runner.last.terminations == [False]

    def test_describe(self, make_supervisor) -> None:
        s = _unlocked(make_supervisor)
        assert s.describe()["task"] is None
        s.start_task("work", chat_id=1)
        info = s.describe()
        assert info["unlocked"] is True
        assert info["task"]["status"] == RUNNING
        assert info["continuation_count"] == 0
        assert info["process_pid"] is not None


# ── Real agent process ───────────────────────────────────────

class TestRealProcess:
    def _runner(self, code: str) -> ProcessRunner:
        return ProcessRunner(f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}")

    def test_real_agent_runs_to_completion(self, make_supervisor, wait_until) -> None:
        runner = self._runner("import sys; print('working on: ' + sys.argv[2]); print('done')")
        s = _unlocked(make_supervisor, runner=runner)
        s.start_task("the real thing", chat_id=1)

        assert wait_until(lambda: s.status().status == COMPLETED, timeout=10)
        task = s.state.current_task
        assert task.last_output_tail == ["working on: the real thing", "done"]
        with open(task.log_path, "r", encoding="utf-8") as f:
            assert f.read().splitlines() == ["working on: the real thing", "done"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_real_agent_is_paused_by_quantum(self, make_supervisor, wait_until) -> None:
        runner = self._runner("import time; print('tick', flush=True); time.sleep(30)")
        s = _unlocked(make_supervisor, runner=runner, quantum_seconds=0.5)
        s.start_task("slow", chat_id=1)

        assert wait_until(lambda: s.status().status == PAUSED, timeout=10)
        assert s.state.current_task.last_output_tail == ["tick"]

    def test_unusable_log_dir_ends_in_error(self, make_supervisor, tmp_path, wait_until) -> None:
        (tmp_path / "logs").write_text("not a directory")
        published = []
        s = _unlocked(make_supervisor, runner=self._runner("print(1)"), on_snapshot=published.append)

        result = s.start_task("do it", chat_id=1)
        assert result.accepted
        assert wait_until(lambda: s.status().status == ERROR)
        assert not s.scheduler.active
        assert s.describe()["process_pid"] is None
        assert "spawn failed" in published[-1].text
