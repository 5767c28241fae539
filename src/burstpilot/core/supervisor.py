"""Task supervisor: lifecycle state machine for the single agent task.

All mutations of the supervisor state happen on one dispatcher thread
that drains a mailbox.  Operator operations (``start_task``,
``pause_task``, ...) are submitted to the mailbox and the caller blocks
for the result; process output, process exit, heartbeats and quantum
expiry are posted as events by the runner and timer threads.  Because
every event goes through the same queue, a quantum expiry racing an
operator pause is settled by arrival order: the loser finds the task no
longer running and does nothing.

Lifecycle::

    idle ──start──▶ running ──pause / quantum──▶ paused ──continue──▶ running
                      │  exit 0 ─▶ completed      │
                      │  exit≠0 ─▶ error          │
                      └──────── stop ─▶ stopped ─▶ idle ◀── cancel (any)
"""
from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
import logging
import os
import queue
import threading
import time
import uuid
from typing import Any, Callable, Optional

from burstpilot.core.access import GRANTED, NO_SECRET, AccessGate
from burstpilot.core.audit import log_event
from burstpilot.core.output_buffer import OutputBuffer
from burstpilot.core.quantum import QuantumScheduler
from burstpilot.core.runner import ExitStatus, ProcessRunner, RunHandle
from burstpilot.core.state import (
    ACTIVE_STATUSES,
    COMPLETED,
    ERROR,
    PAUSED,
    RUNNING,
    STOPPED,
    RenderTarget,
    StateStore,
    SupervisorState,
    Task,
)
from burstpilot.core.status import CONTROLS_NONE, StatusSnapshot, build_snapshot
from burstpilot.core.templates import continuation_prompt

logger = logging.getLogger("burstpilot.supervisor")

# Rejection reasons
LOCKED = "locked"
TASK_ALREADY_ACTIVE = "task-already-active"
EMPTY_DESCRIPTION = "empty-description"
NO_PAUSED_TASK = "no-paused-task"
NO_RUNNING_TASK = "no-running-task"
NO_ACTIVE_TASK = "no-active-task"
TASK_MISMATCH = "task-mismatch"
RATE_LIMITED = "rate-limited"
DENIED = "denied"

_OPERATION_TIMEOUT = 30.0


@dataclass
class OperationResult:
    accepted: bool
    reason: str = ""
    snapshot: Optional[StatusSnapshot] = None
    task_id: str = ""
    detail: Any = None

    @classmethod
    def ok(cls, **kwargs: Any) -> OperationResult:
        return cls(accepted=True, **kwargs)

    @classmethod
    def rejected(cls, reason: str, **kwargs: Any) -> OperationResult:
        return cls(accepted=False, reason=reason, **kwargs)


class TaskSupervisor:
    """Owns the current task, its agent process and its burst timers."""

    def __init__(
        self,
        store: StateStore,
        runner: ProcessRunner,
        gate: AccessGate,
        workdir: str,
        log_dir: str,
        quantum_seconds: float,
        heartbeat_seconds: float,
        tail_lines: int = 20,
        buffer: Optional[OutputBuffer] = None,
        on_snapshot: Optional[Callable[[StatusSnapshot], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.runner = runner
        self.gate = gate
        self.workdir = workdir
        self.log_dir = log_dir
        self.quantum_seconds = quantum_seconds
        self.tail_lines = tail_lines
        self.buffer = buffer or OutputBuffer()
        self.on_snapshot = on_snapshot
        self.clock = clock
        self.scheduler = QuantumScheduler(heartbeat_seconds, quantum_seconds)
        self.audit_path = os.path.join(log_dir, "audit.jsonl")

        self.state: SupervisorState = store.load()
        if store.interrupted_task_id:
            self._audit("task.interrupted", {"task_id": store.interrupted_task_id})
        self._handle: Optional[RunHandle] = None
        self._burst_seq = 0

        self._mailbox: "queue.Queue[Optional[tuple[Callable[..., Any], tuple, Optional[Future]]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    # ── lifecycle ─────────────────────────────────────────────

    def launch(self) -> None:
        """Start the dispatcher thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._closed = False
        self._thread = threading.Thread(target=self._dispatch_loop, name="task-supervisor", daemon=True)
        self._thread.start()
        task = self.state.current_task
        logger.info(
            "Supervisor started (task=%s, status=%s)",
            task.task_id if task else None, task.status if task else "idle",
        )

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop timers, ask any live agent to exit, save state, stop the loop."""
        if self._thread is None or not self._thread.is_alive():
            self._shutdown_now()
            return
        try:
            self._call(self._shutdown_now, timeout=timeout)
        finally:
            self._closed = True
            self._mailbox.put(None)
            self._thread.join(timeout)
            self._thread = None

    def _shutdown_now(self) -> None:
        self.scheduler.stop()
        if self._handle is not None:
            self._handle.terminate(force=False)
        self._save()
        logger.info("Supervisor shut down")

    # ── mailbox ───────────────────────────────────────────────

    def _dispatch_loop(self) -> None:
        while True:
            item = self._mailbox.get()
            if item is None:
                break
            fn, args, future = item
            if future is not None and not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args)
            except Exception as exc:  # noqa: BLE001
                logger.error("Supervisor handler %s failed: %s", getattr(fn, "__name__", fn), exc, exc_info=True)
                if future is not None:
                    future.set_exception(exc)
                continue
            if future is not None:
                future.set_result(result)

    def _on_loop(self) -> bool:
        return threading.current_thread() is self._thread

    def _call(self, fn: Callable[..., Any], *args: Any, timeout: float = _OPERATION_TIMEOUT) -> Any:
        """Run *fn* on the dispatcher thread and return its result."""
        if self._thread is None or self._on_loop():
            return fn(*args)
        future: Future = Future()
        self._mailbox.put((fn, args, future))
        return future.result(timeout=timeout)

    def _post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue an event for the dispatcher thread without waiting."""
        if self._closed:
            return
        if self._thread is None:
            fn(*args)
            return
        self._mailbox.put((fn, args, None))

    # ── operator operations ───────────────────────────────────

    def is_unlocked(self) -> bool:
        return self._call(self._is_unlocked)

    def unlock(self, secret: str) -> OperationResult:
        return self._call(self._unlock, secret)

    def lock(self) -> OperationResult:
        return self._call(self._lock)

    def start_task(self, description: str, chat_id: int) -> OperationResult:
        return self._call(self._start_task, description, chat_id)

    def continue_task(self, task_id: Optional[str] = None) -> OperationResult:
        return self._call(self._continue_task, task_id)

    def pause_task(self) -> OperationResult:
        return self._call(self._pause_task)

    def stop_task(self, task_id: Optional[str] = None) -> OperationResult:
        return self._call(self._stop_task, task_id)

    def cancel_task(self) -> OperationResult:
        return self._call(self._cancel_task)

    def status(self) -> Optional[StatusSnapshot]:
        return self._call(self._status)

    def refresh_status(self) -> OperationResult:
        """Push the current snapshot to the status panel."""
        return self._call(self._refresh_status)

    def attach_status_message(self, task_id: str, message_id: int) -> None:
        """Record the message that now carries this task's status panel."""
        self._call(self._attach_status_message, task_id, message_id)

    def describe(self) -> dict:
        return self._call(self._describe)

    # ── handlers (dispatcher thread only) ─────────────────────

    def _is_unlocked(self) -> bool:
        return self.clock() < self.state.unlocked_until

    def _unlock(self, secret: str) -> OperationResult:
        verdict = self.gate.check(secret)
        if verdict != GRANTED:
            self._audit("access.unlock_denied", {"reason": verdict})
            return OperationResult.rejected(NO_SECRET if verdict == NO_SECRET else DENIED)
        self.state.unlocked_until = self.clock() + self.gate.ttl_seconds
        self._save()
        self._audit("access.unlock", {"until": self.state.unlocked_until})
        return OperationResult.ok(detail=self.state.unlocked_until)

    def _lock(self) -> OperationResult:
        self.state.unlocked_until = 0.0
        self._save()
        self._audit("access.lock", {})
        return OperationResult.ok()

    def _start_task(self, description: str, chat_id: int) -> OperationResult:
        if not self._is_unlocked():
            return OperationResult.rejected(LOCKED)
        current = self.state.current_task
        if current is not None and current.status in ACTIVE_STATUSES:
            return OperationResult.rejected(TASK_ALREADY_ACTIVE, task_id=current.task_id, detail=current.status)
        description = (description or "").strip()
        if not description:
            return OperationResult.rejected(EMPTY_DESCRIPTION)

        # A finished (completed / error) task is replaced by the new one
        if current is not None:
            logger.info("Discarding finished task %s (%s)", current.task_id, current.status)

        task_id = str(uuid.uuid4())
        now = self.clock()
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create log dir %s: %s", self.log_dir, exc)
        task = Task(
            task_id=task_id,
            description=description,
            log_path=os.path.join(self.log_dir, f"task-{task_id}.log"),
            render_target=RenderTarget(chat_id=chat_id),
            status=RUNNING,
            started_at=now,
            quantum_started_at=now,
        )
        self.state.current_task = task
        self._save()
        self._audit("task.start", {"task_id": task_id, "description": description[:200]})
        logger.info("Starting task %s: %s", task_id, description[:100])

        self._begin_burst(task, description)
        snapshot = self._snapshot(task)
        self._publish(snapshot)
        return OperationResult.ok(task_id=task_id, snapshot=snapshot)

    def _continue_task(self, task_id: Optional[str]) -> OperationResult:
        if not self._is_unlocked():
            return OperationResult.rejected(LOCKED)
        task = self.state.current_task
        if task is None or task.status != PAUSED:
            return OperationResult.rejected(NO_PAUSED_TASK)
        if task_id and task_id != task.task_id:
            return OperationResult.rejected(TASK_MISMATCH, task_id=task.task_id)

        task.continuation_count += 1
        task.status = RUNNING
        task.pause_reason = ""
        task.quantum_started_at = self.clock()
        self._save()
        self._audit("task.continue", {"task_id": task.task_id, "continuation": task.continuation_count})
        logger.info("Continuing task %s (continuation #%d)", task.task_id, task.continuation_count)

        prompt = continuation_prompt(task.description, self.workdir, task.last_output_tail)
        self._begin_burst(task, prompt)
        snapshot = self._snapshot(task)
        self._publish(snapshot)
        return OperationResult.ok(task_id=task.task_id, snapshot=snapshot, detail=task.continuation_count)

    def _pause_task(self) -> OperationResult:
        task = self.state.current_task
        if task is None or task.status != RUNNING:
            return OperationResult.rejected(NO_RUNNING_TASK)
        snapshot = self._pause(task, reason="operator", note="⏸ Task paused by user.")
        return OperationResult.ok(task_id=task.task_id, snapshot=snapshot)

    def _stop_task(self, task_id: Optional[str]) -> OperationResult:
        task = self.state.current_task
        if task is None:
            return OperationResult.rejected(NO_ACTIVE_TASK)
        if task_id and task_id != task.task_id:
            return OperationResult.rejected(TASK_MISMATCH, task_id=task.task_id)

        was_running = task.status == RUNNING
        self._end_burst(force=False)
        if was_running:
            task.last_output_tail = self.buffer.tail(self.tail_lines)
        task.status = STOPPED
        self._save()
        snapshot = self._snapshot(task, note="🛑 Task stopped by user.", controls=CONTROLS_NONE)
        self._publish(snapshot)
        self._audit("task.stop", {"task_id": task.task_id})
        logger.info("Task %s stopped", task.task_id)

        self.state.current_task = None
        self._save()
        return OperationResult.ok(task_id=task.task_id, snapshot=snapshot)

    def _cancel_task(self) -> OperationResult:
        task = self.state.current_task
        if task is None:
            return OperationResult.rejected(NO_ACTIVE_TASK)
        self._end_burst(force=True)
        self.state.current_task = None
        self._save()
        self._audit("task.cancel", {"task_id": task.task_id})
        logger.info("Task %s cancelled", task.task_id)
        return OperationResult.ok(task_id=task.task_id)

    def _status(self) -> Optional[StatusSnapshot]:
        task = self.state.current_task
        if task is None:
            return None
        return self._snapshot(task)

    def _refresh_status(self) -> OperationResult:
        task = self.state.current_task
        if task is None:
            return OperationResult.rejected(NO_ACTIVE_TASK)
        snapshot = self._snapshot(task)
        self._publish(snapshot)
        return OperationResult.ok(task_id=task.task_id, snapshot=snapshot)

    def _attach_status_message(self, task_id: str, message_id: int) -> None:
        task = self.state.current_task
        if task is None or task.task_id != task_id:
            return
        if task.render_target.message_id == message_id:
            return
        task.render_target.message_id = message_id
        self._save()

    def _describe(self) -> dict:
        task = self.state.current_task
        return {
            "unlocked": self._is_unlocked(),
            "unlocked_until": self.state.unlocked_until,
            "task": self._snapshot(task).to_dict() if task else None,
            "continuation_count": task.continuation_count if task else None,
            "process_pid": self._handle.pid if self._handle else None,
        }

    # ── burst management ──────────────────────────────────────

    def _begin_burst(self, task: Task, prompt: str) -> None:
        self.scheduler.stop()
        self.buffer.clear()
        self._burst_seq += 1
        burst_id = self._burst_seq

        self._handle = self.runner.run(
            prompt,
            self.workdir,
            task.log_path,
            on_line=lambda handle, line: self._post(self._on_output, handle, line),
            on_exit=lambda handle, status: self._post(self._on_exit, handle, status),
            burst_id=burst_id,
        )
        self.scheduler.start(
            on_heartbeat=lambda: self._post(self._on_heartbeat, burst_id),
            on_quantum_expiry=lambda: self._post(self._on_quantum_expiry, burst_id),
        )

    def _end_burst(self, force: bool) -> None:
        self.scheduler.stop()
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.terminate(force=force)

    def _pause(self, task: Task, reason: str, note: str) -> StatusSnapshot:
        self._end_burst(force=False)
        task.status = PAUSED
        task.pause_reason = reason
        task.last_output_tail = self.buffer.tail(self.tail_lines)
        self._save()
        self._audit(
            "task.quantum_timeout" if reason == "timeout" else "task.pause",
            {"task_id": task.task_id, "continuation": task.continuation_count},
        )
        logger.info("Task %s paused (%s)", task.task_id, reason)
        snapshot = self._snapshot(task, note=note)
        self._publish(snapshot)
        return snapshot

    # ── events (dispatcher thread only) ───────────────────────

    def _is_current(self, burst_id: int) -> bool:
        return self._handle is not None and self._handle.burst_id == burst_id

    def _on_output(self, handle: RunHandle, line: str) -> None:
        # Lines from a burst that has since been replaced are already in
        # the log file; they must not leak into the new burst's tail.
        if handle.burst_id == self._burst_seq:
            self.buffer.append(line)

    def _on_exit(self, handle: RunHandle, status: ExitStatus) -> None:
        logger.info("Burst %s finished (%s)", handle.burst_id, status.describe())
        if not self._is_current(handle.burst_id):
            return
        self._handle = None
        self.scheduler.stop()

        task = self.state.current_task
        if task is None or task.status != RUNNING:
            return
        task.status = COMPLETED if status.ok else ERROR
        task.last_output_tail = self.buffer.tail(self.tail_lines)
        self._save()
        self._audit(
            "task.completed" if status.ok else "task.error",
            {"task_id": task.task_id, "returncode": status.returncode, "spawn_error": status.spawn_error},
        )
        if status.ok:
            note = f"✅ Task completed ({status.describe()})"
        else:
            note = f"❌ Task error ({status.describe()})"
        self._publish(self._snapshot(task, note=note, controls=CONTROLS_NONE))

    def _on_heartbeat(self, burst_id: int) -> None:
        task = self.state.current_task
        if task is None or task.status != RUNNING or not self._is_current(burst_id):
            return
        self._publish(self._snapshot(task))

    def _on_quantum_expiry(self, burst_id: int) -> None:
        task = self.state.current_task
        if task is None or task.status != RUNNING or not self._is_current(burst_id):
            return
        minutes = self.quantum_seconds / 60.0
        self._pause(
            task,
            reason="timeout",
            note=f"⏸ Quantum timeout! Execution paused after {minutes:g} minutes.\nApprove continuation?",
        )

    # ── helpers ───────────────────────────────────────────────

    def _snapshot(self, task: Task, note: str = "", controls: Optional[str] = None) -> StatusSnapshot:
        if task.status == RUNNING:
            tail = self.buffer.tail(self.tail_lines)
        else:
            tail = task.last_output_tail
        return build_snapshot(task, self.clock(), tail, self.quantum_seconds, note=note, controls=controls)

    def _publish(self, snapshot: StatusSnapshot) -> None:
        if self.on_snapshot is None:
            return
        try:
            self.on_snapshot(snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.error("Status publish failed for task %s: %s", snapshot.task_id, exc)

    def _save(self) -> None:
        self.store.save(self.state)

    def _audit(self, event_type: str, payload: dict) -> None:
        log_event(event_type, payload, path=self.audit_path)
