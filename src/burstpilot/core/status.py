"""Status snapshots: render-ready text for the operator's status panel.

:func:`build_snapshot` is a pure function of the task, the wall clock
and the current output tail.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from burstpilot.core.state import PAUSED, RUNNING, Task

MAX_TAIL_CHARS = 2000
TASK_PREVIEW_CHARS = 100

# Which control affordances apply to a snapshot
CONTROLS_PANEL = "panel"       # status / pause / stop / lock
CONTROLS_RESUME = "resume"     # continue / stop for a paused task
CONTROLS_NONE = "none"


@dataclass(frozen=True)
class StatusSnapshot:
    task_id: str
    status: str
    text: str
    controls: str
    chat_id: int
    message_id: Optional[int] = None
    quantum_remaining: float = 0.0
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "controls": self.controls,
            "elapsed_seconds": round(self.elapsed, 1),
            "quantum_remaining_seconds": round(self.quantum_remaining, 1),
            "text": self.text,
        }


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}m {total % 60}s"


def render_tail(lines: Sequence[str], max_chars: int = MAX_TAIL_CHARS) -> str:
    """Join output lines, keeping only the last ``max_chars`` characters."""
    text = "\n".join(lines)
    if not text:
        return "(no output yet)"
    if len(text) > max_chars:
        return "..." + text[-max_chars:]
    return text


def default_controls(status: str) -> str:
    if status == PAUSED:
        return CONTROLS_RESUME
    return CONTROLS_PANEL


def build_status_text(
    task: Task,
    now: float,
    tail: Sequence[str],
    quantum_seconds: float,
) -> str:
    total_elapsed = now - task.started_at
    quantum_elapsed = now - task.quantum_started_at
    quantum_remaining = max(0.0, quantum_seconds - quantum_elapsed)
    started = datetime.fromtimestamp(task.started_at, tz=timezone.utc).isoformat(timespec="seconds")
    preview = task.description[:TASK_PREVIEW_CHARS]
    if len(task.description) > TASK_PREVIEW_CHARS:
        preview += "..."

    return "\n".join([
        "📊 Status Panel",
        "",
        f"State: {task.status.upper()}",
        f"Task ID: {task.short_id}",
        f"Continuation: #{task.continuation_count}",
        "",
        f"⏱ Started: {started}",
        f"⏱ Elapsed: {format_duration(total_elapsed)}",
        f"⏱ Quantum: {format_duration(quantum_elapsed)} / {format_duration(quantum_remaining)} remaining",
        "",
        f"📝 Task: {preview}",
        "",
        f"📄 Log: {task.log_path}",
        "",
        "Last output:",
        "```",
        render_tail(tail),
        "```",
    ])


def build_snapshot(
    task: Task,
    now: float,
    tail: Sequence[str],
    quantum_seconds: float,
    note: str = "",
    controls: Optional[str] = None,
) -> StatusSnapshot:
    text = build_status_text(task, now, tail, quantum_seconds)
    if note:
        text = f"{text}\n\n{note}"
    quantum_remaining = 0.0
    if task.status == RUNNING:
        quantum_remaining = max(0.0, quantum_seconds - (now - task.quantum_started_at))
    return StatusSnapshot(
        task_id=task.task_id,
        status=task.status,
        text=text,
        controls=controls or default_controls(task.status),
        chat_id=task.render_target.chat_id,
        message_id=task.render_target.message_id,
        quantum_remaining=quantum_remaining,
        elapsed=max(0.0, now - task.started_at),
    )
