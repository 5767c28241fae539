"""Durable supervisor state: the current task and the unlock window.

The whole record is a single JSON document rewritten after every
mutation (write-through).  Writes go to a temp file that is swapped in
with ``os.replace`` so a crash mid-write leaves the previous snapshot
readable.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
import threading
from typing import List, Optional

logger = logging.getLogger("burstpilot.state")

# Task statuses.  There is no "idle": an absent task means idle.
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
STOPPED = "stopped"
ERROR = "error"

TASK_STATUSES = {RUNNING, PAUSED, COMPLETED, STOPPED, ERROR}

# Statuses that block a new /run until the operator stops or cancels.
ACTIVE_STATUSES = {RUNNING, PAUSED}


@dataclass
class RenderTarget:
    """Where status updates for a task are delivered."""
    chat_id: int
    message_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {"chat_id": self.chat_id, "message_id": self.message_id}

    @classmethod
    def from_dict(cls, d: dict) -> RenderTarget:
        return cls(chat_id=int(d["chat_id"]), message_id=d.get("message_id"))


@dataclass
class Task:
    task_id: str
    description: str
    log_path: str
    render_target: RenderTarget
    status: str = RUNNING
    started_at: float = 0.0
    quantum_started_at: float = 0.0
    continuation_count: int = 0
    last_output_tail: List[str] = field(default_factory=list)
    pause_reason: str = ""              # "" | operator | timeout | restart

    @property
    def short_id(self) -> str:
        return self.task_id[:8]

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "status": self.status,
            "started_at": self.started_at,
            "quantum_started_at": self.quantum_started_at,
            "continuation_count": self.continuation_count,
            "log_path": self.log_path,
            "last_output_tail": list(self.last_output_tail),
            "render_target": self.render_target.to_dict(),
            "pause_reason": self.pause_reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        status = d.get("status", PAUSED)
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        return cls(
            task_id=d["task_id"],
            description=d["description"],
            status=status,
            started_at=float(d.get("started_at", 0.0)),
            quantum_started_at=float(d.get("quantum_started_at", 0.0)),
            continuation_count=int(d.get("continuation_count", 0)),
            log_path=d["log_path"],
            last_output_tail=list(d.get("last_output_tail", [])),
            render_target=RenderTarget.from_dict(d["render_target"]),
            pause_reason=d.get("pause_reason", ""),
        )


@dataclass
class SupervisorState:
    unlocked_until: float = 0.0
    current_task: Optional[Task] = None

    def to_dict(self) -> dict:
        return {
            "unlocked_until": self.unlocked_until,
            "current_task": self.current_task.to_dict() if self.current_task else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SupervisorState:
        task_raw = d.get("current_task")
        return cls(
            unlocked_until=float(d.get("unlocked_until", 0.0)),
            current_task=Task.from_dict(task_raw) if task_raw else None,
        )


class StateStore:
    """Loads and saves :class:`SupervisorState` as a JSON document."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._save_lock = threading.Lock()
        # Id of a task reclassified from running to paused by the last load
        self.interrupted_task_id: Optional[str] = None

    def load(self) -> SupervisorState:
        """Return the persisted state, or a default (locked, idle) state.

        A task persisted as running cannot have survived the restart, so
        it is reclassified as paused (and re-saved) before anything else
        sees it.
        """
        if not os.path.exists(self.path):
            return SupervisorState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            state = SupervisorState.from_dict(raw)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load state from %s: %s", self.path, exc)
            return SupervisorState()

        task = state.current_task
        if task and task.status == RUNNING:
            logger.warning("Task %s was running at shutdown; marking it paused", task.task_id)
            task.status = PAUSED
            task.pause_reason = "restart"
            self.interrupted_task_id = task.task_id
            self.save(state)
        return state

    def save(self, state: SupervisorState) -> bool:
        """Persist *state*.  Returns False (and logs) if the write failed."""
        payload = state.to_dict()
        tmp_path = f"{self.path}.tmp"
        try:
            with self._save_lock:
                os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to save state to %s: %s", self.path, exc)
            return False
        return True
