"""Operator command router.

Turns Telegram updates (slash commands and inline-button presses) into
:class:`ChatRequest` objects, dispatches them to the task supervisor and
returns a :class:`ChatResponse` describing what to send back.  The
router never talks to Telegram itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from burstpilot.core import supervisor as sup
from burstpilot.core.logging_config import log_command
from burstpilot.core.rate_limit import RateLimiter
from burstpilot.core.renderer import control_panel_keyboard, keyboard_for
from burstpilot.core.supervisor import OperationResult, TaskSupervisor

logger = logging.getLogger("burstpilot.router")

LOCKED_TEXT = "🔒 Bot is locked. Use /unlock <password> first."

BOT_COMMANDS: list[tuple[str, str]] = [
    ("start", "Show status and control panel"),
    ("unlock", "Unlock bot with password"),
    ("lock", "Lock bot immediately"),
    ("run", "Start a new task"),
    ("status", "Show current task status"),
    ("continue", "Continue paused task"),
    ("pause", "Pause running task"),
    ("stop", "Stop current task"),
    ("cancel", "Cancel task immediately"),
    ("help", "List commands"),
]


@dataclass
class ChatRequest:
    """One inbound operator action: a message or a button press."""
    user_id: int
    chat_id: int
    chat_type: str
    text: str = ""
    message_id: Optional[int] = None
    callback_id: Optional[str] = None
    callback_data: Optional[str] = None

    @property
    def is_callback(self) -> bool:
        return self.callback_id is not None


@dataclass
class ChatResponse:
    """What to send back."""
    text: str = ""
    status: str = "ok"          # ok | rejected | ignored
    keyboard: Optional[dict[str, Any]] = None
    callback_answer: Optional[str] = None
    delete_message_id: Optional[int] = None


def parse_update(update: dict[str, Any]) -> Optional[ChatRequest]:
    """Extract a ChatRequest from a raw Bot API update, or None."""
    if not isinstance(update, dict):
        return None
    query = update.get("callback_query")
    if query:
        message = query.get("message") or {}
        chat = message.get("chat") or {}
        sender = query.get("from") or {}
        if sender.get("id") is None:
            return None
        return ChatRequest(
            user_id=int(sender["id"]),
            chat_id=int(chat.get("id", sender["id"])),
            chat_type=chat.get("type", "private"),
            message_id=message.get("message_id"),
            callback_id=str(query.get("id", "")),
            callback_data=query.get("data") or "",
        )
    message = update.get("message")
    if not message:
        return None
    sender = message.get("from") or {}
    chat = message.get("chat") or {}
    text = message.get("text")
    if sender.get("id") is None or chat.get("id") is None or not text:
        return None
    return ChatRequest(
        user_id=int(sender["id"]),
        chat_id=int(chat["id"]),
        chat_type=chat.get("type", ""),
        text=text,
        message_id=message.get("message_id"),
    )


def is_authorized(req: ChatRequest, allowed_user_id: Optional[int]) -> bool:
    """Only the configured operator, and only in a private chat."""
    if allowed_user_id is None or req.user_id != allowed_user_id:
        return False
    # Button presses are checked by user id alone
    return req.is_callback or req.chat_type == "private"


def split_command(text: str) -> tuple[str, str]:
    """Split ``/cmd@botname args`` into ``("cmd", "args")``."""
    text = text.strip()
    if not text.startswith("/"):
        return "", text
    head, _, rest = text.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    return name, rest.strip()


def handle_chat(
    req: ChatRequest,
    *,
    supervisor: TaskSupervisor,
    rate_limiter: RateLimiter,
    allowed_user_id: Optional[int],
    unlock_ttl_min: int,
) -> ChatResponse:
    """Route an inbound request and return a response."""
    if not is_authorized(req, allowed_user_id):
        logger.info("Ignoring update from unauthorized user %s in chat %s", req.user_id, req.chat_id)
        return ChatResponse(status="ignored")

    if req.is_callback:
        log_command(str(req.user_id), str(req.chat_id), req.callback_data or "", command_type="button")
        return _handle_button(req, supervisor)

    name, args = split_command(req.text)
    if not name:
        return ChatResponse(status="ignored")
    log_command(str(req.user_id), str(req.chat_id), req.text, command_type="slash")

    if name == "start":
        return _cmd_start(supervisor)
    if name == "help":
        return _cmd_help()
    if name == "unlock":
        return _cmd_unlock(supervisor, args, req, unlock_ttl_min)
    if name == "lock":
        supervisor.lock()
        return ChatResponse(text="🔒 Bot locked.")
    if name == "run":
        return _cmd_run(supervisor, rate_limiter, args, req)
    if name == "status":
        return _cmd_status(supervisor)
    if name == "continue":
        return _cmd_continue(supervisor)
    if name == "pause":
        result = supervisor.pause_task()
        if not result.accepted:
            return ChatResponse(text="⚠️ No running task to pause.", status="rejected")
        # The status panel itself announces the pause
        return ChatResponse()
    if name == "stop":
        result = supervisor.stop_task()
        if not result.accepted:
            return ChatResponse(text="📋 No active task to stop.", status="rejected")
        return ChatResponse(text="🛑 Task stopped.")
    if name == "cancel":
        result = supervisor.cancel_task()
        if not result.accepted:
            return ChatResponse(text="📋 No active task to cancel.", status="rejected")
        return ChatResponse(text="❌ Task cancelled immediately.")
    return ChatResponse(text=f"Unknown command /{name}. Try /help.", status="rejected")


# ── Slash command implementations ─────────────────────────────

def _cmd_help() -> ChatResponse:
    lines = ["BurstPilot commands:", ""]
    lines.extend(f"/{name} — {desc}" for name, desc in BOT_COMMANDS)
    return ChatResponse(text="\n".join(lines))


def _cmd_start(supervisor: TaskSupervisor) -> ChatResponse:
    locked = "🔓 Unlocked" if supervisor.is_unlocked() else "🔒 Locked"
    snapshot = supervisor.status()
    task_line = f"📋 Task: {snapshot.status}" if snapshot else "📋 No active task"
    return ChatResponse(text=f"{locked}\n{task_line}", keyboard=control_panel_keyboard())


def _cmd_unlock(supervisor: TaskSupervisor, password: str, req: ChatRequest, ttl_min: int) -> ChatResponse:
    if not password:
        return ChatResponse(text="Usage: /unlock <password>", status="rejected")
    result = supervisor.unlock(password)
    if result.accepted:
        return ChatResponse(text=f"🔓 Unlocked for {ttl_min} minutes.", delete_message_id=req.message_id)
    if result.reason == "no-secret":
        return ChatResponse(text="❌ No password configured. Create a .secret file.", status="rejected")
    return ChatResponse(text="❌ Invalid password.", status="rejected")


def _cmd_run(supervisor: TaskSupervisor, limiter: RateLimiter, description: str, req: ChatRequest) -> ChatResponse:
    if not supervisor.is_unlocked():
        return ChatResponse(text=LOCKED_TEXT, status="rejected")
    if not limiter.allow(str(req.user_id)):
        return _rejection(OperationResult.rejected(sup.RATE_LIMITED))
    result = supervisor.start_task(description, req.chat_id)
    if result.accepted:
        preview = description.strip()[:100]
        return ChatResponse(text=f"🚀 Starting task: {preview}...")
    return _rejection(result, usage="Usage: /run <task description>")


def _cmd_status(supervisor: TaskSupervisor) -> ChatResponse:
    snapshot = supervisor.status()
    if snapshot is None:
        return ChatResponse(text="📋 No active task.")
    return ChatResponse(text=snapshot.text, keyboard=keyboard_for(snapshot) or control_panel_keyboard())


def _cmd_continue(supervisor: TaskSupervisor) -> ChatResponse:
    result = supervisor.continue_task()
    if result.accepted:
        return ChatResponse(text=f"▶️ Continuing task (continuation #{result.detail})...")
    return _rejection(result)


def _rejection(result: OperationResult, usage: str = "") -> ChatResponse:
    reason = result.reason
    if reason == sup.LOCKED:
        text = LOCKED_TEXT
    elif reason == sup.TASK_ALREADY_ACTIVE:
        text = f"⚠️ Task already {result.detail}. Use /stop or /continue first."
    elif reason == sup.EMPTY_DESCRIPTION:
        text = usage or "Task description is empty."
    elif reason == sup.NO_PAUSED_TASK:
        text = "⚠️ No paused task to continue."
    elif reason == sup.NO_RUNNING_TASK:
        text = "⚠️ No running task."
    elif reason == sup.NO_ACTIVE_TASK:
        text = "📋 No active task."
    elif reason == sup.RATE_LIMITED:
        text = "⏳ Rate limited. Wait a moment."
    else:
        text = f"⚠️ Rejected: {reason}"
    return ChatResponse(text=text, status="rejected")


# ── Inline buttons ────────────────────────────────────────────

def _handle_button(req: ChatRequest, supervisor: TaskSupervisor) -> ChatResponse:
    data = req.callback_data or ""

    if data == "STATUS":
        result = supervisor.refresh_status()
        return ChatResponse(callback_answer="Status updated" if result.accepted else "No active task")

    if data == "LOCK":
        supervisor.lock()
        return ChatResponse(text="🔒 Bot locked.", callback_answer="Bot locked")

    if data == "STOP_PANEL":
        result = supervisor.stop_task()
        return ChatResponse(callback_answer="Stopping task..." if result.accepted else "No task to stop")

    if data == "PAUSE":
        result = supervisor.pause_task()
        return ChatResponse(callback_answer="Pausing task..." if result.accepted else "No running task")

    if data.startswith("CONTINUE:"):
        task_id = data.split(":", 1)[1]
        if not supervisor.is_unlocked():
            return ChatResponse(callback_answer="Bot is locked", status="rejected")
        result = supervisor.continue_task(task_id)
        if not result.accepted:
            return ChatResponse(callback_answer="Task not found or not paused", status="rejected")
        return ChatResponse(callback_answer="Continuing task...")

    if data.startswith("STOP:"):
        task_id = data.split(":", 1)[1]
        result = supervisor.stop_task(task_id)
        if not result.accepted:
            return ChatResponse(callback_answer="Task not found", status="rejected")
        return ChatResponse(callback_answer="Stopping task...")

    return ChatResponse(callback_answer="", status="ignored")
