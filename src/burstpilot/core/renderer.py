"""Delivers status snapshots to the operator's chat.

Each task has one status message that is edited in place.  When the
edit fails (message deleted, too old, ...) a new message is sent and
becomes the task's status message.  If that fails too the update is
logged and dropped.

Delivery runs on its own thread so the supervisor never waits on the
network.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional

from burstpilot.core.status import CONTROLS_PANEL, CONTROLS_RESUME, StatusSnapshot
from burstpilot.integrations.telegram import TelegramAPIError, TelegramAdapter, inline_keyboard

logger = logging.getLogger("burstpilot.renderer")


def control_panel_keyboard() -> dict[str, Any]:
    return inline_keyboard([
        [("📊 Status", "STATUS"), ("⏸ Pause", "PAUSE"), ("🛑 Stop", "STOP_PANEL")],
        [("🔒 Lock", "LOCK")],
    ])


def paused_keyboard(task_id: str) -> dict[str, Any]:
    return inline_keyboard([
        [("✅ Continue", f"CONTINUE:{task_id}"), ("❌ Stop", f"STOP:{task_id}")],
    ])


def keyboard_for(snapshot: StatusSnapshot) -> Optional[dict[str, Any]]:
    if snapshot.controls == CONTROLS_PANEL:
        return control_panel_keyboard()
    if snapshot.controls == CONTROLS_RESUME:
        return paused_keyboard(snapshot.task_id)
    return None


class StatusRenderer:
    def __init__(
        self,
        adapter: TelegramAdapter,
        on_message_id: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        self.adapter = adapter
        self.on_message_id = on_message_id
        self._queue: "queue.Queue[Optional[StatusSnapshot]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        # Message ids sent by us but possibly not yet recorded on the task
        self._message_ids: Dict[str, int] = {}

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="status-renderer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout)
        self._thread = None

    def publish(self, snapshot: StatusSnapshot) -> None:
        """Queue *snapshot* for delivery (delivers inline if not started)."""
        if self._thread is None:
            self.deliver(snapshot)
            return
        self._queue.put(snapshot)

    def _run(self) -> None:
        while True:
            snapshot = self._queue.get()
            if snapshot is None:
                break
            try:
                self.deliver(snapshot)
            except Exception as exc:  # noqa: BLE001
                logger.error("Status delivery crashed for task %s: %s", snapshot.task_id, exc, exc_info=True)

    def deliver(self, snapshot: StatusSnapshot) -> Optional[int]:
        """Edit the task's status message, falling back to a new one.

        Returns the message id now carrying the status, or None.
        """
        keyboard = keyboard_for(snapshot)
        message_id = self._message_ids.get(snapshot.task_id) or snapshot.message_id

        new_id: Optional[int] = None
        try:
            if message_id:
                self.adapter.edit_message_text(snapshot.chat_id, message_id, snapshot.text, keyboard)
                return message_id
            new_id = self.adapter.send_message(snapshot.chat_id, snapshot.text, keyboard)
        except TelegramAPIError as exc:
            if exc.not_modified:
                return message_id
            logger.info("Status update failed for task %s (%s); sending new message", snapshot.task_id, exc)
            try:
                new_id = self.adapter.send_message(snapshot.chat_id, snapshot.text, keyboard)
            except TelegramAPIError as retry_exc:
                logger.error("Failed to send status message for task %s: %s", snapshot.task_id, retry_exc)
                return None
        if new_id is None:
            return None
        self._message_ids[snapshot.task_id] = new_id
        if self.on_message_id:
            try:
                self.on_message_id(snapshot.task_id, new_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("Recording status message id failed: %s", exc)
        return new_id
