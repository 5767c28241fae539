from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger("burstpilot.telegram")

# Telegram API limit for a single message
_MAX_TEXT_LENGTH = 4096

NOT_MODIFIED = "message is not modified"


class TelegramAPIError(RuntimeError):
    def __init__(self, method: str, description: str, status_code: int | None = None) -> None:
        super().__init__(f"{method} failed: {description}")
        self.method = method
        self.description = description
        self.status_code = status_code

    @property
    def not_modified(self) -> bool:
        return NOT_MODIFIED in self.description


def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict[str, Any]:
    """Build a reply_markup dict from rows of ``(label, callback_data)``."""
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row]
            for row in rows
        ]
    }


def _clip(text: str) -> str:
    if not text:
        return "(empty response)"
    if len(text) <= _MAX_TEXT_LENGTH:
        return text
    # Keep the end: status panels put the freshest output last
    return "…" + text[-(_MAX_TEXT_LENGTH - 1):]


@dataclass
class TelegramAdapter:
    token: str
    timeout: float = 15.0
    _polling_thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def _base_url(self) -> str:
        return f"https://api.telegram.org/bot{self.token}"

    def _call(self, method: str, payload: dict[str, Any], timeout: float | None = None) -> Any:
        """POST a Bot API method and return its ``result``; raise on failure."""
        url = f"{self._base_url()}/{method}"
        try:
            with httpx.Client(timeout=timeout or self.timeout) as client:
                resp = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TelegramAPIError(method, str(exc)) from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code != 200 or not data.get("ok"):
            description = str(data.get("description") or resp.text[:300])
            raise TelegramAPIError(method, description, resp.status_code)
        return data.get("result")

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """Send a message and return its message_id."""
        payload: dict[str, Any] = {"chat_id": chat_id, "text": _clip(text)}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        result = self._call("sendMessage", payload)
        return (result or {}).get("message_id")

    def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> None:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": _clip(text)}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        self._call("editMessageText", payload)

    def delete_message(self, chat_id: int, message_id: int) -> bool:
        try:
            self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
            return True
        except TelegramAPIError as exc:
            logger.debug("deleteMessage failed (non-critical): %s", exc)
            return False

    def answer_callback_query(self, callback_query_id: str, text: str = "") -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        try:
            self._call("answerCallbackQuery", payload, timeout=5.0)
        except TelegramAPIError as exc:
            logger.debug("answerCallbackQuery failed (non-critical): %s", exc)

    def set_my_commands(self, commands: list[tuple[str, str]], scope: dict[str, Any]) -> None:
        payload = {
            "commands": [{"command": c, "description": d} for c, d in commands],
            "scope": scope,
        }
        self._call("setMyCommands", payload)

    def delete_webhook(self, drop_pending: bool = True) -> None:
        """Remove any existing webhook so polling works.

        With *drop_pending* Telegram discards updates that piled up while
        the bot was offline, so stale button presses are not replayed.
        """
        try:
            self._call("deleteWebhook", {"drop_pending_updates": drop_pending}, timeout=10.0)
            logger.info("deleteWebhook (drop_pending=%s) ok", drop_pending)
        except TelegramAPIError as exc:
            logger.warning("deleteWebhook failed: %s", exc)

    def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll Telegram for messages and button presses."""
        url = f"{self._base_url()}/getUpdates"
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message", "callback_query"]}
        if offset:
            params["offset"] = offset
        with httpx.Client(timeout=timeout + 10) as client:
            resp = client.post(url, json=params)
            if resp.status_code != 200:
                logger.error("getUpdates failed: %s %s", resp.status_code, resp.text[:300])
                return []
            data = resp.json()
            if not data.get("ok"):
                logger.error("getUpdates not ok: %s", data)
                return []
            return data.get("result", [])

    def start_polling(self, on_update: Callable[[dict[str, Any]], None]) -> None:
        """Start a background thread that polls Telegram for updates."""
        self.delete_webhook()

        def _poll_loop() -> None:
            offset = 0
            logger.info("Telegram polling started")
            while not self._stop_event.is_set():
                try:
                    updates = self.get_updates(offset=offset, timeout=25)
                    for update in updates:
                        update_id = update.get("update_id", 0)
                        offset = update_id + 1
                        try:
                            on_update(update)
                        except Exception as exc:  # noqa: BLE001
                            logger.error("Error processing Telegram update %s: %s", update_id, exc, exc_info=True)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Telegram polling error: %s", exc)
                    self._stop_event.wait(5)  # back off on errors

        self._polling_thread = threading.Thread(target=_poll_loop, daemon=True, name="telegram-poller")
        self._polling_thread.start()

    def stop_polling(self) -> None:
        self._stop_event.set()
