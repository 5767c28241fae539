from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import threading
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from burstpilot import __version__
from burstpilot.core.access import AccessGate
from burstpilot.core.config import Settings
from burstpilot.core.logging_config import setup_logging
from burstpilot.core.rate_limit import RateLimiter
from burstpilot.core.renderer import StatusRenderer, paused_keyboard
from burstpilot.core.router import BOT_COMMANDS, ChatRequest, ChatResponse, handle_chat, parse_update
from burstpilot.core.runner import ProcessRunner
from burstpilot.core.state import PAUSED, StateStore
from burstpilot.core.supervisor import TaskSupervisor
from burstpilot.integrations.telegram import TelegramAPIError, TelegramAdapter

logger = logging.getLogger("burstpilot.gateway")

RESTART_NOTICE = "⚠️ Bot restarted. Task was interrupted.\nContinue or stop?"
RESTART_NOTICE_DELAY = 2.0


class ControlStatus(BaseModel):
    unlocked: bool
    unlocked_until: float
    task: Optional[dict[str, Any]] = None
    continuation_count: Optional[int] = None
    process_pid: Optional[int] = None


def create_app(
    settings: Optional[Settings] = None,
    telegram: Optional[TelegramAdapter] = None,
) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    if settings is None:
        settings = Settings.from_env()

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
    os.makedirs(settings.log_dir, exist_ok=True)

    gate = AccessGate(settings.secret_file, settings.unlock_ttl_seconds)
    gate.ensure_secret_file()

    supervisor = TaskSupervisor(
        store=StateStore(settings.state_file),
        runner=ProcessRunner(settings.agent_command),
        gate=gate,
        workdir=settings.workdir,
        log_dir=settings.log_dir,
        quantum_seconds=settings.quantum_seconds,
        heartbeat_seconds=settings.heartbeat_sec,
        tail_lines=settings.tail_lines,
    )
    rate_limiter = RateLimiter(interval_seconds=settings.rate_limit_ms / 1000.0)

    tg_adapter: Optional[TelegramAdapter] = telegram
    if tg_adapter is None and settings.telegram_bot_token:
        tg_adapter = TelegramAdapter(settings.telegram_bot_token)

    renderer: Optional[StatusRenderer] = None
    if tg_adapter is not None:
        renderer = StatusRenderer(tg_adapter, on_message_id=supervisor.attach_status_message)
        supervisor.on_snapshot = renderer.publish

    # Webhook mode and long polling are mutually exclusive on Telegram's side
    use_polling = tg_adapter is not None and not settings.telegram_webhook_secret

    # ---- shared helpers ----

    def _respond(req: ChatRequest, resp: ChatResponse) -> None:
        if tg_adapter is None:
            return
        if req.is_callback and resp.callback_answer is not None:
            tg_adapter.answer_callback_query(req.callback_id or "", resp.callback_answer)
        if resp.delete_message_id:
            tg_adapter.delete_message(req.chat_id, resp.delete_message_id)
        if resp.text:
            try:
                tg_adapter.send_message(req.chat_id, resp.text, resp.keyboard)
            except TelegramAPIError as exc:
                logger.error("Failed to reply in chat %s: %s", req.chat_id, exc)

    def _process_update(update: dict) -> Optional[ChatResponse]:
        req = parse_update(update)
        if req is None:
            return None
        logger.info("Telegram: [%s] %s", req.user_id, (req.callback_data or req.text)[:80])
        resp = handle_chat(
            req,
            supervisor=supervisor,
            rate_limiter=rate_limiter,
            allowed_user_id=settings.allowed_user_id,
            unlock_ttl_min=settings.unlock_ttl_min,
        )
        _respond(req, resp)
        return resp

    def _register_commands() -> None:
        if tg_adapter is None or settings.allowed_user_id is None:
            return
        try:
            # Hide the menu for everyone, then show it to the operator only
            tg_adapter.set_my_commands([], {"type": "default"})
            tg_adapter.set_my_commands(
                BOT_COMMANDS,
                {"type": "chat", "chat_id": settings.allowed_user_id},
            )
            logger.info("Command menu registered for user %s", settings.allowed_user_id)
        except TelegramAPIError as exc:
            logger.warning("Failed to register command menu: %s", exc)

    def _notify_restart() -> None:
        if tg_adapter is None:
            return
        snapshot = supervisor.status()
        if snapshot is None or snapshot.status != PAUSED:
            return
        try:
            message_id = tg_adapter.send_message(
                snapshot.chat_id,
                f"{snapshot.text}\n\n{RESTART_NOTICE}",
                paused_keyboard(snapshot.task_id),
            )
        except TelegramAPIError as exc:
            logger.error("Failed to notify about interrupted task %s: %s", snapshot.task_id, exc)
            return
        if message_id is not None:
            supervisor.attach_status_message(snapshot.task_id, message_id)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        supervisor.launch()
        if renderer is not None:
            renderer.start()

        restart_timer: Optional[threading.Timer] = None
        if tg_adapter is not None:
            snapshot = supervisor.status()
            if snapshot is not None and snapshot.status == PAUSED:
                logger.info("Found interrupted task %s, will notify operator", snapshot.task_id)
                restart_timer = threading.Timer(RESTART_NOTICE_DELAY, _notify_restart)
                restart_timer.daemon = True
                restart_timer.start()
            threading.Thread(target=_register_commands, daemon=True, name="command-menu").start()

        if use_polling:
            tg_adapter.start_polling(on_update=_process_update)  # type: ignore[union-attr]
            logger.info("Telegram polling started")

        yield

        # Shutdown
        if restart_timer is not None:
            restart_timer.cancel()
        if use_polling:
            tg_adapter.stop_polling()  # type: ignore[union-attr]
        supervisor.shutdown()
        if renderer is not None:
            renderer.stop()

    app = FastAPI(title="BurstPilot", version=__version__, lifespan=lifespan)
    app.state.supervisor = supervisor
    app.state.settings = settings

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status", response_model=ControlStatus)
    def control_status() -> ControlStatus:
        return ControlStatus(**supervisor.describe())

    # ---- Telegram webhook ----

    @app.post("/telegram/webhook")
    async def telegram_webhook(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ) -> dict[str, str]:
        if request.headers.get("content-length") and int(request.headers["content-length"]) > 200000:
            raise HTTPException(status_code=413, detail="payload too large")
        if tg_adapter is None:
            raise HTTPException(status_code=400, detail="Telegram not configured")
        if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            raise HTTPException(status_code=401, detail="Invalid Telegram secret")

        update = await request.json()
        if not isinstance(update, dict):
            return {"status": "ignored"}
        # Supervisor calls block on its mailbox; keep them off the event loop
        resp = await run_in_threadpool(_process_update, update)
        if resp is None:
            return {"status": "ignored"}
        return {"status": resp.status}

    return app
