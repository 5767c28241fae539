from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass
class Settings:
    telegram_bot_token: str | None
    allowed_user_id: int | None
    telegram_webhook_secret: str | None
    workdir: str
    secret_file: str
    unlock_ttl_min: int
    quantum_min: int
    state_file: str
    log_dir: str
    heartbeat_sec: int
    tail_lines: int
    agent_command: str
    rate_limit_ms: int
    log_level: str
    host: str
    port: int

    @property
    def quantum_seconds(self) -> float:
        return self.quantum_min * 60.0

    @property
    def unlock_ttl_seconds(self) -> float:
        return self.unlock_ttl_min * 60.0

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty = ready to serve)."""
        problems: list[str] = []
        if not self.telegram_bot_token:
            problems.append("TG_BOT_TOKEN environment variable is required")
        if self.allowed_user_id is None:
            problems.append("ALLOWED_USER_ID environment variable is required")
        if self.quantum_min <= 0:
            problems.append("QUANTUM_MIN must be a positive number of minutes")
        if self.heartbeat_sec <= 0:
            problems.append("HEARTBEAT_SEC must be a positive number of seconds")
        return problems

    @staticmethod
    def from_env() -> "Settings":
        cwd = os.getcwd()
        allowed_raw = (os.getenv("ALLOWED_USER_ID") or "").strip()
        try:
            allowed_user_id: int | None = int(allowed_raw) if allowed_raw else None
        except ValueError:
            allowed_user_id = None
        return Settings(
            telegram_bot_token=os.getenv("TG_BOT_TOKEN") or None,
            allowed_user_id=allowed_user_id,
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET") or None,
            workdir=os.getenv("WORKDIR") or cwd,
            secret_file=os.getenv("SECRET_FILE") or str(Path(cwd) / ".secret"),
            unlock_ttl_min=_env_int("UNLOCK_TTL_MIN", 10),
            quantum_min=_env_int("QUANTUM_MIN", 10),
            state_file=os.getenv("STATE_FILE") or str(Path(cwd) / "state" / "state.json"),
            log_dir=os.getenv("LOG_DIR") or str(Path(cwd) / "logs"),
            heartbeat_sec=_env_int("HEARTBEAT_SEC", 25),
            tail_lines=_env_int("TAIL_LINES", 20),
            agent_command=os.getenv("AGENT_COMMAND") or "claude",
            rate_limit_ms=_env_int("RATE_LIMIT_MS", 3000),
            log_level=os.getenv("BURSTPILOT_LOG_LEVEL", "info"),
            host=os.getenv("BURSTPILOT_HOST", "127.0.0.1"),
            port=_env_int("BURSTPILOT_PORT", 18791),
        )
