"""Centralized logging configuration for burstpilot.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory, plus a dedicated JSONL stream
for operator commands.

Log directory structure::

    logs/
    ├── burstpilot.log        # All Python logger output (rotating)
    ├── commands.log          # Every operator command / button press (JSONL)
    ├── activity.log          # Lifecycle activity stream
    ├── audit.jsonl           # Structured audit events
    └── task-<id>.log         # Per-task agent output (append-only)
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from typing import Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

command_logger = logging.getLogger("burstpilot._commands")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to ``./logs``."""
    if _log_dir:
        return _log_dir
    return os.getenv("LOG_DIR") or os.path.join(os.getcwd(), "logs")


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup; calling it again
    replaces the handlers instead of stacking duplicates.
    """
    global _log_dir
    _log_dir = log_dir

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "burstpilot.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(command_logger, os.path.join(log_dir, "commands.log"))

    # httpx logs every request URL at INFO, which includes the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger("burstpilot").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_command(
    user_id: str,
    chat_id: str,
    command: str,
    command_type: str = "slash",
    outcome: str = "",
) -> None:
    """Log an operator command to the dedicated commands log.

    Arguments of ``/unlock`` are masked so the secret never reaches disk.
    """
    if command.startswith("/unlock"):
        command = "/unlock ***"
    record = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "user_id": user_id,
        "chat_id": chat_id,
        "type": command_type,
        "command": command[:2000],
    }
    if outcome:
        record["outcome"] = outcome
    try:
        command_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_audit_log_path() -> str:
    """Return the path to the centralized audit JSONL log."""
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
