from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from typing import Any, Dict, Optional

from burstpilot.core.logging_config import append_to_file, get_audit_log_path

logger = logging.getLogger("burstpilot.audit")


def log_event(
    event_type: str,
    payload: Dict[str, Any],
    path: Optional[str] = None,
) -> None:
    """Append a structured lifecycle event to the audit log.

    Never raises: an unwritable audit log must not disturb the caller.
    """
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    try:
        line = json.dumps(record, default=str)
        target = path or get_audit_log_path()
        os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except Exception as exc:  # noqa: BLE001
        logger.debug("Audit write failed for %s: %s", event_type, exc)
        return
    append_to_file(os.path.join(os.path.dirname(target) or ".", "activity.log"), f"[{event_type}] {json.dumps(payload, default=str)[:300]}")
