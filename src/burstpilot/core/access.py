"""Shared-secret unlock gate.

The secret is the stripped contents of a plain-text file.  A successful
unlock opens an access window of ``ttl_seconds``; the window's end is
stored in the supervisor state so it survives restarts.
"""
from __future__ import annotations

import hmac
import logging
import os
from typing import Optional

logger = logging.getLogger("burstpilot.access")

DEFAULT_SECRET = "changeme"

GRANTED = "granted"
DENIED = "denied"
NO_SECRET = "no-secret"


class AccessGate:
    def __init__(self, secret_file: str, ttl_seconds: float) -> None:
        self.secret_file = secret_file
        self.ttl_seconds = ttl_seconds

    def read_secret(self) -> Optional[str]:
        try:
            if os.path.exists(self.secret_file):
                with open(self.secret_file, "r", encoding="utf-8") as f:
                    return f.read().strip() or None
        except OSError as exc:
            logger.error("Failed to read secret file %s: %s", self.secret_file, exc)
        return None

    def check(self, candidate: str) -> str:
        """Return GRANTED, DENIED, or NO_SECRET for a password attempt."""
        stored = self.read_secret()
        if stored is None:
            return NO_SECRET
        if candidate and hmac.compare_digest(candidate.strip().encode("utf-8"), stored.encode("utf-8")):
            return GRANTED
        return DENIED

    def ensure_secret_file(self) -> bool:
        """Create the secret file with the default password if missing.

        Returns True if a default file was written.
        """
        if os.path.exists(self.secret_file):
            return False
        os.makedirs(os.path.dirname(self.secret_file) or ".", exist_ok=True)
        with open(self.secret_file, "w", encoding="utf-8") as f:
            f.write(DEFAULT_SECRET)
        try:
            os.chmod(self.secret_file, 0o600)
        except OSError:
            pass
        logger.warning(
            "Created default secret file %s; the password is %r. Change it!",
            self.secret_file, DEFAULT_SECRET,
        )
        return True
