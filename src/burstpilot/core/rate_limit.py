from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict


@dataclass
class RateLimiter:
    """Minimum-interval limiter: one accepted call per key per ``interval_seconds``."""

    interval_seconds: float
    clock: Callable[[], float] = time.monotonic
    _last: Dict[str, float] = field(default_factory=dict)

    def allow(self, key: str) -> bool:
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.interval_seconds:
            return False
        self._last[key] = now
        return True

    def reset(self, key: str) -> None:
        self._last.pop(key, None)
