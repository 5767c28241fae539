from __future__ import annotations

from typing import List

DEFAULT_HIGH_WATER = 1000
DEFAULT_LOW_WATER = 500


class OutputBuffer:
    """Bounded in-memory log of the most recent agent output lines.

    Once more than ``high_water`` lines are held, the oldest lines are
    dropped so that only the newest ``low_water`` remain.  Only the tail
    is ever rendered or fed back into a continuation prompt, so older
    output is not needed (the per-task log file keeps everything).
    """

    def __init__(self, high_water: int = DEFAULT_HIGH_WATER, low_water: int = DEFAULT_LOW_WATER) -> None:
        if low_water < 0 or high_water < 1 or low_water > high_water:
            raise ValueError(f"invalid watermarks: high={high_water} low={low_water}")
        self.high_water = high_water
        self.low_water = low_water
        self._lines: List[str] = []

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, line: str) -> None:
        self._lines.append(line)
        if len(self._lines) > self.high_water:
            keep = self.low_water
            self._lines = self._lines[-keep:] if keep else []

    def tail(self, n: int) -> List[str]:
        if n <= 0:
            return []
        return self._lines[-n:]

    def clear(self) -> None:
        self._lines = []
