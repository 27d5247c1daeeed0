import time
from typing import Callable, Dict, Hashable


class SyncCooldown:
    """
    Per-session sync throttle: one expiring entry per (business, source) key.

    Advisory only. Duplicate ingestion is prevented by the unique key on
    reviews, not by this.
    """

    def __init__(self, window_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._until: Dict[Hashable, float] = {}

    def __len__(self) -> int:
        return len(self._until)

    def remaining(self, key: Hashable) -> float:
        until = self._until.get(key)
        if until is None:
            return 0.0
        left = until - self._clock()
        if left <= 0:
            del self._until[key]
            return 0.0
        return left

    def start(self, key: Hashable) -> None:
        self.prune()
        self._until[key] = self._clock() + self.window_seconds

    def clear(self, key: Hashable) -> None:
        self._until.pop(key, None)

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, until in self._until.items() if until <= now]
        for k in expired:
            del self._until[k]
        return len(expired)
