"""
Bounded set of already-applied event keys.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional

from livecount.config import settings


class Deduplicator:
    """
    accept(key) is True the first time a key is seen and False afterwards.

    Memory is bounded two ways: at most ``capacity`` keys are kept (oldest
    evicted first), and keys older than ``window_seconds`` are forgotten.
    EventSub redelivers within seconds, so either bound is far above the
    redelivery horizon.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        window_seconds: Optional[float] = -1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity or settings.dedup_capacity
        # -1 means "use settings"; None disables the time window
        self.window_seconds = (
            settings.dedup_window_seconds if window_seconds == -1 else window_seconds
        )
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: str) -> bool:
        self._expire(self._clock())
        return key in self._seen

    def accept(self, key: str) -> bool:
        now = self._clock()
        self._expire(now)
        if key in self._seen:
            return False
        self._seen[key] = now
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def clear(self) -> None:
        self._seen.clear()

    def _expire(self, now: float) -> None:
        if self.window_seconds is None:
            return
        cutoff = now - self.window_seconds
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            del self._seen[key]
