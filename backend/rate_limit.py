"""Per-caller sliding window limiter, injected into the submission service."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from typing_extensions import Protocol


class RateLimiter(Protocol):
    def is_allowed(self, caller: str) -> bool: ...

    def retry_after(self, caller: str) -> int: ...


class SlidingWindowLimiter:
    """In-process limiter. Swap for a shared implementation when running several instances."""

    def __init__(
        self,
        max_requests: int = 5,
        window_sec: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def is_allowed(self, caller: str) -> bool:
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            hits = self._prune(caller, now)
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            self._hits[caller] = hits
            return True

    def tracked_callers(self) -> int:
        with self._lock:
            return len(self._hits)

    def remaining(self, caller: str) -> int:
        with self._lock:
            hits = self._prune(caller, self._clock())
            return max(0, self.max_requests - len(hits))

    def retry_after(self, caller: str) -> int:
        now = self._clock()
        with self._lock:
            hits = self._prune(caller, now)
            if len(hits) < self.max_requests:
                return 0
            return max(1, math.ceil(hits[0] + self.window_sec - now))

    def _prune(self, caller: str, now: float) -> Deque[float]:
        # callers with no hits inside the window are not kept in the map
        hits = self._hits.get(caller)
        if hits is None:
            return deque()
        window_start = now - self.window_sec
        while hits and hits[0] <= window_start:
            hits.popleft()
        if not hits:
            del self._hits[caller]
        return hits

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_sec:
            return
        self._last_sweep = now
        window_start = now - self.window_sec
        stale = [caller for caller, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for caller in stale:
            del self._hits[caller]
