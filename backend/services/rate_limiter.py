"""进程内固定窗口限流"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_in_ms: int
    retry_after_seconds: int


class RateLimiter:
    """按 key 计数；窗口从该 key 的第一次请求开始"""

    def __init__(self, window_seconds: int = 60, limit: int = 20,
                 clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.limit = limit
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def consume(self, key: str) -> RateLimitResult:
        now = self._clock()
        window = float(self.window_seconds)
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start > window:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count)

        reset_in_ms = max(0, int((start + window - now) * 1000))
        allowed = count <= self.limit
        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_in_ms=reset_in_ms,
            retry_after_seconds=0 if allowed else max(1, math.ceil(reset_in_ms / 1000)),
        )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
