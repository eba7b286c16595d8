import threading
import time
from typing import Callable

Clock = Callable[[], float]


class SlidingWindow:
    """
    Sliding-window counter approximated from two fixed windows.

    effective = current + previous * (fraction of the current window still ahead)

    On rollover: exactly one elapsed window moves current into previous; more
    than one clears both. Used for daily caps (window = 86400s).
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Clock = time.monotonic) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window = float(window_seconds)
        self._clock = clock
        self._start = clock()
        self._current = 0
        self._previous = 0
        self._lock = threading.Lock()

    def _rotate(self, now: float) -> None:
        elapsed = now - self._start
        if elapsed < self.window:
            return
        windows = int(elapsed // self.window)
        self._previous = self._current if windows == 1 else 0
        self._current = 0
        self._start += windows * self.window

    def _effective(self, now: float) -> float:
        self._rotate(now)
        elapsed = now - self._start
        weight = (self.window - elapsed) / self.window
        weight = max(0.0, min(1.0, weight))
        return self._current + self._previous * weight

    def effective_count(self) -> float:
        with self._lock:
            return self._effective(self._clock())

    def check(self) -> bool:
        with self._lock:
            return self._effective(self._clock()) < self.max_requests

    def consume(self) -> None:
        """Record one request (caller has already checked)."""
        with self._lock:
            self._rotate(self._clock())
            self._current += 1

    def allow(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._effective(now) < self.max_requests:
                self._current += 1
                return True
            return False

    def remaining(self) -> int:
        with self._lock:
            left = self.max_requests - self._effective(self._clock())
            return max(0, int(left))

    def is_idle(self) -> bool:
        return self.effective_count() <= 0

    def reset(self) -> None:
        with self._lock:
            self._start = self._clock()
            self._current = 0
            self._previous = 0
