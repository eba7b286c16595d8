import asyncio
import threading
import time
from typing import Callable, Optional

Clock = Callable[[], float]


class TokenBucket:
    """
    Continuous-refill token bucket.

    Tokens are recomputed from elapsed clock time on every call; there is no
    background task. ``check``/``consume`` are the two halves of ``allow`` so
    a caller holding an outer lock can test several limiters before spending.
    """

    def __init__(self, burst: float, refill_rate: float, clock: Clock = time.monotonic) -> None:
        if burst <= 0:
            raise ValueError("burst must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.max_tokens = float(burst)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last
        if elapsed > 0:
            self._tokens = min(self.max_tokens, self._tokens + elapsed * self.refill_rate)
        self._last = now

    def check(self) -> bool:
        """True when one token is available; nothing is consumed."""
        with self._lock:
            self._refill()
            return self._tokens >= 1

    def consume(self) -> bool:
        """Take one token if available. Meant to follow a successful check()."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def allow(self) -> bool:
        """Atomic check-and-consume."""
        return self.consume()

    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def is_full(self) -> bool:
        return self.available() >= self.max_tokens

    def reset(self) -> None:
        with self._lock:
            self._tokens = self.max_tokens
            self._last = self._clock()

    def time_to_token(self) -> float:
        """Seconds until one token will be available (0 when one is)."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                return 0.0
            return (1 - self._tokens) / self.refill_rate

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until a token can be taken, then take it.
        Returns False if ``timeout`` elapses first. Cancellation propagates.
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            if self.allow():
                return True
            delay = self.time_to_token()
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0 or delay > remaining:
                    return False
            await asyncio.sleep(max(delay, 0.001))
