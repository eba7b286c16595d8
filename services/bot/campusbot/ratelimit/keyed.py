import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..errors import RateLimited
from .bucket import TokenBucket
from .window import SlidingWindow

logger = logging.getLogger("ratelimit")

DAY_SECONDS = 86400.0


@dataclass(frozen=True)
class LimiterConfig:
    name: str
    burst: int
    refill_rate: float
    daily_limit: int = 0            # 0 disables the sliding-window layer
    window_seconds: float = DAY_SECONDS
    cleanup_interval: float = 300.0


@dataclass(frozen=True)
class Usage:
    available: float
    burst: int
    refill_rate: float
    daily_remaining: int = 0
    daily_limit: int = 0


@dataclass
class _Entry:
    bucket: TokenBucket
    window: Optional[SlidingWindow]
    lock: threading.Lock = field(default_factory=threading.Lock)

    def idle(self) -> bool:
        return self.bucket.is_full() and (self.window is None or self.window.is_idle())


class KeyedLimiter:
    """
    Per-key admission: one token bucket (plus an optional daily sliding
    window) per chat id.

    Entries are created on first use under a double-checked lock and removed
    by ``cleanup`` once idle. Multi-layer admission happens under the entry
    lock: every layer is checked first and only then consumed, so two
    concurrent callers can never both pass on the last token.
    """

    def __init__(self, config: LimiterConfig, metrics=None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.name = config.name
        self._metrics = metrics
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                window = None
                if self.config.daily_limit > 0:
                    window = SlidingWindow(self.config.daily_limit, self.config.window_seconds, self._clock)
                entry = _Entry(TokenBucket(self.config.burst, self.config.refill_rate, self._clock), window)
                self._entries[key] = entry
            return entry

    def _deny(self, reason: str) -> str:
        if self._metrics is not None:
            self._metrics.record_rate_limited(self.name, reason)
        return reason

    def _take(self, key: str) -> Optional[str]:
        """Consume one request for ``key``; returns the deny reason, or None when admitted."""
        while True:
            entry = self._entry(key)
            with entry.lock:
                # cleanup may have dropped this entry after the lookup; start over with the live one
                if self._entries.get(key) is not entry:
                    continue
                if entry.window is not None and not entry.window.check():
                    return self._deny("daily")
                if not entry.bucket.check():
                    return self._deny("burst")
                entry.bucket.consume()
                if entry.window is not None:
                    entry.window.consume()
                return None

    def allow(self, key: str) -> bool:
        """Admit one request for ``key``. An empty key is always admitted."""
        if not key:
            return True
        return self._take(key) is None

    def acquire(self, key: str) -> None:
        """Like ``allow`` but raises RateLimited with the layer that denied."""
        if not key:
            return
        reason = self._take(key)
        if reason is not None:
            raise RateLimited(self.name, reason)

    def available(self, key: str) -> float:
        if not key:
            return float(self.config.burst)
        return self._entry(key).bucket.available()

    def daily_remaining(self, key: str) -> Optional[int]:
        """Remaining daily quota, or None when the limiter has no daily layer."""
        if self.config.daily_limit <= 0:
            return None
        if not key:
            return self.config.daily_limit
        window = self._entry(key).window
        return window.remaining() if window else None

    def usage(self, key: str) -> Usage:
        """Snapshot of what ``key`` has left, without creating an entry for unseen keys."""
        entry = self._entries.get(key) if key else None
        daily_max = max(self.config.daily_limit, 0)
        if entry is None:
            return Usage(self.config.burst, self.config.burst, self.config.refill_rate, daily_max, daily_max)
        window_left = entry.window.remaining() if entry.window is not None else 0
        return Usage(
            entry.bucket.available(), self.config.burst, self.config.refill_rate, window_left, daily_max,
        )

    def active_count(self) -> int:
        return len(self._entries)

    def cleanup(self) -> int:
        """Drop idle entries; returns how many were removed."""
        removed = 0
        with self._lock:
            for key, entry in list(self._entries.items()):
                # under the entry lock no caller can be between lookup and consume
                with entry.lock:
                    if entry.idle():
                        del self._entries[key]
                        removed += 1
        if self._metrics is not None:
            self._metrics.set_limiter_active(self.name, len(self._entries))
        return removed

    async def run_cleanup(self, stop: asyncio.Event) -> None:
        """Periodic cleanup until ``stop`` is set."""
        interval = self.config.cleanup_interval
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                removed = self.cleanup()
                if removed:
                    logger.debug("limiter=%s removed %d idle entries (active=%d)", self.name, removed, self.active_count())
