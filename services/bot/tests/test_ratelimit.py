import asyncio

import pytest

from campusbot.errors import RateLimited
from campusbot.metrics import Metrics
from campusbot.ratelimit import KeyedLimiter, LimiterConfig, SlidingWindow, TokenBucket

from conftest import FakeClock


def test_token_bucket_burst_then_refill():
    clock = FakeClock()
    bucket = TokenBucket(burst=2, refill_rate=1.0, clock=clock)
    assert bucket.allow()
    assert bucket.allow()
    assert not bucket.allow()
    assert bucket.time_to_token() == pytest.approx(1.0)

    clock.advance(1.0)
    assert bucket.allow()
    clock.advance(100)
    # refill never exceeds the burst size
    assert bucket.available() == pytest.approx(2.0)


def test_token_bucket_rejects_bad_config():
    with pytest.raises(ValueError):
        TokenBucket(burst=0, refill_rate=1)
    with pytest.raises(ValueError):
        TokenBucket(burst=1, refill_rate=0)


def test_sliding_window_weights_previous_window():
    clock = FakeClock(0.0)
    window = SlidingWindow(max_requests=2, window_seconds=10, clock=clock)
    assert window.allow()
    assert window.allow()
    assert not window.allow()

    # start of the next window: the previous window still counts in full
    clock.advance(10)
    assert not window.allow()

    # half way: previous window counts half (1.0 < 2)
    clock.advance(5)
    assert window.allow()

    # more than one full window later everything is forgotten
    clock.advance(30)
    assert window.remaining() == 2


def test_keyed_limiter_is_per_key():
    clock = FakeClock()
    limiter = KeyedLimiter(LimiterConfig(name="user", burst=1, refill_rate=0.1), clock=clock)
    assert limiter.allow("U1")
    assert not limiter.allow("U1")
    assert limiter.allow("U2")
    # an empty key is never limited
    assert limiter.allow("")
    assert limiter.allow("")
    assert limiter.active_count() == 2


def test_keyed_limiter_daily_cap_records_reason():
    """
    With a daily layer the burst bucket alone is not enough: the third request
    of the day is denied even though tokens remain.
    """
    clock = FakeClock()
    metrics = Metrics()
    limiter = KeyedLimiter(
        LimiterConfig(name="llm", burst=10, refill_rate=1.0, daily_limit=2),
        metrics=metrics,
        clock=clock,
    )
    assert limiter.allow("U1")
    assert limiter.allow("U1")
    assert not limiter.allow("U1")
    assert limiter.daily_remaining("U1") == 0
    assert metrics.registry.get_sample_value(
        "campusbot_rate_limited_total", {"limiter": "llm", "reason": "daily"}
    ) == 1.0
    print("[TEST] daily cap passed ✅")


def test_denied_request_consumes_nothing():
    clock = FakeClock()
    limiter = KeyedLimiter(LimiterConfig(name="llm", burst=1, refill_rate=0.01, daily_limit=5), clock=clock)
    assert limiter.allow("U1")
    assert not limiter.allow("U1")
    # the burst denial did not spend daily quota
    assert limiter.daily_remaining("U1") == 4


def test_cleanup_drops_idle_entries():
    clock = FakeClock()
    metrics = Metrics()
    limiter = KeyedLimiter(LimiterConfig(name="user", burst=2, refill_rate=1.0), metrics=metrics, clock=clock)
    limiter.allow("U1")
    limiter.allow("U2")
    limiter.allow("U2")
    clock.advance(1.0)
    # U1 is full again, U2 still refilling
    assert limiter.cleanup() == 1
    assert limiter.active_count() == 1
    assert metrics.registry.get_sample_value("campusbot_rate_limiter_active_keys", {"limiter": "user"}) == 1.0


def test_acquire_raises_with_the_denying_layer():
    clock = FakeClock()
    limiter = KeyedLimiter(LimiterConfig(name="llm", burst=5, refill_rate=0.01, daily_limit=1), clock=clock)
    limiter.acquire("U1")
    with pytest.raises(RateLimited) as info:
        limiter.acquire("U1")
    assert (info.value.limiter, info.value.reason) == ("llm", "daily")
    assert info.value.kind == "rate_limited"
    limiter.acquire("")


def test_usage_snapshot_does_not_create_entries():
    clock = FakeClock()
    limiter = KeyedLimiter(LimiterConfig(name="llm", burst=3, refill_rate=0.5, daily_limit=10), clock=clock)
    fresh = limiter.usage("U1")
    assert (fresh.available, fresh.burst, fresh.daily_remaining, fresh.daily_limit) == (3, 3, 10, 10)
    assert limiter.active_count() == 0

    limiter.allow("U1")
    used = limiter.usage("U1")
    assert used.available == pytest.approx(2.0)
    assert used.daily_remaining == 9


def test_entry_evicted_between_lookup_and_consume_is_not_reused():
    """
    A caller that looked up an entry just before cleanup evicted it must
    not spend its token on the orphan; the next caller would otherwise get
    a fresh full bucket.
    """
    clock = FakeClock()
    limiter = KeyedLimiter(LimiterConfig(name="user", burst=1, refill_rate=0.01), clock=clock)
    stale = limiter._entry("U1")
    assert limiter.cleanup() == 1

    lookup = limiter._entry
    handed_out = []

    def racing_lookup(key):
        if not handed_out:
            handed_out.append(key)
            return stale
        return lookup(key)

    limiter._entry = racing_lookup
    assert limiter.allow("U1")
    assert not limiter.allow("U1")
    assert stale.bucket.is_full()


@pytest.mark.asyncio
async def test_run_cleanup_stops_when_asked():
    limiter = KeyedLimiter(LimiterConfig(name="user", burst=1, refill_rate=1.0, cleanup_interval=0.01))
    stop = asyncio.Event()
    task = asyncio.create_task(limiter.run_cleanup(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()
