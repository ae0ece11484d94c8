"""
Unit tests for agents/resilience.py

Tests cover:
- cache_signature stability
- TTLCache expiry, eviction order
- SingleFlight / cached_call (one upstream call under concurrency)
- SlidingWindowRateLimiter (12 allowed, 13th rejected with retry-after)
- retry_call backoff and transient / non-transient handling
"""
import threading
import time

import pytest
from unittest.mock import MagicMock

import resilience as rs


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# cache_signature
# ---------------------------------------------------------------------------

class TestCacheSignature:
    def test_key_order_does_not_matter(self):
        a = rs.cache_signature("lookup", {"q": "park", "context": {"city": "Savannah"}})
        b = rs.cache_signature("lookup", {"context": {"city": "Savannah"}, "q": "park"})
        assert a == b

    def test_identity_is_part_of_the_key(self):
        assert rs.cache_signature("a", {"q": 1}) != rs.cache_signature("b", {"q": 1})

    def test_is_sha256_hex(self):
        sig = rs.cache_signature("a", [1, 2])
        assert len(sig) == 64
        int(sig, 16)


# ---------------------------------------------------------------------------
# TTLCache
# ---------------------------------------------------------------------------

class TestTTLCache:
    def test_returns_value_within_ttl(self):
        clock = FakeClock()
        cache = rs.TTLCache(ttl_seconds=900, max_entries=5, clock=clock)
        cache.set("k", {"v": 1})
        clock.now += 899
        assert cache.get("k") == {"v": 1}

    def test_expired_entry_is_absent_and_removed(self):
        clock = FakeClock()
        cache = rs.TTLCache(ttl_seconds=900, max_entries=5, clock=clock)
        cache.set("k", "v")
        clock.now += 901
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_evicts_oldest_written_after_bound(self):
        clock = FakeClock()
        cache = rs.TTLCache(ttl_seconds=900, max_entries=2, clock=clock)
        cache.set("a", 1)
        clock.now += 1
        cache.set("b", 2)
        clock.now += 1
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_rewrite_refreshes_write_order(self):
        cache = rs.TTLCache(ttl_seconds=900, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 10

    def test_shared_store_defaults(self):
        assert rs.itinerary_cache.ttl_seconds == 900
        assert rs.itinerary_cache.max_entries == 32
        assert rs.place_cache.ttl_seconds == 10800
        assert rs.place_cache.max_entries == 200


# ---------------------------------------------------------------------------
# SingleFlight / cached_call
# ---------------------------------------------------------------------------

class TestCachedCall:
    def test_second_call_is_served_from_cache(self):
        cache = rs.TTLCache(900, 10)
        fn = MagicMock(return_value={"ok": True})
        first = rs.cached_call(cache, rs.SingleFlight(), "sig", fn)
        second = rs.cached_call(cache, rs.SingleFlight(), "sig", fn)
        assert first == second == {"ok": True}
        fn.assert_called_once()

    def test_none_is_not_cached(self):
        cache = rs.TTLCache(900, 10)
        fn = MagicMock(return_value=None)
        rs.cached_call(cache, rs.SingleFlight(), "sig", fn)
        rs.cached_call(cache, rs.SingleFlight(), "sig", fn)
        assert fn.call_count == 2

    def test_concurrent_identical_calls_hit_upstream_once(self):
        cache = rs.TTLCache(900, 10)
        flight = rs.SingleFlight()
        calls = []
        barrier = threading.Barrier(8)

        def upstream():
            calls.append(1)
            time.sleep(0.05)
            return "value"

        results = []

        def worker():
            barrier.wait()
            results.append(rs.cached_call(cache, flight, "same", upstream))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert results == ["value"] * 8
        assert flight.active() == 0

    def test_lock_released_when_call_raises(self):
        cache = rs.TTLCache(900, 10)
        flight = rs.SingleFlight()
        with pytest.raises(RuntimeError):
            rs.cached_call(cache, flight, "sig", MagicMock(side_effect=RuntimeError("boom")))
        assert flight.active() == 0
        assert rs.cached_call(cache, flight, "sig", lambda: 5) == 5


# ---------------------------------------------------------------------------
# SlidingWindowRateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_twelfth_succeeds_thirteenth_rejected(self):
        clock = FakeClock()
        limiter = rs.SlidingWindowRateLimiter(limit=12, window_seconds=60, clock=clock)
        for _ in range(12):
            limiter.acquire()
            clock.now += 1
        with pytest.raises(rs.RateLimitExceeded) as excinfo:
            limiter.acquire()
        assert excinfo.value.retry_after > 0
        assert excinfo.value.retry_after == pytest.approx(48.0)

    def test_window_slides(self):
        clock = FakeClock()
        limiter = rs.SlidingWindowRateLimiter(limit=2, window_seconds=60, clock=clock)
        limiter.acquire()
        limiter.acquire()
        clock.now += 60
        limiter.acquire()

    def test_rejected_call_does_not_consume_budget(self):
        clock = FakeClock()
        limiter = rs.SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.acquire()
        for _ in range(3):
            with pytest.raises(rs.RateLimitExceeded):
                limiter.acquire()
        clock.now += 60
        limiter.acquire()


# ---------------------------------------------------------------------------
# retry_call
# ---------------------------------------------------------------------------

class TestRetryCall:
    def test_backoff_delay_is_exponential_plus_jitter(self):
        assert rs.backoff_delay(1, jitter=lambda: 0.25) == 1.25
        assert rs.backoff_delay(2, jitter=lambda: 0.25) == 2.25
        assert rs.backoff_delay(3, jitter=lambda: 0.25) == 4.25

    def test_default_jitter_range(self):
        for _ in range(50):
            assert 0.1 <= rs._default_jitter() <= 0.75

    def test_transient_then_success(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=[rs.TransientError("timeout"), "done"])
        assert rs.retry_call(fn, sleep=sleep, jitter=lambda: 0.1) == "done"
        assert fn.call_count == 2
        sleep.assert_called_once_with(1.1)

    def test_non_transient_is_not_retried(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=ValueError("400 bad request"))
        with pytest.raises(ValueError):
            rs.retry_call(fn, sleep=sleep)
        fn.assert_called_once()
        sleep.assert_not_called()

    def test_exhaustion_raises_retry_exhausted(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=rs.TransientError("down"))
        with pytest.raises(rs.RetryExhausted) as excinfo:
            rs.retry_call(fn, attempts=3, sleep=sleep, jitter=lambda: 0.0)
        assert fn.call_count == 3
        assert excinfo.value.attempts == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
