"""Tests for token bucket arithmetic."""

import math
import threading

import pytest

from tollbooth.engine.models import TokenBucket
from tollbooth.engine.token_bucket import (
    TokenBucketStore,
    ms_until_next_token,
    refill,
    refill_rate,
)


class TestRefillArithmetic:
    """Tests for the refill helpers."""

    def test_refill_rate(self):
        """Test that a full bucket refills once per window."""
        assert refill_rate(5, 100) == pytest.approx(0.05)
        assert refill_rate(60, 60_000) == pytest.approx(0.001)

    def test_refill_caps_at_capacity(self):
        """Test that tokens never exceed capacity."""
        bucket = TokenBucket(tokens=4.0, last_refill=0)
        refill(bucket, 10_000, capacity=5, rate=0.05)
        assert bucket.tokens == 5
        assert bucket.last_refill == 10_000

    def test_refill_keeps_fractions(self):
        """Test that partial refills accumulate without truncation."""
        bucket = TokenBucket(tokens=0.0, last_refill=0)
        for now in (10, 20, 30):
            refill(bucket, now, capacity=5, rate=0.05)
        assert bucket.tokens == pytest.approx(1.5)

    def test_refill_ignores_clock_going_backwards(self):
        """Test that a smaller timestamp adds nothing."""
        bucket = TokenBucket(tokens=1.0, last_refill=100)
        refill(bucket, 50, capacity=5, rate=0.05)
        assert bucket.tokens == 1.0
        assert bucket.last_refill == 100

    def test_ms_until_next_token(self):
        """Test waiting time for the next whole token."""
        assert ms_until_next_token(5.0, 5, 0.05, 100) == 100
        assert ms_until_next_token(0.0, 5, 0.05, 100) == 20
        assert ms_until_next_token(0.5, 5, 0.05, 100) == 10


class TestTokenBucketStore:
    """Tests for per-key bucket state."""

    @pytest.fixture
    def buckets(self):
        return TokenBucketStore(capacity=5, window_ms=100)

    def test_burst_then_deny(self, buckets):
        """Test that a fresh bucket admits exactly capacity requests."""
        results = [buckets.take("k", 0) for _ in range(6)]
        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.current for r in results] == [1, 2, 3, 4, 5, 5]
        assert all(r.limit == 5 for r in results)

    def test_partial_refill_admits_one(self, buckets):
        """Test that 25ms at 0.05 tokens/ms admits exactly one more request."""
        for _ in range(5):
            buckets.take("k", 0)
        assert buckets.take("k", 25).allowed is True
        assert buckets.take("k", 25).allowed is False

    @pytest.mark.parametrize("wait_ms", [0, 19, 20, 50, 99, 100, 1000])
    def test_refill_matches_floor_of_elapsed_times_rate(self, wait_ms):
        """Test that waiting T ms after draining grants floor(T * rate) requests."""
        buckets = TokenBucketStore(capacity=5, window_ms=100)
        for _ in range(5):
            buckets.take("k", 0)

        admitted = 0
        while buckets.take("k", wait_ms).allowed:
            admitted += 1

        assert admitted == min(5, math.floor(wait_ms * buckets.rate))

    def test_draft_mode_does_not_consume(self, buckets):
        """Test that draft mode allows without spending tokens."""
        for _ in range(10):
            result = buckets.take("k", 0, draft_mode=True)
            assert result.allowed is True
        assert buckets.get("k").tokens == 5

    def test_draft_mode_allows_empty_bucket(self, buckets):
        """Test that draft mode allows even with no tokens left."""
        for _ in range(5):
            buckets.take("k", 0)
        result = buckets.take("k", 0, draft_mode=True)
        assert result.allowed is True
        assert result.current == 5

    def test_denied_result_reports_wait(self, buckets):
        """Test that a denied request reports time until the next token."""
        for _ in range(5):
            buckets.take("k", 1000)
        result = buckets.take("k", 1000)
        assert result.remaining == 20
        assert result.reset_time == 1020

    def test_tokens_stay_in_range_under_threads(self):
        """Test that concurrent takes never drive tokens below zero."""
        buckets = TokenBucketStore(capacity=50, window_ms=60_000)
        allowed = []

        def worker():
            for _ in range(50):
                allowed.append(buckets.take("k", 0).allowed)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert allowed.count(True) == 50
        assert 0 <= buckets.get("k").tokens < 1

    def test_discard_and_clear(self, buckets):
        """Test removing buckets."""
        buckets.take("a", 0)
        buckets.take("b", 0)
        buckets.discard("a")
        assert buckets.get("a") is None
        assert len(buckets) == 1
        buckets.clear()
        assert len(buckets) == 0

    def test_prune_drops_only_refilled_buckets(self, buckets):
        """Test that prune removes buckets that would be full again."""
        buckets.take("old", 0)
        buckets.take("recent", 90)

        assert buckets.prune(100) == 1
        assert buckets.get("old") is None
        assert buckets.get("recent") is not None
