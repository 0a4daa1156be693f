"""Token bucket arithmetic and per-key bucket state.

Buckets live only in the memory of the limiter that owns them. They are not
synchronized through storage, so several limiter processes each enforce
their own bucket for the same key.
"""

from __future__ import annotations

import math
import threading
from typing import Optional

from tollbooth.engine.models import RateLimitResult, TokenBucket


def refill_rate(capacity: int, window_ms: int) -> float:
    """Tokens added per millisecond so a full bucket refills once per window."""
    return capacity / (window_ms / 1000) / 1000


def refill(bucket: TokenBucket, now: float, capacity: int, rate: float) -> None:
    """Add the tokens earned since the last refill, capped at capacity.

    Tokens accumulate as floats; only reporting rounds them.
    """
    elapsed = now - bucket.last_refill
    if elapsed > 0:
        bucket.tokens = min(capacity, bucket.tokens + elapsed * rate)
        bucket.last_refill = now


def ms_until_next_token(tokens: float, capacity: int, rate: float, window_ms: int) -> int:
    """Milliseconds until the next whole token is available.

    A full bucket reports the window length.
    """
    if tokens >= capacity or rate <= 0:
        return window_ms
    deficit = 1 - (tokens - math.floor(tokens))
    return max(1, math.ceil(deficit / rate))


class TokenBucketStore:
    """Per-key token buckets owned by one RateLimiter.

    Refill and consumption for a key run under a lock without awaiting, so
    tokens stay within [0, capacity] under asyncio and under threads.
    """

    def __init__(self, capacity: int, window_ms: int):
        self.capacity = capacity
        self.window_ms = window_ms
        self.rate = refill_rate(capacity, window_ms)
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def get(self, key: str) -> Optional[TokenBucket]:
        return self._buckets.get(key)

    def take(self, key: str, now: float, draft_mode: bool = False) -> RateLimitResult:
        """Refill the bucket for ``key`` and try to consume one token.

        Args:
            key: Rate limit identifier
            now: Current time in epoch milliseconds
            draft_mode: Report the request as allowed without consuming

        Returns:
            RateLimitResult for this request
        """
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(tokens=float(self.capacity), last_refill=now)
                self._buckets[key] = bucket

            refill(bucket, now, self.capacity, self.rate)

            has_token = bucket.tokens >= 1
            if has_token and not draft_mode:
                bucket.tokens -= 1
            tokens = bucket.tokens

        wait_ms = ms_until_next_token(tokens, self.capacity, self.rate, self.window_ms)
        return RateLimitResult(
            allowed=True if draft_mode else has_token,
            current=self.capacity - math.floor(tokens),
            limit=self.capacity,
            remaining=wait_ms,
            reset_time=int(now + wait_ms),
        )

    def discard(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def prune(self, now: float) -> int:
        """Drop buckets that would be full again.

        A full bucket behaves exactly like a missing one, so removing it
        changes no decision.

        Returns:
            Number of buckets removed
        """
        with self._lock:
            idle = [
                key for key, bucket in self._buckets.items()
                if bucket.tokens + max(0.0, now - bucket.last_refill) * self.rate >= self.capacity
            ]
            for key in idle:
                del self._buckets[key]
        return len(idle)
