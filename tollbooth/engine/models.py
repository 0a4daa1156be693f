"""Rate limiting data models.

This module contains the decision record, token bucket state and the
enumerations accepted by the limiter's constructor.
"""

from dataclasses import dataclass
from enum import Enum

from tollbooth.core.utils import ms_to_seconds_ceil


class Algorithm(str, Enum):
    """Admission policy used by a RateLimiter."""

    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"


class FailurePolicy(str, Enum):
    """What the limiter does when a key or the storage cannot be resolved.

    fail-open admits the request and logs a warning. fail-closed propagates
    key extraction errors and denies when storage fails.
    """

    FAIL_OPEN = "fail-open"
    FAIL_CLOSED = "fail-closed"


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed
        current: Requests counted for the key, including this one
        limit: Configured ceiling (bucket capacity for token bucket)
        remaining: Milliseconds until the window resets or a token is available
        reset_time: Epoch milliseconds of that reset
    """

    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_time: int

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds to wait, rounded up."""
        return ms_to_seconds_ceil(self.remaining)


@dataclass
class TokenBucket:
    """Token bucket state for one key."""

    tokens: float
    last_refill: float
