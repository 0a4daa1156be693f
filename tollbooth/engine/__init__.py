"""Rate limiting decision engine.

This package turns storage counts into admission decisions. Supports fixed
window, sliding window and token bucket algorithms.
"""

from tollbooth.engine.factory import create_rate_limiter, create_storage
from tollbooth.engine.keys import default_key_generator
from tollbooth.engine.limiter import RateLimiter
from tollbooth.engine.models import (
    Algorithm,
    FailurePolicy,
    RateLimitResult,
    TokenBucket,
)
from tollbooth.engine.token_bucket import TokenBucketStore

__all__ = [
    # Models
    "Algorithm",
    "FailurePolicy",
    "RateLimitResult",
    "TokenBucket",
    # Engine
    "RateLimiter",
    "TokenBucketStore",
    "default_key_generator",
    # Factory
    "create_rate_limiter",
    "create_storage",
]
