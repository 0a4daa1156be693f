"""Rate limiting engine with pluggable memory and Redis storage."""

from tollbooth.engine import (
    Algorithm,
    FailurePolicy,
    RateLimiter,
    RateLimitResult,
    create_rate_limiter,
    create_storage,
)
from tollbooth.exceptions import (
    ConfigurationError,
    KeyExtractionError,
    RateLimiterError,
    StorageError,
    UnsupportedOperationError,
)
from tollbooth.storage import (
    Capability,
    MemoryStorage,
    RedisStorage,
    StorageProvider,
    WindowRecord,
)

__version__ = "0.1.0"

__all__ = [
    "Algorithm",
    "FailurePolicy",
    "RateLimiter",
    "RateLimitResult",
    "create_rate_limiter",
    "create_storage",
    "ConfigurationError",
    "KeyExtractionError",
    "RateLimiterError",
    "StorageError",
    "UnsupportedOperationError",
    "Capability",
    "MemoryStorage",
    "RedisStorage",
    "StorageProvider",
    "WindowRecord",
]
