"""Build storage providers and limiters from settings."""

from typing import Any, Optional

from redis.exceptions import RedisError

from tollbooth.core.config import settings
from tollbooth.core.logging import get_logger
from tollbooth.core.utils import Clock
from tollbooth.engine.limiter import RateLimiter
from tollbooth.exceptions import ConfigurationError
from tollbooth.storage.base import StorageProvider
from tollbooth.storage.memory import MemoryStorage
from tollbooth.storage.redis import RedisStorage

logger = get_logger(__name__)


def create_storage(
    backend: Optional[str] = None,
    redis_client: Optional[Any] = None,
    clock: Optional[Clock] = None,
) -> StorageProvider:
    """Create the storage provider selected by ``backend`` or settings.

    Falls back to memory storage when a Redis client cannot be created.

    Args:
        backend: 'memory', 'redis', or None to use settings.rate_limit_storage
        redis_client: Connected client to hand to RedisStorage (caller keeps ownership)
        clock: Time source returning epoch milliseconds

    Returns:
        StorageProvider instance

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    name = (backend or settings.rate_limit_storage).strip().lower()

    if name == "redis":
        try:
            storage = RedisStorage(client=redis_client, clock=clock)
            logger.info("Using Redis rate limit storage")
            return storage
        except (RedisError, ValueError) as e:
            logger.warning(f"Failed to initialize Redis storage: {e}. Using in-memory.")
            return MemoryStorage(clock=clock)

    if name == "memory":
        logger.debug("Using in-memory rate limit storage")
        return MemoryStorage(clock=clock)

    raise ConfigurationError("storage", backend, f"Unknown storage backend: {backend!r}")


def create_rate_limiter(
    backend: Optional[str] = None,
    redis_client: Optional[Any] = None,
    **options: Any,
) -> RateLimiter:
    """Create a RateLimiter whose storage is chosen from settings.

    Args:
        backend: Storage backend name, see create_storage
        redis_client: Connected Redis client for the redis backend
        **options: Keyword arguments forwarded to RateLimiter

    Returns:
        Configured RateLimiter; every call returns a new, independent instance
    """
    if options.get("storage") is None:
        options["storage"] = create_storage(backend, redis_client, options.get("clock"))
    return RateLimiter(**options)
