"""Redis storage provider for distributed rate limiting.

Counters are shared by every limiter instance pointing at the same Redis,
so atomicity is enforced server-side:
- Fixed window: one Lua script increments and sets the expiry together.
- Sliding window: a MULTI/EXEC pipeline over a sorted set of timestamps.

Redis key format:
- {prefix}{key} - fixed window counter
- {prefix}{key}:window - sorted set of request timestamps (sliding window)
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from tollbooth.core.config import settings
from tollbooth.core.logging import get_log_context, get_logger
from tollbooth.core.utils import Clock, now_ms
from tollbooth.exceptions import StorageError
from tollbooth.storage.base import Capability, StorageProvider, WindowRecord
from tollbooth.storage.redis_lua import FIXED_WINDOW_SCRIPT

logger = get_logger(__name__)


class RedisStorage(StorageProvider):
    """Redis-backed counter storage.

    Backend failures are caught per operation. By default a failing call
    degrades to a "first observation" record (count 1, fresh window) and logs
    a warning, favouring availability; with ``strict=True`` it raises
    StorageError instead so the limiter's failure policy decides.

    A client passed in by the caller is never closed here. Only a client the
    storage created from a URL is closed on dispose.
    """

    WINDOW_SUFFIX = ":window"
    CLEAR_BATCH_SIZE = 500

    def __init__(
        self,
        client: Optional[Any] = None,
        url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        enable_sliding_window: Optional[bool] = None,
        strict: Optional[bool] = None,
        allow_non_atomic_fallback: bool = True,
        clock: Optional[Clock] = None,
    ):
        """Initialize Redis storage.

        Args:
            client: Connected redis.asyncio client owned by the caller
            url: Redis URL used to create a client when none is given
            key_prefix: Prefix for every key written by this storage
            enable_sliding_window: Track timestamps in sorted sets
            strict: Raise StorageError instead of degrading on Redis errors
            allow_non_atomic_fallback: Use separate INCR/PEXPIRE calls when
                Redis refuses to run Lua scripts
            clock: Time source returning epoch milliseconds
        """
        if client is None:
            self._redis = aioredis.from_url(url or settings.redis_url)
            self._owns_client = True
        else:
            self._redis = client
            self._owns_client = False

        self._key_prefix = settings.redis_key_prefix if key_prefix is None else key_prefix
        self._sliding_enabled = (
            settings.redis_enable_sliding_window
            if enable_sliding_window is None
            else enable_sliding_window
        )
        self._strict = settings.redis_strict if strict is None else strict
        self._disposed = False
        # Window length of the latest sliding increment, used to prune in get_count
        self._last_window_ms: Optional[int] = None
        self._allow_fallback = allow_non_atomic_fallback
        self._clock = clock or now_ms

        capabilities = Capability.BATCH_INCREMENT | Capability.DISPOSE | Capability.GET_COUNT
        if self._sliding_enabled:
            capabilities |= Capability.SLIDING_WINDOW
        # An empty prefix would make clear() wipe the whole database
        if self._key_prefix:
            capabilities |= Capability.CLEAR
        self.capabilities = capabilities

        if settings.verbose:
            logger.info(
                f"Redis storage initialized (prefix={self._key_prefix!r}, "
                f"sliding_window={'enabled' if self._sliding_enabled else 'disabled'}, "
                f"strict={self._strict})"
            )

    @property
    def owns_client(self) -> bool:
        return self._owns_client

    def _now(self) -> int:
        return int(self._clock())

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _make_window_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}{self.WINDOW_SUFFIX}"

    def _ensure_open(self, operation: str, key: Optional[str] = None) -> None:
        if self._disposed:
            raise StorageError(
                operation, key, f"Cannot run '{operation}' on a disposed RedisStorage"
            )

    def _handle_failure(
        self,
        operation: str,
        key: Optional[str],
        error: Exception,
        window_ms: int,
        now: int,
    ) -> WindowRecord:
        """Raise StorageError in strict mode, otherwise degrade to a first observation."""
        if self._strict:
            raise StorageError(operation, key) from error
        logger.warning(
            f"Redis {operation} failed, treating as first observation: {error}",
            extra=get_log_context(key=key, storage=self.name),
        )
        return WindowRecord(count=1, reset_time=now + window_ms)

    async def increment(self, key: str, window_ms: int) -> WindowRecord:
        self._ensure_open("increment", key)
        now = self._now()
        try:
            if self._sliding_enabled:
                return await self._increment_sliding_window(key, window_ms, now)
            return await self._increment_fixed_window(key, window_ms, now)
        except RedisError as e:
            return self._handle_failure("increment", key, e, window_ms, now)

    async def _increment_fixed_window(self, key: str, window_ms: int, now: int) -> WindowRecord:
        """Increment using the atomic Lua script."""
        full_key = self._make_key(key)
        try:
            result = await self._redis.eval(FIXED_WINDOW_SCRIPT, 1, full_key, window_ms)
        except ResponseError as e:
            if not self._allow_fallback:
                raise
            logger.warning(
                f"Lua script execution failed, using non-atomic increment: {e}",
                extra=get_log_context(key=key, storage=self.name),
            )
            return await self._increment_fixed_window_fallback(full_key, window_ms, now)
        return self._record_from_script(result, window_ms, now)

    async def _increment_fixed_window_fallback(
        self, full_key: str, window_ms: int, now: int
    ) -> WindowRecord:
        """Best-effort increment with separate round trips.

        Not race-free: a crash between INCR and PEXPIRE leaves a counter
        without an expiry until the next hit repairs it.
        """
        count = int(await self._redis.incr(full_key))
        ttl = int(await self._redis.pttl(full_key))
        if count == 1 or ttl < 0:
            await self._redis.pexpire(full_key, window_ms)
            ttl = window_ms
        return WindowRecord(count=count, reset_time=now + (ttl if ttl > 0 else window_ms))

    @staticmethod
    def _record_from_script(result: Any, window_ms: int, now: int) -> WindowRecord:
        count = int(result[0])
        ttl = int(result[1])
        return WindowRecord(count=count, reset_time=now + (ttl if ttl > 0 else window_ms))

    def _queue_sliding_window(self, pipe: Any, key: str, window_ms: int, now: int) -> None:
        """Queue ZADD, prune, ZCARD and PEXPIRE for one key on a pipeline."""
        window_key = self._make_window_key(key)
        # Unique member so hits within the same millisecond are all counted
        member = f"{now}:{uuid.uuid4().hex}"
        pipe.zadd(window_key, {member: now})
        pipe.zremrangebyscore(window_key, "-inf", now - window_ms)
        pipe.zcard(window_key)
        pipe.pexpire(window_key, window_ms)

    async def _increment_sliding_window(self, key: str, window_ms: int, now: int) -> WindowRecord:
        """Record a hit in the sorted set and return the pruned cardinality."""
        self._last_window_ms = window_ms
        pipe = self._redis.pipeline(transaction=True)
        self._queue_sliding_window(pipe, key, window_ms, now)
        results = await pipe.execute()
        return WindowRecord(count=int(results[2]), reset_time=now + window_ms)

    async def sliding_window_count(self, key: str, window_ms: int) -> int:
        self._ensure_open("sliding_window_count", key)
        now = self._now()
        window_key = self._make_window_key(key)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(window_key, "-inf", now - window_ms)
            pipe.zcard(window_key)
            results = await pipe.execute()
        except RedisError as e:
            return self._handle_failure("sliding_window_count", key, e, window_ms, now).count
        return int(results[1])

    async def _sliding_count_now(self, key: str) -> int:
        window_key = self._make_window_key(key)
        if self._last_window_ms is None:
            return int(await self._redis.zcard(window_key))
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(window_key, "-inf", self._now() - self._last_window_ms)
        pipe.zcard(window_key)
        results = await pipe.execute()
        return int(results[1])

    async def batch_increment(
        self, keys: Iterable[str], window_ms: int
    ) -> dict[str, WindowRecord]:
        """Increment several keys in one pipelined round trip.

        A failure on one key never aborts the others: that key degrades to a
        first observation even in strict mode. Only a failure of the whole
        round trip is subject to the strict setting.
        """
        keys = list(keys)
        if not keys:
            return {}
        self._ensure_open("batch_increment")
        now = self._now()
        step = 4 if self._sliding_enabled else 1
        if self._sliding_enabled:
            self._last_window_ms = window_ms

        pipe = self._redis.pipeline(transaction=False)
        for key in keys:
            if self._sliding_enabled:
                self._queue_sliding_window(pipe, key, window_ms, now)
            else:
                pipe.eval(FIXED_WINDOW_SCRIPT, 1, self._make_key(key), window_ms)

        try:
            raw = await pipe.execute(raise_on_error=False)
        except RedisError as e:
            if self._strict:
                raise StorageError("batch_increment") from e
            logger.warning(
                f"Redis batch increment failed for {len(keys)} keys, "
                f"treating all as first observation: {e}",
                extra=get_log_context(storage=self.name),
            )
            return {key: WindowRecord(count=1, reset_time=now + window_ms) for key in keys}

        results: dict[str, WindowRecord] = {}
        for index, key in enumerate(keys):
            chunk = raw[index * step:(index + 1) * step]
            error = next((item for item in chunk if isinstance(item, Exception)), None)
            if error is not None:
                logger.warning(
                    f"Batch increment failed for key, treating as first observation: {error}",
                    extra=get_log_context(key=key, storage=self.name),
                )
                results[key] = WindowRecord(count=1, reset_time=now + window_ms)
            elif self._sliding_enabled:
                results[key] = WindowRecord(count=int(chunk[2]), reset_time=now + window_ms)
            else:
                results[key] = self._record_from_script(chunk[0], window_ms, now)
        return results

    async def get_count(self, key: str) -> int:
        """Return the live count for ``key`` without recording a hit.

        In sliding mode the sorted set is first pruned with the window length
        of the latest increment made through this storage. Before any
        increment the raw cardinality is returned, which may include
        entries that have already left the window.
        """
        self._ensure_open("get_count", key)
        try:
            if self._sliding_enabled:
                return await self._sliding_count_now(key)
            value = await self._redis.get(self._make_key(key))
        except RedisError as e:
            if self._strict:
                raise StorageError("get_count", key) from e
            logger.warning(
                f"Redis get_count failed: {e}",
                extra=get_log_context(key=key, storage=self.name),
            )
            return 0
        return int(value) if value is not None else 0

    async def reset(self, key: str) -> None:
        self._ensure_open("reset", key)
        try:
            await self._redis.delete(self._make_key(key), self._make_window_key(key))
        except RedisError as e:
            if self._strict:
                raise StorageError("reset", key) from e
            logger.warning(
                f"Redis reset failed: {e}",
                extra=get_log_context(key=key, storage=self.name),
            )

    async def clear(self) -> None:
        """Delete every key under this storage's prefix."""
        if not self.supports(Capability.CLEAR):
            raise self._unsupported("clear")
        self._ensure_open("clear")
        deleted = 0
        batch: list[Any] = []
        try:
            async for redis_key in self._redis.scan_iter(
                match=f"{self._key_prefix}*", count=self.CLEAR_BATCH_SIZE
            ):
                batch.append(redis_key)
                if len(batch) >= self.CLEAR_BATCH_SIZE:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except RedisError as e:
            if self._strict:
                raise StorageError("clear") from e
            logger.warning(
                f"Redis clear failed after deleting {deleted} keys: {e}",
                extra=get_log_context(storage=self.name),
            )
            return
        logger.debug(f"Cleared {deleted} rate limit keys with prefix {self._key_prefix!r}")

    async def dispose(self) -> None:
        """Close the Redis connection if this storage created it.

        Later operations raise StorageError. Safe to call more than once.
        """
        if self._disposed:
            return
        self._disposed = True
        if not self._owns_client:
            return
        try:
            await self._redis.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
