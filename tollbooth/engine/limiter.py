"""Rate limiting decision engine.

RateLimiter owns the configuration, resolves which algorithm to run once at
construction, and turns storage counts (or its own token buckets) into a
RateLimitResult for each call.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from tollbooth.core.config import settings
from tollbooth.core.logging import get_log_context, get_logger
from tollbooth.core.utils import Clock, now_ms
from tollbooth.engine.keys import default_key_generator
from tollbooth.engine.models import Algorithm, FailurePolicy, RateLimitResult
from tollbooth.engine.token_bucket import TokenBucketStore
from tollbooth.exceptions import (
    ConfigurationError,
    KeyExtractionError,
    RateLimiterError,
    StorageError,
)
from tollbooth.storage.base import Capability, StorageProvider
from tollbooth.storage.memory import MemoryStorage

logger = get_logger(__name__)

KeyGenerator = Callable[[Any], Union[str, Awaitable[str]]]
SkipPredicate = Callable[[Any], Union[bool, Awaitable[bool]]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RateLimiter:
    """Decide whether a request may proceed.

    Supports three algorithms:
    - fixed-window: one counter per key, reset entirely at the end of the window
    - sliding-window: counts timestamps in the trailing window; falls back to
      fixed-window when the storage cannot count timestamps
    - token-bucket: per-key buckets kept in this instance's memory

    Example:
        >>> limiter = RateLimiter(window_ms=60_000, max_requests=100)
        >>> result = await limiter.check("api_key:abc")
        >>> result.allowed
        True
    """

    def __init__(
        self,
        window_ms: Optional[int] = None,
        max_requests: Optional[int] = None,
        algorithm: Union[Algorithm, str, None] = None,
        storage: Optional[StorageProvider] = None,
        key_generator: Optional[KeyGenerator] = None,
        skip: Optional[SkipPredicate] = None,
        draft_mode: Optional[bool] = None,
        failure_policy: Union[FailurePolicy, str, None] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the rate limiter.

        Options left as None fall back to settings.

        Args:
            window_ms: Window length in milliseconds
            max_requests: Requests allowed per window; 0 denies everything
            algorithm: fixed-window, sliding-window or token-bucket
            storage: Counter storage (defaults to a new MemoryStorage)
            key_generator: Derives the identifier from the checked source
            skip: Predicate returning True for sources that bypass limiting
            draft_mode: Count requests but never deny them
            failure_policy: fail-open or fail-closed
            clock: Time source returning epoch milliseconds

        Raises:
            ConfigurationError: If any option is invalid
        """
        self.window_ms = self._validate_window(
            settings.rate_limit_window_ms if window_ms is None else window_ms
        )
        self.max_requests = self._validate_max_requests(
            settings.rate_limit_max_requests if max_requests is None else max_requests
        )
        self.algorithm = self._parse_enum(
            Algorithm, "algorithm", algorithm or settings.rate_limit_algorithm
        )
        if failure_policy is None:
            failure_policy = (
                FailurePolicy.FAIL_CLOSED
                if settings.rate_limit_fail_closed
                else FailurePolicy.FAIL_OPEN
            )
        self.failure_policy = self._parse_enum(FailurePolicy, "failure_policy", failure_policy)
        self.draft_mode = settings.rate_limit_draft_mode if draft_mode is None else draft_mode

        self._clock = clock or now_ms
        self._storage = storage if storage is not None else MemoryStorage(clock=clock)
        self._key_generator = key_generator or default_key_generator
        self._skip = skip

        self._buckets: Optional[TokenBucketStore] = None
        if self.algorithm is Algorithm.TOKEN_BUCKET:
            self._buckets = TokenBucketStore(capacity=self.max_requests, window_ms=self.window_ms)

        self._effective_algorithm = self._resolve_algorithm()
        self._dispatch = {
            Algorithm.FIXED_WINDOW: self._check_fixed_window,
            Algorithm.SLIDING_WINDOW: self._check_sliding_window,
            Algorithm.TOKEN_BUCKET: self._check_token_bucket,
        }[self._effective_algorithm]

        if settings.verbose:
            logger.info(
                f"Rate limiter initialized: algorithm={self._effective_algorithm.value}, "
                f"window={self.window_ms}ms, max_requests={self.max_requests}, "
                f"storage={self._storage.name}, "
                f"draft_mode={'enabled' if self.draft_mode else 'disabled'}, "
                f"failure_policy={self.failure_policy.value}"
            )

    @staticmethod
    def _validate_window(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(
                "window_ms", value, "window_ms must be a positive integer"
            )
        return value

    @staticmethod
    def _validate_max_requests(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigurationError(
                "max_requests", value, "max_requests must be a non-negative integer"
            )
        return value

    @staticmethod
    def _parse_enum(enum_cls: type, field: str, value: Any) -> Any:
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(member.value for member in enum_cls)
            raise ConfigurationError(
                field, value, f"{field} must be one of: {allowed}"
            ) from None

    def _resolve_algorithm(self) -> Algorithm:
        """Pick the algorithm actually run, given the storage capabilities."""
        if (
            self.algorithm is Algorithm.SLIDING_WINDOW
            and not self._storage.supports(Capability.SLIDING_WINDOW)
        ):
            log = logger.info if settings.verbose else logger.debug
            log(
                f"{self._storage.name} does not support sliding window counts, "
                "using fixed-window instead"
            )
            return Algorithm.FIXED_WINDOW
        return self.algorithm

    @property
    def storage(self) -> StorageProvider:
        return self._storage

    @property
    def effective_algorithm(self) -> Algorithm:
        return self._effective_algorithm

    def _now(self) -> float:
        return self._clock()

    async def check(self, source: Any) -> RateLimitResult:
        """Check whether the request described by ``source`` is allowed.

        Args:
            source: Identifier string or request object passed to the key generator

        Returns:
            RateLimitResult for this request

        Raises:
            KeyExtractionError: If the key cannot be derived under fail-closed
        """
        try:
            if await self._should_skip(source):
                return self._allowed_result()

            if self.max_requests == 0:
                return self._deny_all_result()

            key = await self._extract_key(source)
        except KeyExtractionError as e:
            if self.failure_policy is FailurePolicy.FAIL_CLOSED:
                raise
            logger.warning(f"Rate limit key extraction failed, allowing request: {e}")
            return self._allowed_result()

        return await self.consume(key)

    async def consume(self, key: str) -> RateLimitResult:
        """Count one request for an explicit identifier.

        Skips the skip predicate and key generator but honours the zero
        ceiling, draft mode and the failure policy.
        """
        if self.max_requests == 0:
            return self._deny_all_result()
        try:
            return await self._dispatch(key)
        except StorageError as e:
            return self._handle_storage_failure(key, e)
        except RateLimiterError:
            raise
        except Exception as e:
            # Providers outside this package may raise their own backend errors
            error = StorageError("increment", key, f"{self._storage.name} failed: {e}")
            error.__cause__ = e
            return self._handle_storage_failure(key, error)

    async def _should_skip(self, source: Any) -> bool:
        if self._skip is None:
            return False
        try:
            return bool(await _resolve(self._skip(source)))
        except Exception as e:
            raise KeyExtractionError(f"Skip predicate failed: {e}") from e

    async def _extract_key(self, source: Any) -> str:
        try:
            key = await _resolve(self._key_generator(source))
        except KeyExtractionError:
            raise
        except Exception as e:
            raise KeyExtractionError(f"Key generator failed: {e}") from e
        if not isinstance(key, str) or not key:
            raise KeyExtractionError("Key generator returned an empty identifier")
        return key

    async def _check_fixed_window(self, key: str) -> RateLimitResult:
        record = await self._storage.increment(key, self.window_ms)
        now = self._now()
        return RateLimitResult(
            allowed=self.draft_mode or record.count <= self.max_requests,
            current=record.count,
            limit=self.max_requests,
            remaining=max(0, int(record.reset_time - now)),
            reset_time=record.reset_time,
        )

    async def _check_sliding_window(self, key: str) -> RateLimitResult:
        await self._storage.increment(key, self.window_ms)
        count = await self._storage.sliding_window_count(key, self.window_ms)
        now = self._now()
        return RateLimitResult(
            allowed=self.draft_mode or count <= self.max_requests,
            current=count,
            limit=self.max_requests,
            remaining=self.window_ms,
            reset_time=int(now + self.window_ms),
        )

    async def _check_token_bucket(self, key: str) -> RateLimitResult:
        return self._buckets.take(key, self._now(), self.draft_mode)

    def _allowed_result(self) -> RateLimitResult:
        """Result for skipped requests and fail-open paths."""
        now = self._now()
        return RateLimitResult(
            allowed=True,
            current=0,
            limit=self.max_requests,
            remaining=self.window_ms,
            reset_time=int(now + self.window_ms),
        )

    def _deny_all_result(self) -> RateLimitResult:
        """Result for a zero ceiling, produced without consulting storage."""
        now = self._now()
        return RateLimitResult(
            allowed=False,
            current=1,
            limit=0,
            remaining=self.window_ms,
            reset_time=int(now + self.window_ms),
        )

    def _handle_storage_failure(self, key: str, error: StorageError) -> RateLimitResult:
        """Apply the failure policy to a storage error."""
        context = get_log_context(
            key=key,
            algorithm=self._effective_algorithm.value,
            storage=self._storage.name,
        )
        if self.failure_policy is FailurePolicy.FAIL_CLOSED:
            logger.warning(
                f"Rate limiting fail-closed triggered: {error}. Request denied.",
                extra=context,
            )
            now = self._now()
            return RateLimitResult(
                allowed=False,
                current=0,
                limit=self.max_requests,
                remaining=self.window_ms,
                reset_time=int(now + self.window_ms),
            )

        logger.warning(
            f"Rate limiting fail-open triggered: {error}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return self._allowed_result()

    async def reset(self, key: str) -> None:
        """Clear the stored count and the token bucket for ``key``."""
        await self._storage.reset(key)
        if self._buckets is not None:
            self._buckets.discard(key)

    async def reset_all(self) -> None:
        """Clear every token bucket and as much storage state as the provider allows."""
        if self._buckets is not None:
            self._buckets.clear()
        if self._storage.supports(Capability.CLEAR):
            await self._storage.clear()
        elif self._storage.supports(Capability.CLEAN_EXPIRED):
            self._storage.clean_expired()

    async def cleanup(self) -> int:
        """Drop expired storage entries and idle token buckets.

        Returns:
            Number of entries removed
        """
        removed = 0
        if self._storage.supports(Capability.CLEAN_EXPIRED):
            removed += self._storage.clean_expired()
        if self._buckets is not None:
            removed += self._buckets.prune(self._now())
        return removed

    async def dispose(self) -> None:
        """Release buckets, timers and connections held by this limiter."""
        if self._buckets is not None:
            self._buckets.clear()
        if self._storage.supports(Capability.DISPOSE):
            await self._storage.dispose()

    async def __aenter__(self) -> "RateLimiter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()
