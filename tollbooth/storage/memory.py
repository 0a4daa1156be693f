"""In-memory storage provider.

Counters and request timestamps live in plain dictionaries owned by the
storage instance. Suitable for single-process deployments; running several
processes multiplies the effective limit.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Iterable, Optional

from tollbooth.core.config import settings
from tollbooth.core.logging import get_logger
from tollbooth.core.utils import Clock, now_ms
from tollbooth.exceptions import ConfigurationError
from tollbooth.storage.base import Capability, StorageProvider, WindowRecord

logger = get_logger(__name__)


class MemoryStorage(StorageProvider):
    """Process-local counter storage with a periodic cleanup sweep.

    Every mutation runs to completion without awaiting, so coroutines on one
    event loop never observe a half-applied update. A threading lock guards
    both maps for hosts that call into the same instance from several threads.

    Memory stays bounded by two mechanisms:
    - Records are dropped once their window has elapsed.
    - Timestamp logs are trimmed to a fixed retention horizon, independent of
      the window sizes in use, so mixing many window lengths cannot grow the
      logs without limit.
    """

    capabilities = (
        Capability.SLIDING_WINDOW
        | Capability.BATCH_INCREMENT
        | Capability.CLEAN_EXPIRED
        | Capability.DISPOSE
        | Capability.GET_COUNT
        | Capability.CLEAR
    )

    def __init__(
        self,
        enable_auto_cleanup: Optional[bool] = None,
        cleanup_interval_ms: Optional[int] = None,
        timestamp_retention_ms: Optional[int] = None,
        sweep_budget_ms: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize memory storage.

        Args:
            enable_auto_cleanup: Run clean_expired periodically in the background
            cleanup_interval_ms: Delay between background sweeps
            timestamp_retention_ms: Age after which log entries are trimmed
            sweep_budget_ms: Maximum time one background sweep may take
            clock: Time source returning epoch milliseconds

        Raises:
            ConfigurationError: If an interval, retention or budget is not positive
        """
        for field, value in (
            ("cleanup_interval_ms", cleanup_interval_ms),
            ("timestamp_retention_ms", timestamp_retention_ms),
            ("sweep_budget_ms", sweep_budget_ms),
        ):
            if value is not None and value < 1:
                raise ConfigurationError(field, value, f"{field} must be at least 1")

        self._auto_cleanup = (
            settings.memory_enable_auto_cleanup
            if enable_auto_cleanup is None
            else enable_auto_cleanup
        )
        self._cleanup_interval_ms = cleanup_interval_ms or settings.memory_cleanup_interval_ms
        self._retention_ms = timestamp_retention_ms or settings.memory_timestamp_retention_ms
        self._sweep_budget_ms = sweep_budget_ms or settings.memory_sweep_budget_ms
        self._clock = clock or now_ms

        self._records: dict[str, WindowRecord] = {}
        self._timestamps: dict[str, list[int]] = {}
        self._lock = threading.Lock()

        # Keys still to visit in the current budgeted sweep
        self._sweep_pending: list[str] = []
        self._cleanup_task: Optional[asyncio.Task] = None
        self._disposed = False

    def __len__(self) -> int:
        return len(self._records)

    def _now(self) -> int:
        return int(self._clock())

    async def increment(self, key: str, window_ms: int) -> WindowRecord:
        self._ensure_cleanup_task()
        now = self._now()
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.reset_time:
                record = WindowRecord(count=1, reset_time=now + window_ms)
                self._records[key] = record
                self._timestamps[key] = [now]
            else:
                record.count += 1
                self._timestamps.setdefault(key, []).append(now)
            return WindowRecord(count=record.count, reset_time=record.reset_time)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)
            self._timestamps.pop(key, None)

    async def get_count(self, key: str) -> int:
        """Return the live fixed-window count, 0 once the window has elapsed."""
        now = self._now()
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.reset_time:
                return 0
            return record.count

    async def sliding_window_count(self, key: str, window_ms: int) -> int:
        now = self._now()
        window_start = now - window_ms
        with self._lock:
            timestamps = self._timestamps.get(key)
            if not timestamps:
                return 0
            return sum(1 for ts in timestamps if window_start < ts <= now)

    async def batch_increment(
        self, keys: Iterable[str], window_ms: int
    ) -> dict[str, WindowRecord]:
        results: dict[str, WindowRecord] = {}
        for key in keys:
            results[key] = await self.increment(key, window_ms)
        return results

    def clean_expired(self, budget_ms: Optional[int] = None) -> int:
        """Drop elapsed records and trim timestamp logs past the retention horizon.

        Args:
            budget_ms: Stop once this much time has been spent. The next call
                resumes with the keys that were not visited. None sweeps
                every key.

        Returns:
            Number of records and log entries removed
        """
        now = self._now()
        horizon = now - self._retention_ms
        deadline = None if budget_ms is None else time.monotonic() + budget_ms / 1000
        removed = 0

        with self._lock:
            if budget_ms is None or not self._sweep_pending:
                self._sweep_pending = list(self._records.keys() | self._timestamps.keys())
            while self._sweep_pending:
                removed += self._sweep_key(self._sweep_pending.pop(), now, horizon)
                if deadline is not None and time.monotonic() >= deadline:
                    break

        return removed

    def _sweep_key(self, key: str, now: int, horizon: int) -> int:
        removed = 0
        record = self._records.get(key)
        if record is not None and now >= record.reset_time:
            del self._records[key]
            removed += 1

        timestamps = self._timestamps.get(key)
        if timestamps is not None:
            kept = [ts for ts in timestamps if ts > horizon]
            removed += len(timestamps) - len(kept)
            if kept:
                self._timestamps[key] = kept
            else:
                del self._timestamps[key]
        return removed

    async def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._timestamps.clear()
            self._sweep_pending.clear()

    def _ensure_cleanup_task(self) -> None:
        """Start the background sweep on first use inside a running loop."""
        if not self._auto_cleanup or self._disposed or self._cleanup_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())
        logger.debug(
            f"Started memory storage cleanup task (interval={self._cleanup_interval_ms}ms)"
        )

    async def start_cleanup_task(self) -> None:
        """Start the periodic cleanup task explicitly."""
        self._ensure_cleanup_task()

    async def _cleanup_loop(self) -> None:
        """Background loop running one budgeted sweep per interval."""
        interval = self._cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.clean_expired(budget_ms=self._sweep_budget_ms)
            except Exception as e:
                logger.error(f"Error during rate limit cleanup: {e}")
                continue
            if removed:
                logger.debug(f"Cleaned {removed} expired rate limit entries")

    async def dispose(self) -> None:
        """Cancel the cleanup task and drop all state."""
        self._disposed = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        with self._lock:
            self._records.clear()
            self._timestamps.clear()
            self._sweep_pending.clear()
