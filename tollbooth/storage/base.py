"""Storage provider interface for rate limit counters.

The engine depends on this abstraction (not a concrete implementation) so
counters can live in process memory or in a shared backend such as Redis.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from tollbooth.exceptions import UnsupportedOperationError


@dataclass
class WindowRecord:
    """Counter state for one key within one fixed window.

    Attributes:
        count: Hits recorded in the current window, including the latest one.
        reset_time: Epoch milliseconds at which the window ends.
    """

    count: int
    reset_time: int


class Capability(enum.Flag):
    """Optional operations a storage provider declares at construction."""

    NONE = 0
    SLIDING_WINDOW = enum.auto()
    BATCH_INCREMENT = enum.auto()
    CLEAN_EXPIRED = enum.auto()
    DISPOSE = enum.auto()
    GET_COUNT = enum.auto()
    CLEAR = enum.auto()


class StorageProvider(ABC):
    """Abstract base class for counter storage.

    Subclasses must implement ``increment`` and ``reset`` and set
    ``capabilities`` for every optional operation they override. The
    defaults below raise UnsupportedOperationError so an undeclared
    operation fails loudly instead of silently returning zero.
    """

    capabilities: Capability = Capability.NONE

    def supports(self, capability: Capability) -> bool:
        """Return True when every flag in ``capability`` is declared."""
        return capability in self.capabilities

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> WindowRecord:
        """Record one hit for ``key`` and return the updated window.

        Must be atomic with respect to concurrent callers on the same key.
        When the stored window has elapsed, the record is replaced with a
        new one (count 1) rather than patched.

        Args:
            key: Rate limit identifier
            window_ms: Window length in milliseconds

        Returns:
            WindowRecord with the current count and reset time
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Clear all state held for ``key``."""

    async def sliding_window_count(self, key: str, window_ms: int) -> int:
        """Count hits recorded in ``(now - window_ms, now]``."""
        raise self._unsupported("sliding_window_count")

    async def batch_increment(
        self, keys: Iterable[str], window_ms: int
    ) -> dict[str, WindowRecord]:
        """Increment several keys, returning one record per key."""
        raise self._unsupported("batch_increment")

    async def get_count(self, key: str) -> int:
        """Return the current fixed-window count without incrementing."""
        raise self._unsupported("get_count")

    def clean_expired(self) -> int:
        """Drop expired state. Returns the number of entries removed."""
        raise self._unsupported("clean_expired")

    async def clear(self) -> None:
        """Remove every key owned by this provider."""
        raise self._unsupported("clear")

    async def dispose(self) -> None:
        """Release timers and connections held by this provider."""
        raise self._unsupported("dispose")

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(self.name, operation)
