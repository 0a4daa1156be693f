"""Utility functions for the rate limiter."""

import time
from typing import Callable

# Clocks return epoch milliseconds; tests inject their own.
Clock = Callable[[], float]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_seconds_ceil(value_ms: float) -> int:
    """Round a millisecond duration up to whole seconds.

    Examples:
        >>> ms_to_seconds_ceil(1)
        1
        >>> ms_to_seconds_ceil(2000)
        2
        >>> ms_to_seconds_ceil(0)
        0
    """
    if value_ms <= 0:
        return 0
    return int(-(-value_ms // 1000))
