"""Core utilities for the rate limiter."""

from tollbooth.core.config import settings
from tollbooth.core.logging import get_log_context, get_logger, setup_logging
from tollbooth.core.utils import Clock, ms_to_seconds_ceil, now_ms

__all__ = [
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "Clock",
    "now_ms",
    "ms_to_seconds_ceil",
]
