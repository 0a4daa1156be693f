"""Counter storage providers.

The engine only talks to StorageProvider, so counters can start in process
memory and move to a shared Redis without changing the calling code.
"""

from tollbooth.storage.base import Capability, StorageProvider, WindowRecord
from tollbooth.storage.memory import MemoryStorage
from tollbooth.storage.redis import RedisStorage
from tollbooth.storage.redis_lua import FIXED_WINDOW_SCRIPT

__all__ = [
    "Capability",
    "StorageProvider",
    "WindowRecord",
    "MemoryStorage",
    "RedisStorage",
    "FIXED_WINDOW_SCRIPT",
]
