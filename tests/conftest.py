"""Shared fixtures: a controllable clock and an in-process Redis double."""

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tollbooth.core.config import settings
from tollbooth.storage.redis_lua import FIXED_WINDOW_SCRIPT


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakePipeline:
    """Queues commands and replays them against FakeRedis on execute()."""

    def __init__(self, redis, transaction: bool):
        self._redis = redis
        self.transaction = transaction
        self._commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self, raise_on_error: bool = True):
        if "execute" in self._redis.fail_on:
            raise RedisConnectionError("Connection refused")
        results = []
        for name, args, kwargs in self._commands:
            try:
                results.append(await getattr(self._redis, name)(*args, **kwargs))
            except Exception as e:
                if raise_on_error:
                    raise
                results.append(e)
        self._commands = []
        return results


class FakeRedis:
    """Minimal redis.asyncio double driven by a FakeClock.

    Supports the commands the Redis storage issues. Commands listed in
    ``fail_on`` raise ConnectionError; ``scripts_disabled`` makes EVAL
    raise ResponseError like a server with scripting turned off.
    ``fail_keys`` makes any command touching one of those keys fail.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.zsets = {}
        self.expiry = {}
        self.fail_on = set()
        self.fail_keys = set()
        self.scripts_disabled = False
        self.closed = False
        self.eval_calls = 0

    def _check(self, command, *keys):
        if command in self.fail_on or any(key in self.fail_keys for key in keys):
            raise RedisConnectionError("Connection refused")
        for key in keys:
            deadline = self.expiry.get(key)
            if deadline is not None and self.clock() >= deadline:
                self.data.pop(key, None)
                self.zsets.pop(key, None)
                self.expiry.pop(key, None)

    def _exists(self, key):
        return key in self.data or key in self.zsets

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self, transaction)

    async def eval(self, script, num_keys, *args):
        self._check("eval", *args[:num_keys])
        if self.scripts_disabled:
            raise ResponseError("NOSCRIPT scripting is disabled")
        assert script == FIXED_WINDOW_SCRIPT
        self.eval_calls += 1
        key, window = args[0], int(args[1])
        count = await self.incr(key)
        ttl = await self.pttl(key)
        if count == 1 or ttl < 0:
            await self.pexpire(key, window)
            ttl = window
        return [count, ttl]

    async def incr(self, key):
        self._check("incr", key)
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def get(self, key):
        self._check("get", key)
        value = self.data.get(key)
        return value.encode() if value is not None else None

    async def pttl(self, key):
        self._check("pttl", key)
        if not self._exists(key):
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return int(deadline - self.clock())

    async def pexpire(self, key, ms):
        self._check("pexpire", key)
        if not self._exists(key):
            return 0
        self.expiry[key] = self.clock() + int(ms)
        return 1

    async def delete(self, *keys):
        self._check("delete", *keys)
        deleted = 0
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            if self._exists(key):
                deleted += 1
            self.data.pop(key, None)
            self.zsets.pop(key, None)
            self.expiry.pop(key, None)
        return deleted

    async def zadd(self, key, mapping):
        self._check("zadd", key)
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zremrangebyscore(self, key, min_score, max_score):
        self._check("zremrangebyscore", key)
        zset = self.zsets.get(key, {})
        low = float(min_score)
        high = float(max_score)
        doomed = [member for member, score in zset.items() if low <= score <= high]
        for member in doomed:
            del zset[member]
        if key in self.zsets and not zset:
            del self.zsets[key]
        return len(doomed)

    async def zcard(self, key):
        self._check("zcard", key)
        return len(self.zsets.get(key, {}))

    async def scan_iter(self, match=None, count=None):
        self._check("scan")
        for key in list(self.data) + list(self.zsets):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_background_cleanup(monkeypatch):
    """Keep storages created with default settings from spawning sweep tasks."""
    monkeypatch.setattr(settings, "memory_enable_auto_cleanup", False)
    monkeypatch.setattr(settings, "verbose", False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)
