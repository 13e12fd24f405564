"""
Window stores for the fixed-window rate limiter.

A store owns the `(key -> count, reset_at)` map and guarantees that
`increment` is a single atomic increment-and-read: either under a shard lock
(in-process) or inside a Lua script (Redis). Callers never read-then-write.
"""

from __future__ import annotations

import threading
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

from newsdesk.core.config import settings
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    count: int
    reset_at_ms: int

    def expired(self, now_ms: int) -> bool:
        return now_ms >= self.reset_at_ms


class WindowStore(ABC):
    @abstractmethod
    async def increment(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        """Atomically bump the counter, replacing the window if it has expired."""

    @abstractmethod
    async def get(self, key: str, now_ms: int) -> Optional[RateWindow]:
        """Return the live window for `key`, or None if absent or expired."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    async def sweep(self, now_ms: int, batch_size: int = 500) -> int:
        return 0

    async def stats(self, now_ms: int) -> Dict[str, int]:
        return {"total_keys": 0, "active_windows": 0, "expired_windows": 0}

    async def close(self) -> None:
        return None


class _Shard:
    __slots__ = ("lock", "windows")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        # key -> [count, reset_at_ms]
        self.windows: Dict[str, List[int]] = {}


class InMemoryWindowStore(WindowStore):
    """
    Process-local store split across independently locked shards.

    Requests for different identifiers rarely contend on the same lock; the
    critical section is a dict lookup plus an integer increment.
    """

    def __init__(self, shards: int = 32) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def increment_sync(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        shard = self._shard(key)
        with shard.lock:
            entry = shard.windows.get(key)
            if entry is None or now_ms >= entry[1]:
                entry = [0, now_ms + window_ms]
                shard.windows[key] = entry
            entry[0] += 1
            return RateWindow(count=entry[0], reset_at_ms=entry[1])

    async def increment(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        return self.increment_sync(key, window_ms, now_ms)

    async def get(self, key: str, now_ms: int) -> Optional[RateWindow]:
        shard = self._shard(key)
        with shard.lock:
            entry = shard.windows.get(key)
            if entry is None or now_ms >= entry[1]:
                return None
            return RateWindow(count=entry[0], reset_at_ms=entry[1])

    async def delete(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return shard.windows.pop(key, None) is not None

    async def sweep(self, now_ms: int, batch_size: int = 500) -> int:
        removed = 0
        for shard in self._shards:
            with shard.lock:
                snapshot = list(shard.windows.items())
            expired = [key for key, (_, reset_at) in snapshot if now_ms >= reset_at]
            for start in range(0, len(expired), batch_size):
                batch = expired[start : start + batch_size]
                with shard.lock:
                    for key in batch:
                        entry = shard.windows.get(key)
                        # a concurrent increment may have opened a fresh window
                        if entry is not None and now_ms >= entry[1]:
                            del shard.windows[key]
                            removed += 1
        if removed:
            logger.debug("rate_limit_sweep", removed=removed)
        return removed

    async def stats(self, now_ms: int) -> Dict[str, int]:
        total = active = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.windows)
                active += sum(1 for _, reset_at in shard.windows.values() if reset_at > now_ms)
        return {
            "total_keys": total,
            "active_windows": active,
            "expired_windows": total - active,
        }


LUA_FIXED_WINDOW = """
-- KEYS[1] = window key
-- ARGV[1] = window_ms
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisWindowStore(WindowStore):
    """
    Redis-backed window store for horizontally scaled deployments.

    The increment and expiry are applied by one Lua script, so concurrent
    workers never observe a counter without its TTL.
    """

    def __init__(
        self, client: Optional[redis.Redis] = None, prefix: str = "ratelimit:"
    ) -> None:
        self._client = client
        self.prefix = prefix
        self._script_sha: Optional[str] = None

    async def _client_or_create(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def _ensure_script(self, client: redis.Redis) -> str:
        if not self._script_sha:
            self._script_sha = await client.script_load(LUA_FIXED_WINDOW)
        return self._script_sha

    async def increment(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        client = await self._client_or_create()
        sha = await self._ensure_script(client)
        try:
            count, ttl = await client.evalsha(sha, 1, self.prefix + key, window_ms)
        except ResponseError as e:
            if "NOSCRIPT" not in str(e):
                raise
            # script cache flushed on the server; reload once
            self._script_sha = None
            sha = await self._ensure_script(client)
            count, ttl = await client.evalsha(sha, 1, self.prefix + key, window_ms)
        return RateWindow(count=int(count), reset_at_ms=now_ms + int(ttl))

    async def get(self, key: str, now_ms: int) -> Optional[RateWindow]:
        client = await self._client_or_create()
        async with client.pipeline(transaction=True) as pipe:
            pipe.get(self.prefix + key)
            pipe.pttl(self.prefix + key)
            value, ttl = await pipe.execute()
        if value is None or int(ttl) <= 0:
            return None
        return RateWindow(count=int(value), reset_at_ms=now_ms + int(ttl))

    async def delete(self, key: str) -> bool:
        client = await self._client_or_create()
        return bool(await client.delete(self.prefix + key))

    async def stats(self, now_ms: int) -> Dict[str, int]:
        client = await self._client_or_create()
        total = 0
        async for _ in client.scan_iter(match=f"{self.prefix}*", count=500):
            total += 1
        # expired keys are evicted by Redis itself
        return {"total_keys": total, "active_windows": total, "expired_windows": 0}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
