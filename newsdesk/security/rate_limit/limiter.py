"""
Fixed-window rate limiting per client identifier and tier.

Each `(tier, identifier)` pair owns one window `{count, reset_at}`. A check
increments the counter and admits the request while the post-increment count
is within `max_requests`. Once `now >= reset_at` the window is replaced, not
decremented. This keeps memory and per-request cost O(1) at the price of the
known seam burst: up to `2 * max_requests` requests can pass across a window
boundary. `SlidingWindowRateLimiter` is the opt-in alternative that smooths
the seam.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from newsdesk.security.monitoring.security_metrics import RATE_LIMIT_DECISIONS_TOTAL
from newsdesk.utils.logger import get_logger

from .stores import InMemoryWindowStore, RateWindow, RedisWindowStore, WindowStore

logger = get_logger(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later."

TIER_MESSAGES = {
    "auth": "Too many authentication attempts, please try again in 15 minutes.",
    "api": "API rate limit exceeded, please slow down.",
    "upload": "Upload rate limit exceeded, please wait before uploading again.",
    "search": "Search rate limit exceeded, please slow down.",
}


class UnknownRateLimitTier(KeyError):
    """Raised when a check names a tier that was never configured."""


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    window_ms: int
    max_requests: int
    message: str = DEFAULT_MESSAGE

    def __post_init__(self) -> None:
        if self.window_ms <= 0 or self.max_requests <= 0:
            raise ValueError(f"Invalid rate limit tier '{self.name}'")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    tier: str
    degraded: bool = False
    message: Optional[str] = None
    error: Optional[str] = None

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> Dict[str, str]:
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc)
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": reset.isoformat().replace("+00:00", "Z"),
        }


def tier_for_path(path: str, routes: Mapping[str, str]) -> Optional[str]:
    """Pick the tier whose route prefix is the longest match for `path`."""
    best: Optional[str] = None
    best_len = -1
    for prefix, tier in routes.items():
        if path.startswith(prefix) and len(prefix) > best_len:
            best, best_len = tier, len(prefix)
    return best


def tiers_from_settings(raw: Mapping[str, Mapping[str, Any]]) -> List[RateLimitTier]:
    tiers = []
    for name, cfg in raw.items():
        window_ms = cfg.get("window_ms") or int(cfg.get("window_seconds", 60)) * 1000
        tiers.append(
            RateLimitTier(
                name=name,
                window_ms=int(window_ms),
                max_requests=int(cfg["max_requests"]),
                message=cfg.get("message") or TIER_MESSAGES.get(name, DEFAULT_MESSAGE),
            )
        )
    return tiers


class RateLimiter:
    """
    Tiered fixed-window limiter over a pluggable `WindowStore`.

    Store failures (exceptions or calls slower than `store_timeout`) fail
    open: the request is allowed and the result is flagged `degraded` so the
    caller can record it.
    """

    strategy = "fixed"

    def __init__(
        self,
        tiers: Iterable[RateLimitTier],
        store: Optional[WindowStore] = None,
        *,
        store_timeout: Optional[float] = 0.05,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tiers: Dict[str, RateLimitTier] = {t.name: t for t in tiers}
        self._store = store or InMemoryWindowStore()
        self.store_timeout = store_timeout
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Any, store: Optional[WindowStore] = None, **kwargs: Any
    ) -> "RateLimiter":
        if store is None:
            if settings.RATE_LIMIT_BACKEND == "redis":
                store = RedisWindowStore()
            else:
                store = InMemoryWindowStore(shards=settings.RATE_LIMIT_SHARDS)
        limiter_cls = (
            SlidingWindowRateLimiter
            if settings.RATE_LIMIT_STRATEGY == "sliding"
            else RateLimiter
        )
        return limiter_cls(
            tiers_from_settings(settings.RATE_LIMIT_TIERS),
            store,
            store_timeout=settings.RATE_LIMIT_STORE_TIMEOUT_MS / 1000.0,
            **kwargs,
        )

    @property
    def store(self) -> WindowStore:
        return self._store

    @property
    def tiers(self) -> Dict[str, RateLimitTier]:
        return dict(self._tiers)

    def tier(self, name: str) -> RateLimitTier:
        try:
            return self._tiers[name]
        except KeyError:
            raise UnknownRateLimitTier(f"Rate limiter tier '{name}' not found") from None

    def now(self) -> float:
        return self._clock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _key(tier: str, identifier: str) -> str:
        return f"{tier}:{identifier}"

    async def _call_store(self, coro: Any) -> Any:
        if self.store_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.store_timeout)

    async def check(self, identifier: str, tier: str) -> RateLimitResult:
        cfg = self.tier(tier)
        now_ms = self._now_ms()
        try:
            window = await self._call_store(
                self._store.increment(self._key(tier, identifier), cfg.window_ms, now_ms)
            )
        except Exception as e:  # noqa: BLE001 - any store failure fails open
            return self._degraded(cfg, now_ms, e)
        return self._decide(cfg, float(window.count), window.reset_at_ms)

    def _decide(self, cfg: RateLimitTier, used: float, reset_at_ms: int) -> RateLimitResult:
        allowed = used <= cfg.max_requests
        RATE_LIMIT_DECISIONS_TOTAL.labels(
            tier=cfg.name, outcome="allowed" if allowed else "blocked"
        ).inc()
        return RateLimitResult(
            allowed=allowed,
            limit=cfg.max_requests,
            remaining=max(0, math.floor(cfg.max_requests - used)) if allowed else 0,
            reset_at=reset_at_ms / 1000.0,
            tier=cfg.name,
            message=None if allowed else cfg.message,
        )

    def _degraded(self, cfg: RateLimitTier, now_ms: int, error: BaseException) -> RateLimitResult:
        reason = "timeout" if isinstance(error, asyncio.TimeoutError) else type(error).__name__
        logger.warning(
            "rate_limiter_degraded",
            tier=cfg.name,
            reason=reason,
            error=str(error),
        )
        RATE_LIMIT_DECISIONS_TOTAL.labels(tier=cfg.name, outcome="degraded").inc()
        return RateLimitResult(
            allowed=True,
            limit=cfg.max_requests,
            remaining=cfg.max_requests,
            reset_at=(now_ms + cfg.window_ms) / 1000.0,
            tier=cfg.name,
            degraded=True,
            error=f"{reason}: {error}" if str(error) else reason,
        )

    def _window_keys(self, tier: str, identifier: str, now_ms: int) -> List[str]:
        return [self._key(tier, identifier)]

    async def reset(self, identifier: str, tier: Optional[str] = None) -> int:
        """Drop the window(s) for `identifier`; returns how many existed."""
        names = [self.tier(tier).name] if tier else list(self._tiers)
        now_ms = self._now_ms()
        removed = 0
        for name in names:
            for key in self._window_keys(name, identifier, now_ms):
                if await self._store.delete(key):
                    removed += 1
        logger.info("rate_limit_reset", identifier=identifier, tier=tier, removed=removed)
        return removed

    async def sweep(self, batch_size: int = 500) -> int:
        return await self._store.sweep(self._now_ms(), batch_size=batch_size)

    async def stats(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(await self._store.stats(self._now_ms()))
        data["strategy"] = self.strategy
        data["tiers"] = {
            name: {"window_ms": t.window_ms, "max_requests": t.max_requests}
            for name, t in self._tiers.items()
        }
        return data

    async def close(self) -> None:
        await self._store.close()


class SlidingWindowRateLimiter(RateLimiter):
    """
    Sliding-window counter: weighs the previous aligned window by the share
    of it still inside the trailing interval and adds the current count.

    Windows are aligned to multiples of `window_ms`, and each window key lives
    for two windows so its count is still readable as "previous".
    """

    strategy = "sliding"

    def _window_keys(self, tier: str, identifier: str, now_ms: int) -> List[str]:
        cfg = self.tier(tier)
        index = now_ms // cfg.window_ms
        base = self._key(tier, identifier)
        return [f"{base}:{index}", f"{base}:{index - 1}"]

    async def check(self, identifier: str, tier: str) -> RateLimitResult:
        cfg = self.tier(tier)
        now_ms = self._now_ms()
        window_start = (now_ms // cfg.window_ms) * cfg.window_ms
        current_key, previous_key = self._window_keys(tier, identifier, now_ms)
        ttl_ms = window_start + 2 * cfg.window_ms - now_ms
        try:
            current: RateWindow = await self._call_store(
                self._store.increment(current_key, ttl_ms, now_ms)
            )
            previous: Optional[RateWindow] = await self._call_store(
                self._store.get(previous_key, now_ms)
            )
        except Exception as e:  # noqa: BLE001 - any store failure fails open
            return self._degraded(cfg, now_ms, e)

        elapsed_share = (now_ms - window_start) / cfg.window_ms
        previous_count = previous.count if previous else 0
        estimate = previous_count * (1.0 - elapsed_share) + current.count
        return self._decide(cfg, estimate, window_start + cfg.window_ms)
