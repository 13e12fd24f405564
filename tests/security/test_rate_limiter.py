import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from newsdesk.security.rate_limit import (
    InMemoryWindowStore,
    RateLimiter,
    RateLimitTier,
    SlidingWindowRateLimiter,
    UnknownRateLimitTier,
    WindowStore,
    tier_for_path,
    tiers_from_settings,
)

# 1_699_999_980 s is a multiple of 60 s, so sliding windows start aligned
ALIGNED_START = 1_699_999_980.0


def make_limiter(clock, max_requests=3, window_ms=60_000, store=None, cls=RateLimiter, **kw):
    tier = RateLimitTier(name="api", window_ms=window_ms, max_requests=max_requests)
    return cls([tier], store or InMemoryWindowStore(shards=4), clock=clock, **kw)


@pytest.mark.asyncio
async def test_blocks_after_max_requests_and_recovers_after_window(clock):
    limiter = make_limiter(clock)

    results = [await limiter.check("1.2.3.4", "api") for _ in range(3)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]

    blocked = await limiter.check("1.2.3.4", "api")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.limit == 3

    clock.advance(60)
    assert (await limiter.check("1.2.3.4", "api")).allowed


@pytest.mark.asyncio
async def test_identifiers_are_independent(clock):
    limiter = make_limiter(clock, max_requests=1)
    assert (await limiter.check("a", "api")).allowed
    assert not (await limiter.check("a", "api")).allowed
    assert (await limiter.check("b", "api")).allowed


@pytest.mark.asyncio
async def test_fixed_window_allows_double_burst_across_the_seam(clock):
    """Known fixed-window behavior: up to 2x the limit can pass around a reset."""
    limiter = make_limiter(clock, max_requests=3)
    await limiter.check("seam", "api")  # opens the window

    clock.advance(59.9)
    late = [await limiter.check("seam", "api") for _ in range(2)]
    clock.advance(0.2)  # window replaced
    early = [await limiter.check("seam", "api") for _ in range(3)]

    passed = sum(r.allowed for r in late + early)
    assert passed == 5  # 5 requests inside 0.3 s with a limit of 3


@pytest.mark.asyncio
async def test_reset_clears_window(clock):
    limiter = make_limiter(clock, max_requests=1)
    await limiter.check("client", "api")
    assert not (await limiter.check("client", "api")).allowed

    assert await limiter.reset("client") == 1
    assert (await limiter.check("client", "api")).allowed
    assert await limiter.reset("nobody") == 0


@pytest.mark.asyncio
async def test_unknown_tier_raises(clock):
    limiter = make_limiter(clock)
    with pytest.raises(UnknownRateLimitTier):
        await limiter.check("client", "missing")


@pytest.mark.asyncio
async def test_concurrent_checks_admit_exactly_the_limit(clock):
    limiter = make_limiter(clock, max_requests=10)
    results = await asyncio.gather(*(limiter.check("hot", "api") for _ in range(25)))
    assert sum(r.allowed for r in results) == 10


def test_store_increment_is_atomic_across_threads():
    store = InMemoryWindowStore(shards=2)

    def worker():
        for _ in range(200):
            store.increment_sync("shared", 60_000, 1_000)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.increment_sync("shared", 60_000, 1_000).count == 2001


@pytest.mark.asyncio
async def test_store_failure_fails_open(clock):
    store = AsyncMock(spec=WindowStore)
    store.increment.side_effect = ConnectionError("store down")
    limiter = make_limiter(clock, store=store)

    result = await limiter.check("client", "api")
    assert result.allowed is True
    assert result.degraded is True
    assert "ConnectionError" in result.error


@pytest.mark.asyncio
async def test_slow_store_times_out_and_fails_open(clock):
    class SlowStore(InMemoryWindowStore):
        async def increment(self, key, window_ms, now_ms):
            await asyncio.sleep(1)
            return await super().increment(key, window_ms, now_ms)

    limiter = make_limiter(clock, store=SlowStore(), store_timeout=0.01)
    result = await limiter.check("client", "api")
    assert result.allowed and result.degraded
    assert result.error.startswith("timeout")


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_windows(clock):
    limiter = make_limiter(clock)
    await limiter.check("old", "api")
    clock.advance(61)
    await limiter.check("new", "api")

    assert await limiter.sweep(batch_size=1) == 1
    stats = await limiter.stats()
    assert stats["total_keys"] == 1
    assert stats["active_windows"] == 1
    assert stats["strategy"] == "fixed"


@pytest.mark.asyncio
async def test_sliding_window_smooths_the_seam(clock):
    clock.now = ALIGNED_START
    limiter = make_limiter(clock, max_requests=10, cls=SlidingWindowRateLimiter)

    for _ in range(10):
        assert (await limiter.check("client", "api")).allowed

    clock.advance(60)  # next window, previous one still fully weighted
    assert not (await limiter.check("client", "api")).allowed

    clock.advance(30)  # half of the previous window has slid out
    assert (await limiter.check("client", "api")).allowed


def test_result_headers_and_retry_after(clock):
    limiter = make_limiter(clock)
    result = asyncio.run(limiter.check("client", "api"))
    headers = result.headers()
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "2"
    assert headers["X-RateLimit-Reset"].endswith("Z")
    assert result.retry_after(clock()) == 60
    assert result.retry_after(clock() + 120) == 1


def test_tier_for_path_prefers_longest_prefix():
    routes = {"/api/": "api", "/api/auth/": "auth"}
    assert tier_for_path("/api/auth/login", routes) == "auth"
    assert tier_for_path("/api/articles", routes) == "api"
    assert tier_for_path("/about", routes) is None


def test_tiers_from_settings_uses_tier_messages():
    tiers = {t.name: t for t in tiers_from_settings({"auth": {"window_seconds": 900, "max_requests": 5}})}
    assert tiers["auth"].window_ms == 900_000
    assert "authentication" in tiers["auth"].message


def test_invalid_tier_rejected():
    with pytest.raises(ValueError):
        RateLimitTier(name="bad", window_ms=0, max_requests=1)
