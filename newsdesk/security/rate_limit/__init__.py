from .limiter import (
    RateLimiter,
    RateLimitResult,
    RateLimitTier,
    SlidingWindowRateLimiter,
    UnknownRateLimitTier,
    tier_for_path,
    tiers_from_settings,
)
from .stores import InMemoryWindowStore, RateWindow, RedisWindowStore, WindowStore

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "RateLimitTier",
    "SlidingWindowRateLimiter",
    "UnknownRateLimitTier",
    "tier_for_path",
    "tiers_from_settings",
    "InMemoryWindowStore",
    "RateWindow",
    "RedisWindowStore",
    "WindowStore",
]
