"""Shared Redis client used for cross-process project locks."""

import redis.asyncio as redis

from phasegate.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> redis.Redis:
    """Create the shared client and verify connectivity. Idempotent."""
    global _redis

    if _redis is None:
        _redis = redis.from_url(
            url or get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await _redis.ping()
    return _redis


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
