"""Shared Redis client used for event publishing and the WebSocket fan-out."""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str) -> None:
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    try:
        await _client.ping()
    except redis.RedisError:
        # Events are best effort; the API keeps serving without them.
        logger.warning("Redis at %s is unreachable, events will be dropped until it returns", url)


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """Get the Redis client. Raises if ``init_redis`` has not run."""
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


def get_redis_or_none() -> redis.Redis | None:
    return _client
