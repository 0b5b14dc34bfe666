"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from ascend.database import get_session
from ascend.redis_client import get_redis_or_none

get_db = get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client, or None when events are disabled."""
    yield get_redis_or_none()
