from typing import Optional

import redis.asyncio as redis

from core.config import settings

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Shared async client for the relay store."""
    global _client
    if _client is None:
        _client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,  # returns strings instead of bytes
            socket_connect_timeout=5,
            health_check_interval=30,
        )
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
