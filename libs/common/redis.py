"""Redis client lifecycle.

The client is created once per process (in the app lifespan) and handed to
the cache layer. A failed connection yields ``None`` so callers run in
degraded mode instead of failing requests.
"""

from typing import Optional

import redis.asyncio as aioredis
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def open_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
    """Create a Redis client and verify it with PING."""
    settings = get_settings()
    client = aioredis.from_url(
        url or settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Redis unavailable, cache disabled: %s", exc)
        await client.aclose()
        return None
    logger.info("Redis connected")
    return client


async def close_redis(client: Optional[aioredis.Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as exc:
        logger.warning("Error closing Redis connection: %s", exc)
