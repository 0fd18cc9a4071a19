"""ARQ (Async Redis Queue) configuration utilities.

Provides helpers for parsing Redis connection settings from the
application config into ARQ-compatible RedisSettings, opening the
request-path job pool, and the shared retry backoff policy.
"""

from typing import Optional
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


def get_redis_settings() -> RedisSettings:
    """Parse REDIS_URL from application settings into ARQ RedisSettings."""
    settings = get_settings()
    parsed = urlparse(settings.REDIS_URL)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        password=parsed.password,
        conn_timeout=2,
        conn_retries=0,
    )


async def open_job_pool() -> Optional[ArqRedis]:
    """Connect the enqueue-side pool. Returns None when Redis is unreachable."""
    try:
        return await create_pool(get_redis_settings())
    except Exception as exc:
        logger.warning("Job queue unavailable, notifications disabled: %s", exc)
        return None


def backoff_seconds(job_try: int) -> int:
    """Exponential backoff for job retries: base * 2^(try-1)."""
    settings = get_settings()
    return settings.JOB_RETRY_BASE_SECONDS * (2 ** max(job_try - 1, 0))
