"""Optional backends shared by the service apps.

Each app connects Redis (cache) and the arq pool (notifications) once in its
lifespan and keeps the wrappers on ``app.state``. Either connection may be
missing; the wrappers then run in their degraded mode.

Usage:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await connect_backends(app)
        yield
        await disconnect_backends(app)

    @router.get("/...")
    async def handler(cache: Cache = Depends(get_cache)): ...
"""

from fastapi import FastAPI, Request

from libs.common.arq_config import open_job_pool
from libs.common.cache import Cache
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from libs.common.redis import close_redis, open_redis

logger = get_logger(__name__)


async def connect_backends(app: FastAPI) -> None:
    app.state.cache = Cache(await open_redis())
    app.state.notifier = NotificationDispatcher(await open_job_pool())


async def disconnect_backends(app: FastAPI) -> None:
    cache = getattr(app.state, "cache", None)
    if cache is not None:
        await close_redis(cache.client)
    notifier = getattr(app.state, "notifier", None)
    if notifier is not None and notifier.pool is not None:
        try:
            await notifier.pool.aclose()
        except Exception as e:
            logger.warning(f"Error closing job pool: {e}")


def get_cache(request: Request) -> Cache:
    """FastAPI dependency: the app's cache (disabled when not connected)."""
    return getattr(request.app.state, "cache", None) or Cache(None)


def get_notifier(request: Request) -> NotificationDispatcher:
    """FastAPI dependency: the app's notification dispatcher."""
    return getattr(request.app.state, "notifier", None) or NotificationDispatcher(None)
