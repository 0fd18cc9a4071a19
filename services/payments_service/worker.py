"""ARQ worker for payment reconciliation."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.cache import Cache
from libs.common.logging import configure_logging, get_logger
from libs.common.notifications import NotificationDispatcher
from libs.common.redis import close_redis, open_redis
from services.payments_service.gateway import build_gateway

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()
    ctx["gateway"] = build_gateway()
    ctx["cache"] = Cache(await open_redis())
    ctx["notifier"] = NotificationDispatcher(ctx.get("redis"))


async def shutdown(ctx: dict):
    cache = ctx.get("cache")
    if cache is not None:
        await close_redis(cache.client)


async def task_reconcile_pending_payments(ctx: dict):
    from services.payments_service.tasks import reconcile_pending_payments

    gateway = ctx.get("gateway")
    if gateway is None:
        logger.warning("Skipping reconciliation: no payment gateway configured")
        return None

    logger.info("Running: reconcile_pending_payments")
    return await reconcile_pending_payments(
        gateway, cache=ctx.get("cache"), notifier=ctx.get("notifier")
    )


class WorkerSettings:
    redis_settings = get_redis_settings()

    on_startup = startup
    on_shutdown = shutdown

    functions = [task_reconcile_pending_payments]

    cron_jobs = [
        cron(
            task_reconcile_pending_payments,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
    ]
