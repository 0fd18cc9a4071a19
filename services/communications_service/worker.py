"""ARQ worker for marketplace notification jobs.

Run with: arq services.communications_service.worker.WorkerSettings
"""

from arq import Retry
from libs.common.arq_config import backoff_seconds, get_redis_settings
from libs.common.config import get_settings
from libs.common.email import send_email as deliver_email
from libs.common.logging import configure_logging, get_logger
from services.communications_service.templates import render

logger = get_logger(__name__)


def _retry(ctx: dict, job: str, exc: Exception) -> Retry:
    job_try = ctx.get("job_try", 1)
    defer = backoff_seconds(job_try)
    logger.warning(f"{job} attempt {job_try} failed ({exc}); retrying in {defer}s")
    return Retry(defer=defer)


async def startup(ctx: dict):
    configure_logging()


# ── Job functions (names match libs.common.notifications) ──


async def send_email(ctx: dict, template: str, to_email: str, context: dict):
    """Render a template and hand it to the SMTP sender."""
    try:
        subject, body = render(template, context)
    except KeyError:
        logger.error(f"Unknown email template {template!r}; dropping job")
        return False

    try:
        return await deliver_email(to_email, subject, body)
    except Exception as e:
        raise _retry(ctx, "send_email", e) from e


async def record_analytics_event(ctx: dict, event: str, properties: dict):
    logger.info("analytics event=%s properties=%s", event, properties)
    return True


async def notify_low_stock(ctx: dict, payload: dict):
    logger.warning(
        "Low stock: product %s has %s left (vendor %s)",
        payload.get("product_id"),
        payload.get("remaining"),
        payload.get("vendor_id"),
    )
    recipient = get_settings().STOCK_ALERT_EMAIL
    if not recipient:
        return False
    return await send_email(ctx, "low_stock", recipient, payload)


async def notify_order_status(ctx: dict, payload: dict):
    to_email = payload.get("email")
    if not to_email:
        return False
    return await send_email(ctx, "order_status", to_email, payload)


# ── Worker configuration ──


class WorkerSettings:
    """ARQ worker settings for notification jobs."""

    redis_settings = get_redis_settings()
    on_startup = startup

    functions = [
        send_email,
        record_analytics_event,
        notify_low_stock,
        notify_order_status,
    ]

    max_tries = get_settings().JOB_MAX_TRIES
