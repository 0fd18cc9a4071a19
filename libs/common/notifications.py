"""Fire-and-forget notification dispatch over the arq job queue.

Callers hand a job to the dispatcher after their own transaction has
committed. Enqueue failures and a missing queue connection are logged and
reported as False; they never propagate into the caller's flow.
"""

from typing import Any, Optional

from libs.common.logging import get_logger

logger = get_logger(__name__)

# Job function names registered by the communications worker.
SEND_EMAIL_JOB = "send_email"
ANALYTICS_JOB = "record_analytics_event"
LOW_STOCK_JOB = "notify_low_stock"
ORDER_STATUS_JOB = "notify_order_status"


class NotificationDispatcher:
    def __init__(self, pool=None):
        self.pool = pool

    @property
    def available(self) -> bool:
        return self.pool is not None

    async def _enqueue(self, job_name: str, *args: Any, **kwargs: Any) -> bool:
        if self.pool is None:
            logger.warning(f"Job queue unavailable, dropped {job_name}")
            return False
        try:
            await self.pool.enqueue_job(job_name, *args, **kwargs)
            return True
        except Exception as e:
            logger.warning(f"Failed to enqueue {job_name}: {e}")
            return False

    async def email(
        self, template: str, to_email: Optional[str], context: Optional[dict] = None
    ) -> bool:
        """Queue an email by template name (order_confirmation, welcome, ...)."""
        if not to_email:
            logger.info(f"No recipient for {template} email, skipping")
            return False
        return await self._enqueue(SEND_EMAIL_JOB, template, to_email, context or {})

    async def analytics(self, event: str, properties: Optional[dict] = None) -> bool:
        return await self._enqueue(ANALYTICS_JOB, event, properties or {})

    async def low_stock(
        self, product_id: str, remaining: int, vendor_id: Optional[str] = None
    ) -> bool:
        return await self._enqueue(
            LOW_STOCK_JOB,
            {"product_id": product_id, "remaining": remaining, "vendor_id": vendor_id},
        )

    async def order_status(
        self, order_id: str, status: str, to_email: Optional[str] = None
    ) -> bool:
        return await self._enqueue(
            ORDER_STATUS_JOB,
            {"order_id": order_id, "status": status, "email": to_email},
        )
