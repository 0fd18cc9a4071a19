"""Background reconciliation tasks for payments service."""

from __future__ import annotations

from datetime import timedelta

from libs.common.cache import Cache
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from libs.db.config import AsyncSessionLocal
from services.payments_service.gateway import PaymentGateway
from services.payments_service.services import payment_ops
from services.store_service.models import Order, OrderStatus, PaymentStatus
from services.store_service.services.inventory_ledger import InventoryLedger
from services.store_service.services.order_workflow import OrderWorkflow
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

UNSETTLED = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


async def stale_payment_intents(
    db: AsyncSession, older_than_minutes: int, limit: int = 200
) -> list[str]:
    """Intents whose orders have waited longer than the cutoff for a final
    payment status, or were cancelled with the payment still captured."""
    cutoff = utc_now() - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        select(Order.payment_intent_id)
        .where(
            or_(
                Order.payment_status.in_(UNSETTLED),
                and_(
                    Order.status == OrderStatus.CANCELLED,
                    Order.payment_status == PaymentStatus.COMPLETED,
                ),
            ),
            Order.payment_intent_id.is_not(None),
            Order.created_at <= cutoff,
        )
        .group_by(Order.payment_intent_id)
        .order_by(Order.payment_intent_id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_pending_payments(
    gateway: PaymentGateway,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    cache: Cache | None = None,
    notifier: NotificationDispatcher | None = None,
    older_than_minutes: int | None = None,
) -> dict[str, int]:
    """Re-read stale intents from the processor and project their status.

    The processor is authoritative: succeeded intents complete their orders,
    cancelled ones fail them (cancelling still-pending orders and returning
    stock), anything else is left for the next sweep.
    """
    if older_than_minutes is None:
        older_than_minutes = get_settings().PAYMENT_RECONCILE_AFTER_MINUTES
    cache = cache or Cache(None)
    notifier = notifier or NotificationDispatcher(None)
    ledger = InventoryLedger(session_factory)
    counts = {"checked": 0, "updated": 0, "errors": 0}

    async with session_factory() as db:
        intent_ids = await stale_payment_intents(db, older_than_minutes)

    for intent_id in intent_ids:
        counts["checked"] += 1
        async with session_factory() as db:
            workflow = OrderWorkflow(db, ledger, gateway, cache, notifier)
            try:
                status = await payment_ops.reconcile_intent(gateway, workflow, intent_id)
            except Exception as exc:
                counts["errors"] += 1
                logger.warning("Reconcile failed for intent %s: %s", intent_id, exc)
                continue
        if status is not None:
            counts["updated"] += 1

    if counts["checked"]:
        logger.info(
            "Reconciled %d stale intents (%d updated, %d errors)",
            counts["checked"],
            counts["updated"],
            counts["errors"],
        )
    return counts
