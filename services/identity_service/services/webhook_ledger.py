"""Delivery ledger shared by every webhook endpoint.

Identity deliveries commit their side effects and the ledger row in the same
transaction, so a redelivery either finds the row (and is acknowledged
without effect) or the first attempt left nothing behind. Payment events are
forward-only status projections; applying one twice changes nothing.
"""

from libs.common.logging import get_logger
from services.identity_service.models import ProcessedWebhookEvent, WebhookProvider
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def already_processed(
    db: AsyncSession, provider: WebhookProvider, event_id: str
) -> bool:
    result = await db.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider == provider,
            ProcessedWebhookEvent.event_id == event_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def commit_processed(
    db: AsyncSession, provider: WebhookProvider, event_id: str, event_type: str
) -> bool:
    """Record the delivery and commit. False when a concurrent delivery of
    the same event won; everything pending in the session is rolled back."""
    db.add(
        ProcessedWebhookEvent(provider=provider, event_id=event_id, event_type=event_type)
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Duplicate %s webhook %s discarded", provider.value, event_id)
        return False
    return True
