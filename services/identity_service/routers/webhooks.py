"""Identity provider webhook endpoint (svix-signed deliveries)."""

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.backends import get_cache, get_notifier
from libs.common.cache import Cache
from libs.common.config import get_settings
from libs.common.errors import InvalidSignatureError
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from libs.common.rate_limit import webhook_limit
from libs.db.session import get_async_db
from services.identity_service.services.identity_sync import handle_identity_event
from services.identity_service.services.signing import verify_identity_webhook
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/identity")
@webhook_limit
async def identity_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    cache: Cache = Depends(get_cache),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    Receive user and session events from the identity provider.

    Unsigned or stale deliveries get 400 so the provider does not retry them;
    processing failures get 500 so it does.
    """
    settings = get_settings()
    if not settings.IDENTITY_WEBHOOK_SECRET:
        logger.error("IDENTITY_WEBHOOK_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    raw = await request.body()
    try:
        event_id = verify_identity_webhook(
            raw,
            request.headers,
            settings.IDENTITY_WEBHOOK_SECRET,
            settings.WEBHOOK_TOLERANCE_SECONDS,
        )
        event = json.loads(raw.decode("utf-8") or "{}")
    except InvalidSignatureError as e:
        logger.warning(f"Rejected identity webhook: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=e.message
        ) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body"
        ) from e

    try:
        outcome = await handle_identity_event(db, cache, notifier, event_id, event)
    except Exception as e:
        await db.rollback()
        logger.exception(f"Identity webhook {event_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": outcome.status, "event_id": event_id}
