"""Stripe webhook handler."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.errors import InvalidSignatureError
from libs.common.logging import get_logger
from libs.common.rate_limit import webhook_limit
from libs.db.session import get_async_db
from services.identity_service.models import WebhookProvider
from services.identity_service.services.webhook_ledger import (
    already_processed,
    commit_processed,
)
from services.payments_service.gateway import (
    PaymentGateway,
    WebhookEvent,
    get_payment_gateway,
)
from services.payments_service.schemas import WebhookAck
from services.store_service.dependencies import get_order_workflow
from services.store_service.models import PaymentStatus
from services.store_service.services.order_workflow import OrderWorkflow
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)


async def apply_stripe_event(workflow: OrderWorkflow, event: WebhookEvent) -> str:
    """Project one processor event onto local orders. Returns processed/ignored."""
    data = event.data

    if event.type == "payment_intent.succeeded":
        await workflow.apply_payment_status(data["id"], PaymentStatus.COMPLETED)
        return "processed"

    if event.type == "payment_intent.processing":
        await workflow.apply_payment_status(data["id"], PaymentStatus.PROCESSING)
        return "processed"

    if event.type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        error = data.get("last_payment_error") or {}
        await workflow.fail_payment(
            data["id"], reason=error.get("message") or "Payment failed"
        )
        return "processed"

    if event.type == "charge.refunded":
        intent_id = data.get("payment_intent")
        # Partial refunds (one vendor's order of a shared intent) are
        # recorded by the refund call itself.
        if not intent_id or not data.get("refunded"):
            return "ignored"
        await workflow.apply_payment_status(intent_id, PaymentStatus.REFUNDED)
        return "processed"

    return "ignored"


@router.post("/webhooks/stripe", response_model=WebhookAck)
@webhook_limit
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    gateway: Optional[PaymentGateway] = Depends(get_payment_gateway),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).
    """
    if gateway is None:
        logger.error("Stripe webhook received but no payment gateway is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment processor not configured",
        )

    raw = await request.body()
    try:
        event = gateway.verify_webhook(raw, request.headers.get("stripe-signature"))
    except InvalidSignatureError as e:
        logger.warning(f"Rejected Stripe webhook: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=e.message
        ) from e

    if await already_processed(db, WebhookProvider.STRIPE, event.id):
        logger.info(f"Stripe event {event.id} ({event.type}) already processed")
        return WebhookAck(status="duplicate", event_id=event.id)

    try:
        outcome = await apply_stripe_event(workflow, event)
        await commit_processed(db, WebhookProvider.STRIPE, event.id, event.type)
    except Exception as e:
        await db.rollback()
        logger.exception(f"Stripe webhook {event.id} ({event.type}) failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    logger.info(f"Stripe event {event.id} ({event.type}): {outcome}")
    return WebhookAck(status=outcome, event_id=event.id)
