"""Admin payment operations: vendor payouts and order refunds."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from libs.auth.models import Actor
from libs.common.currency import from_minor_units
from libs.common.errors import PaymentGatewayError
from libs.common.logging import get_logger
from libs.common.rate_limit import admin_limit
from libs.db.session import get_async_db
from services.identity_service.dependencies import require_admin
from services.payments_service.gateway import PaymentGateway, get_payment_gateway
from services.payments_service.schemas import (
    PayoutCreate,
    PayoutResponse,
    RefundRequest,
    RefundResponse,
)
from services.payments_service.services import payment_ops
from services.store_service.dependencies import get_order_workflow
from services.store_service.services.order_workflow import OrderWorkflow
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments/admin", tags=["payments-admin"])
logger = get_logger(__name__)


def _require(gateway: Optional[PaymentGateway]) -> PaymentGateway:
    if gateway is None:
        raise PaymentGatewayError("Payment processor is not configured")
    return gateway


@router.post(
    "/vendors/{vendor_id}/payouts", response_model=PayoutResponse, status_code=201
)
@admin_limit
async def create_vendor_payout(
    request: Request,
    vendor_id: uuid.UUID,
    payload: PayoutCreate,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    gateway: Optional[PaymentGateway] = Depends(get_payment_gateway),
):
    """Transfer settled funds to the vendor's connected account."""
    record = await payment_ops.payout(
        db,
        _require(gateway),
        vendor_id=vendor_id,
        amount=payload.amount,
        order_ids=payload.order_ids,
        initiated_by=str(actor.user_id),
        currency=payload.currency,
    )
    logger.info(f"Admin {actor.user_id} paid out {record.amount} to vendor {vendor_id}")
    return record


@router.post("/orders/{order_id}/refund", response_model=RefundResponse)
@admin_limit
async def refund_order(
    request: Request,
    order_id: uuid.UUID,
    payload: RefundRequest,
    actor: Actor = Depends(require_admin),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Refund an order in full, or partially when an amount is given."""
    order, refund = await workflow.refund_order(
        order_id, actor, amount=payload.amount, reason=payload.reason
    )
    return RefundResponse(
        refund_id=refund.id,
        order_id=order.id,
        payment_intent_id=order.payment_intent_id,
        amount=from_minor_units(refund.amount_minor),
        status=refund.status,
        payment_status=order.payment_status,
    )
