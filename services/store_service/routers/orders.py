"""Store orders router: checkout, payment confirmation, order history and
fulfilment transitions."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from libs.auth.models import Actor
from libs.common.rate_limit import checkout_limit
from services.identity_service.dependencies import get_current_actor, require_vendor
from services.payments_service.services import payment_ops
from services.store_service.dependencies import get_order_workflow
from services.store_service.models import OrderStatus
from services.store_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderCancelRequest,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderShipRequest,
    OrderStatsResponse,
    OrderStatusUpdate,
    SettleRequest,
)
from services.store_service.services.order_workflow import OrderLine, OrderWorkflow

router = APIRouter(tags=["store"])


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post("/orders/checkout", response_model=CheckoutResponse, status_code=201)
@checkout_limit
async def checkout(
    request: Request,
    payload: CheckoutRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Turn the cart into one order per vendor behind a single payment intent."""
    result = await workflow.checkout(
        actor,
        shipping_cost=payload.shipping_cost,
        shipping_address_id=payload.shipping_address_id,
        billing_address_id=payload.billing_address_id,
        payment_method_id=payload.payment_method_id,
        idempotency_key=payload.idempotency_key,
    )
    return CheckoutResponse(
        orders=[OrderResponse.model_validate(o) for o in result.orders],
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        total=result.total,
    )


@router.post(
    "/orders/payments/{intent_id}/confirm", response_model=list[OrderResponse]
)
@checkout_limit
async def confirm_payment(
    request: Request,
    intent_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Re-check a payment with the processor after the client reports success."""
    return await payment_ops.confirm_payment(
        workflow.require_gateway(), workflow, intent_id, actor
    )


@router.post("/orders/settle", response_model=list[OrderResponse])
@checkout_limit
async def settle_paid_intent(
    request: Request,
    payload: SettleRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Create the orders for an intent that has already been paid."""
    lines = [
        OrderLine(
            product_id=item.product_id,
            quantity=item.quantity,
            variant_id=item.variant_id,
        )
        for item in payload.items
    ]
    return await payment_ops.confirm_and_settle(
        workflow.require_gateway(),
        workflow,
        payload.payment_intent_id,
        lines,
        actor,
        shipping_cost=payload.shipping_cost,
        shipping_address_id=payload.shipping_address_id,
        billing_address_id=payload.billing_address_id,
    )


# ============================================================================
# ORDER HISTORY
# ============================================================================


@router.get("/orders", response_model=OrderListResponse)
async def list_my_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """List the current customer's orders, newest first."""
    orders, total = await workflow.list_user_orders(
        actor.user_id, page=page, limit=page_size, status=status
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Get one order with its status history."""
    return await workflow.get_order(order_id, actor)


@router.get("/vendor/orders", response_model=OrderListResponse)
async def list_vendor_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    actor: Actor = Depends(require_vendor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """List orders placed with the current vendor."""
    orders, total = await workflow.list_vendor_orders(
        actor.vendor_id, page=page, limit=page_size, status=status
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/vendor/orders/stats", response_model=OrderStatsResponse)
async def vendor_order_stats(
    actor: Actor = Depends(require_vendor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    return await workflow.order_stats(actor.vendor_id)


# ============================================================================
# TRANSITIONS
# ============================================================================


@router.put("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    payload: OrderStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Move an order along its status machine (owning vendor or admin)."""
    return await workflow.update_status(order_id, payload.status, actor, payload.notes)


@router.put("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    payload: OrderCancelRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Customer cancellation; refunds a captured payment and returns the stock."""
    return await workflow.cancel_order(order_id, actor, payload.reason)


@router.put("/orders/{order_id}/ship", response_model=OrderResponse)
async def ship_order(
    order_id: uuid.UUID,
    payload: OrderShipRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    return await workflow.ship_order(
        order_id, actor, payload.tracking_number, payload.notes
    )


@router.put("/orders/{order_id}/deliver", response_model=OrderResponse)
async def mark_delivered(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    return await workflow.mark_delivered(order_id, actor)
