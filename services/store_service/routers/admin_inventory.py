"""Admin store inventory router."""

import uuid

from fastapi import APIRouter, Depends, Request
from libs.auth.models import Actor
from libs.common.backends import get_cache
from libs.common.cache import Cache
from libs.common.errors import NotFoundError
from libs.common.logging import get_logger
from libs.common.rate_limit import admin_limit
from libs.db.session import get_async_db
from services.identity_service.dependencies import require_admin
from services.store_service.dependencies import get_ledger
from services.store_service.models import Product
from services.store_service.schemas import InventoryLevelResponse, RestockRequest
from services.store_service.services.inventory_ledger import InventoryLedger
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["admin-store"])
logger = get_logger(__name__)


@router.post(
    "/inventory/{product_id}/restock", response_model=InventoryLevelResponse
)
@admin_limit
async def restock_product(
    request: Request,
    product_id: uuid.UUID,
    payload: RestockRequest,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    ledger: InventoryLedger = Depends(get_ledger),
    cache: Cache = Depends(get_cache),
):
    """Record received stock for a product (or one of its variants)."""
    if await db.get(Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found")

    level = await ledger.restock(
        product_id,
        payload.quantity,
        variant_id=payload.variant_id,
        performed_by=str(actor.user_id),
        notes=payload.notes,
        low_stock_threshold=payload.low_stock_threshold,
    )
    await cache.invalidate_product(product_id)
    logger.info(f"Admin {actor.user_id} restocked product {product_id} (+{payload.quantity})")
    return InventoryLevelResponse(
        product_id=product_id, variant_id=payload.variant_id, quantity_on_hand=level
    )
