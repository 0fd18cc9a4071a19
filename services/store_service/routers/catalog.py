"""Store catalog router: cached product reads."""

import math
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from libs.common.backends import get_cache
from libs.common.cache import Cache
from libs.common.errors import NotFoundError
from libs.db.session import get_async_db
from services.store_service.dependencies import get_ledger
from services.store_service.models import Product, ProductStatus
from services.store_service.schemas import (
    ProductDetail,
    ProductListResponse,
    ProductResponse,
)
from services.store_service.services.inventory_ledger import InventoryLedger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

router = APIRouter(tags=["store"])


@router.get("/products", response_model=ProductListResponse)
async def list_products(
    category: Optional[str] = None,
    vendor_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_async_db),
    cache: Cache = Depends(get_cache),
):
    """List active products. Results are cached per normalized query."""
    params = {
        "category": category,
        "vendor_id": str(vendor_id) if vendor_id else None,
        "search": search,
        "page": page,
        "page_size": page_size,
    }

    async def load():
        query = select(Product).where(Product.status == ProductStatus.ACTIVE)
        if category:
            query = query.where(Product.category == category)
        if vendor_id:
            query = query.where(Product.vendor_id == vendor_id)
        if search:
            query = query.where(Product.title.ilike(f"%{search}%"))

        total = (
            await db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar_one()
        result = await db.execute(
            query.order_by(Product.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return ProductListResponse(
            items=[ProductResponse.model_validate(p) for p in result.scalars().all()],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        ).model_dump(mode="json")

    return await cache.read_through(
        lambda: cache.get_search(params),
        load,
        lambda value: cache.set_search(params, value),
    )


@router.get("/products/{product_id}", response_model=ProductDetail)
async def get_product(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    cache: Cache = Depends(get_cache),
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Get product detail with variants and current stock."""

    async def load():
        result = await db.execute(
            select(Product)
            .where(Product.id == product_id, Product.status == ProductStatus.ACTIVE)
            .options(selectinload(Product.variants))
        )
        product = result.scalar_one_or_none()
        if product is None:
            return None
        detail = ProductDetail.model_validate(product)
        try:
            detail.quantity_available = await ledger.get_available(product.id)
        except NotFoundError:
            detail.quantity_available = None
        return detail.model_dump(mode="json")

    product = await cache.read_through(
        lambda: cache.get_product(product_id),
        load,
        lambda value: cache.set_product(product_id, value),
    )
    if product is None:
        raise NotFoundError(
            f"Product {product_id} not found", details={"product_id": str(product_id)}
        )
    return product
