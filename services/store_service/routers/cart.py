"""Store cart router: the lines a checkout turns into orders."""

import uuid

from fastapi import APIRouter, Depends
from libs.auth.models import Actor
from libs.common.errors import NotFoundError, ValidationError
from libs.db.session import get_async_db
from services.identity_service.dependencies import get_current_actor
from services.store_service.models import CartItem, Product, ProductStatus, ProductVariant
from services.store_service.schemas import (
    CartItemCreate,
    CartItemResponse,
    CartResponse,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["store"])

MAX_LINE_QUANTITY = 100


async def _cart_items(db: AsyncSession, user_id: uuid.UUID) -> list[CartItem]:
    result = await db.execute(
        select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.created_at)
    )
    return list(result.scalars().unique().all())


def _cart_response(items: list[CartItem]) -> CartResponse:
    return CartResponse(
        items=[CartItemResponse.model_validate(i) for i in items],
        item_count=sum(i.quantity for i in items),
    )


@router.get("/cart", response_model=CartResponse)
async def get_cart(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    return _cart_response(await _cart_items(db, actor.user_id))


@router.post("/cart/items", response_model=CartResponse, status_code=201)
async def add_to_cart(
    item_data: CartItemCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Add a product to the cart, or increase the quantity of an existing line."""
    product = await db.get(Product, item_data.product_id)
    if product is None or product.status != ProductStatus.ACTIVE:
        raise NotFoundError("Product not found or unavailable")

    if item_data.variant_id:
        variant = await db.get(ProductVariant, item_data.variant_id)
        if variant is None or variant.product_id != product.id:
            raise NotFoundError("Variant not found")

    query = select(CartItem).where(
        CartItem.user_id == actor.user_id,
        CartItem.product_id == item_data.product_id,
    )
    if item_data.variant_id:
        query = query.where(CartItem.variant_id == item_data.variant_id)
    else:
        query = query.where(CartItem.variant_id.is_(None))
    existing = (await db.execute(query)).unique().scalar_one_or_none()

    quantity = item_data.quantity + (existing.quantity if existing else 0)
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationError(
            f"At most {MAX_LINE_QUANTITY} of one item per order",
            details={"quantity": quantity},
        )

    if existing:
        existing.quantity = quantity
    else:
        db.add(
            CartItem(
                user_id=actor.user_id,
                product_id=item_data.product_id,
                variant_id=item_data.variant_id,
                quantity=item_data.quantity,
            )
        )
    await db.commit()
    return _cart_response(await _cart_items(db, actor.user_id))


@router.delete("/cart/items/{item_id}", response_model=CartResponse)
async def remove_from_cart(
    item_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    item = await db.get(CartItem, item_id)
    if item is None or item.user_id != actor.user_id:
        raise NotFoundError("Cart item not found")
    await db.delete(item)
    await db.commit()
    return _cart_response(await _cart_items(db, actor.user_id))
