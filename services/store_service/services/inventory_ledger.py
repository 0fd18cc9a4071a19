"""Inventory ledger: the only writer of stock levels.

Every mutation is a single conditional UPDATE committed in its own short
transaction, so a reservation is durable (and visible to concurrent
checkouts) the moment it returns. Quantity never goes below zero: the
decrement only applies to rows that still hold enough stock.

Reservations are compensated with restore(), never with a rollback, since
the caller's order transaction is separate.
"""

import uuid
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.errors import InsufficientStockError, NotFoundError, ValidationError
from libs.common.logging import get_logger
from services.store_service.models import (
    InventoryItem,
    InventoryMovement,
    InventoryMovementType,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


def _stock_row(product_id: uuid.UUID, variant_id: Optional[uuid.UUID]):
    clauses = [InventoryItem.product_id == product_id]
    if variant_id is None:
        clauses.append(InventoryItem.variant_id.is_(None))
    else:
        clauses.append(InventoryItem.variant_id == variant_id)
    return clauses


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(
            f"Quantity must be a positive integer, got {quantity!r}",
            details={"quantity": quantity},
        )


class InventoryLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _apply(
        self,
        db: AsyncSession,
        product_id: uuid.UUID,
        variant_id: Optional[uuid.UUID],
        delta: int,
        movement_type: InventoryMovementType,
        reference: Optional[str],
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[int]:
        """Apply `delta` atomically. Returns the new level, or None if no row
        matched (missing item, or not enough stock for a decrement)."""
        conditions = _stock_row(product_id, variant_id)
        values = {
            "quantity_on_hand": InventoryItem.quantity_on_hand + delta,
            "updated_at": utc_now(),
        }
        if delta < 0:
            conditions.append(InventoryItem.quantity_on_hand >= -delta)
        if movement_type == InventoryMovementType.RESTOCK:
            values["last_restock_at"] = utc_now()

        result = await db.execute(
            update(InventoryItem)
            .where(*conditions)
            .values(**values)
            .returning(InventoryItem.quantity_on_hand)
            .execution_options(synchronize_session=False)
        )
        remaining = result.scalar_one_or_none()
        if remaining is None:
            return None

        db.add(
            InventoryMovement(
                product_id=product_id,
                variant_id=variant_id,
                movement_type=movement_type,
                quantity=delta,
                reference=reference,
                performed_by=performed_by,
                notes=notes,
            )
        )
        return remaining

    async def reserve(
        self,
        product_id: uuid.UUID,
        quantity: int,
        variant_id: Optional[uuid.UUID] = None,
        reference: Optional[str] = None,
    ) -> int:
        """Decrement stock by `quantity`. Returns the remaining quantity.

        Raises InsufficientStockError when fewer than `quantity` units are on
        hand (stock is left untouched) and NotFoundError when the product has
        no inventory record.
        """
        _require_positive(quantity)
        async with self.session_factory() as db:
            async with db.begin():
                remaining = await self._apply(
                    db,
                    product_id,
                    variant_id,
                    -quantity,
                    InventoryMovementType.RESERVATION,
                    reference,
                )
                if remaining is None:
                    available = await self._current_level(db, product_id, variant_id)
                    if available is None:
                        raise NotFoundError(
                            f"No inventory record for product {product_id}",
                            details={"product_id": str(product_id)},
                        )
                    raise InsufficientStockError(product_id, quantity, available)

        logger.info(
            "Reserved %d of product %s (remaining=%d, ref=%s)",
            quantity,
            product_id,
            remaining,
            reference,
        )
        return remaining

    async def restore(
        self,
        product_id: uuid.UUID,
        quantity: int,
        variant_id: Optional[uuid.UUID] = None,
        reference: Optional[str] = None,
    ) -> int:
        """Give back a previously reserved quantity. Returns the new level."""
        _require_positive(quantity)
        async with self.session_factory() as db:
            async with db.begin():
                level = await self._apply(
                    db,
                    product_id,
                    variant_id,
                    quantity,
                    InventoryMovementType.RELEASE,
                    reference,
                )
        if level is None:
            # The row was removed after the reservation was taken.
            logger.error(
                "Could not restore %d of product %s: no inventory record (ref=%s)",
                quantity,
                product_id,
                reference,
            )
            raise NotFoundError(
                f"No inventory record for product {product_id}",
                details={"product_id": str(product_id)},
            )
        logger.info(
            "Restored %d of product %s (level=%d, ref=%s)",
            quantity,
            product_id,
            level,
            reference,
        )
        return level

    async def restock(
        self,
        product_id: uuid.UUID,
        quantity: int,
        variant_id: Optional[uuid.UUID] = None,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
        low_stock_threshold: Optional[int] = None,
    ) -> int:
        """Add received stock, creating the inventory record on first intake."""
        _require_positive(quantity)
        async with self.session_factory() as db:
            async with db.begin():
                level = await self._apply(
                    db,
                    product_id,
                    variant_id,
                    quantity,
                    InventoryMovementType.RESTOCK,
                    reference=None,
                    performed_by=performed_by,
                    notes=notes,
                )
                if level is None:
                    item = InventoryItem(
                        product_id=product_id,
                        variant_id=variant_id,
                        quantity_on_hand=quantity,
                        last_restock_at=utc_now(),
                    )
                    if low_stock_threshold is not None:
                        item.low_stock_threshold = low_stock_threshold
                    db.add(item)
                    db.add(
                        InventoryMovement(
                            product_id=product_id,
                            variant_id=variant_id,
                            movement_type=InventoryMovementType.RESTOCK,
                            quantity=quantity,
                            performed_by=performed_by,
                            notes=notes,
                        )
                    )
                    level = quantity
                elif low_stock_threshold is not None:
                    await db.execute(
                        update(InventoryItem)
                        .where(*_stock_row(product_id, variant_id))
                        .values(low_stock_threshold=low_stock_threshold)
                        .execution_options(synchronize_session=False)
                    )

        logger.info("Restocked %d of product %s (level=%d)", quantity, product_id, level)
        return level

    async def get_available(
        self, product_id: uuid.UUID, variant_id: Optional[uuid.UUID] = None
    ) -> int:
        async with self.session_factory() as db:
            level = await self._current_level(db, product_id, variant_id)
        if level is None:
            raise NotFoundError(
                f"No inventory record for product {product_id}",
                details={"product_id": str(product_id)},
            )
        return level

    async def get_threshold(
        self, product_id: uuid.UUID, variant_id: Optional[uuid.UUID] = None
    ) -> Optional[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(InventoryItem.low_stock_threshold).where(
                    *_stock_row(product_id, variant_id)
                )
            )
            return result.scalars().first()

    @staticmethod
    async def _current_level(
        db: AsyncSession, product_id: uuid.UUID, variant_id: Optional[uuid.UUID]
    ) -> Optional[int]:
        result = await db.execute(
            select(InventoryItem.quantity_on_hand).where(
                *_stock_row(product_id, variant_id)
            )
        )
        return result.scalars().first()
