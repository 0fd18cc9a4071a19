"""Store Service models package."""

from services.store_service.models.catalog import Product, ProductVariant
from services.store_service.models.commerce import (
    CartItem,
    Order,
    OrderItem,
    OrderNumberSequence,
    OrderStatusHistory,
)
from services.store_service.models.enums import (
    InventoryMovementType,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
)
from services.store_service.models.inventory import InventoryItem, InventoryMovement

__all__ = [
    "CartItem",
    "InventoryItem",
    "InventoryMovement",
    "InventoryMovementType",
    "Order",
    "OrderItem",
    "OrderNumberSequence",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentStatus",
    "Product",
    "ProductStatus",
    "ProductVariant",
]
