"""Pydantic schemas for store service."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.store_service.models import OrderStatus, PaymentStatus, ProductStatus

# ============================================================================
# PRODUCT SCHEMAS
# ============================================================================


class ProductVariantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sku: str
    name: Optional[str] = None
    price_override: Optional[Decimal] = None


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    vendor_id: uuid.UUID
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: Decimal
    status: ProductStatus
    created_at: datetime
    updated_at: datetime


class ProductDetail(ProductResponse):
    """Product with variants and live stock."""

    variants: list[ProductVariantResponse] = []
    quantity_available: Optional[int] = None


class ProductListResponse(BaseModel):
    """Paginated product list."""

    items: list[ProductResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


# ============================================================================
# INVENTORY SCHEMAS
# ============================================================================


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    variant_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class InventoryLevelResponse(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity_on_hand: int


# ============================================================================
# CART SCHEMAS
# ============================================================================


class CartItemCreate(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(1, gt=0, le=100)


class CartItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int


class CartResponse(BaseModel):
    items: list[CartItemResponse] = []
    item_count: int = 0


# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class CheckoutRequest(BaseModel):
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    idempotency_key: Optional[str] = Field(None, max_length=255)


class SettleLine(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(..., gt=0)


class SettleRequest(BaseModel):
    """Orders for an intent the client has already paid."""

    payment_intent_id: str
    items: list[SettleLine] = Field(..., min_length=1)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None


# ============================================================================
# ORDER SCHEMAS
# ============================================================================


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    product_title: str
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderStatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    notes: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    vendor_id: uuid.UUID
    status: OrderStatus
    payment_status: PaymentStatus

    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal

    payment_intent_id: Optional[str] = None
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None

    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    items: list[OrderItemResponse] = []


class OrderDetailResponse(OrderResponse):
    status_history: list[OrderStatusHistoryResponse] = []


class OrderListResponse(BaseModel):
    """Paginated order list."""

    items: list[OrderResponse]
    total: int
    page: int
    page_size: int


class CheckoutResponse(BaseModel):
    orders: list[OrderResponse]
    payment_intent_id: str
    client_secret: Optional[str] = None
    total: Decimal


class OrderStatusUpdate(BaseModel):
    """Vendor or admin status change."""

    status: OrderStatus
    notes: Optional[str] = None


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderShipRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = None


class OrderStatsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: Decimal
