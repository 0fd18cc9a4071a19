import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.payments_service.models import PayoutStatus
from services.store_service.models import PaymentStatus


class PayoutCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    order_ids: list[uuid.UUID] = Field(default_factory=list)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    vendor_id: uuid.UUID
    amount: Decimal
    currency: str
    order_ids: list[str] = []
    destination: str
    transfer_id: Optional[str] = None
    status: PayoutStatus
    failure_reason: Optional[str] = None
    initiated_by: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    """Omit `amount` to refund the order's full total."""

    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseModel):
    refund_id: str
    order_id: uuid.UUID
    payment_intent_id: str
    amount: Decimal
    status: str
    payment_status: PaymentStatus


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: Optional[str] = None
