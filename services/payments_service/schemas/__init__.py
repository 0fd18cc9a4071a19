"""Payments Service schemas package."""

from services.payments_service.schemas.main import (
    PayoutCreate,
    PayoutResponse,
    RefundRequest,
    RefundResponse,
    WebhookAck,
)

__all__ = [
    "PayoutCreate",
    "PayoutResponse",
    "RefundRequest",
    "RefundResponse",
    "WebhookAck",
]
