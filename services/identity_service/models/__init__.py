"""Identity service models package."""

from services.identity_service.models.core import (
    CustomerProfile,
    ProcessedWebhookEvent,
    User,
    Vendor,
)
from services.identity_service.models.enums import UserRole, WebhookProvider

__all__ = [
    "CustomerProfile",
    "ProcessedWebhookEvent",
    "User",
    "UserRole",
    "Vendor",
    "WebhookProvider",
]
