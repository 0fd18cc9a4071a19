"""Payments Service models package."""

from services.payments_service.models.core import VendorPayout
from services.payments_service.models.enums import PayoutStatus

__all__ = ["PayoutStatus", "VendorPayout"]
