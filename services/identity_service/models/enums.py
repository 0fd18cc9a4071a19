"""Enum definitions for identity service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class WebhookProvider(str, enum.Enum):
    IDENTITY = "identity"
    STRIPE = "stripe"
