"""Payment gateway port.

Order and payment code depends on this interface only; StripeGateway is the
production adapter and tests substitute a scripted fake. Amounts crossing
this boundary are integer minor units.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request
from libs.common.config import get_settings

# Processor statuses the rest of the system reacts to.
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_PROCESSING = "processing"


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    amount_minor: int
    currency: str
    client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Refund:
    id: str
    status: str
    amount_minor: int
    payment_intent_id: str


@dataclass(frozen=True)
class Transfer:
    id: str
    amount_minor: int
    currency: str
    destination: str


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict


class PaymentGateway(ABC):
    """Abstract payment processor interface."""

    @abstractmethod
    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict,
        payment_method: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        ...

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> PaymentIntent:
        ...

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        ...

    @abstractmethod
    async def create_transfer(
        self,
        destination: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[dict] = None,
    ) -> Transfer:
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Authenticate a delivery and parse it. Raises InvalidSignatureError."""
        ...


def build_gateway() -> Optional[PaymentGateway]:
    """The configured processor adapter, or None when no API key is set."""
    from services.payments_service.stripe_client import StripeGateway

    if not get_settings().STRIPE_SECRET_KEY:
        return None
    return StripeGateway()


def get_payment_gateway(request: Request) -> Optional[PaymentGateway]:
    """FastAPI dependency: the gateway stored on app state by the lifespan."""
    return getattr(request.app.state, "payment_gateway", None)
