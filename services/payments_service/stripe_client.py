"""
Stripe REST client implementing the payment gateway port.

Provides async methods for:
- Creating, retrieving and cancelling payment intents
- Refunding a captured intent
- Transferring funds to a vendor's connected account
- Verifying and parsing signed webhook deliveries
"""

import hashlib
import hmac
import json
import time
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.errors import InvalidSignatureError, PaymentGatewayError
from libs.common.logging import get_logger
from services.payments_service.gateway import (
    PaymentGateway,
    PaymentIntent,
    Refund,
    Transfer,
    WebhookEvent,
)

logger = get_logger(__name__)


def _form_encode(data: dict, prefix: str = "") -> dict:
    """Flatten nested dicts into Stripe's bracketed form keys."""
    encoded = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(_form_encode(value, name))
        elif isinstance(value, bool):
            encoded[name] = "true" if value else "false"
        else:
            encoded[name] = str(value)
    return encoded


def parse_signature_header(header: str) -> tuple[Optional[int], list[str]]:
    """Split `t=...,v1=...,v1=...` into the timestamp and the v1 signatures."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int,
    now: Optional[int] = None,
) -> None:
    """
    Check a Stripe-Signature header.

    The signed content is `{t}.{payload}` under HMAC-SHA256 with the endpoint
    secret; any v1 entry may match. Raises InvalidSignatureError.
    """
    if not header:
        raise InvalidSignatureError("Missing signature header")

    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        raise InvalidSignatureError("Malformed signature header")

    now = int(time.time()) if now is None else now
    if abs(now - timestamp) > tolerance:
        raise InvalidSignatureError("Signature timestamp outside tolerance")

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise InvalidSignatureError("Signature mismatch")


class StripeGateway(PaymentGateway):
    """Async client for the Stripe payment intent, refund and transfer APIs."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.base_url = (base_url or settings.STRIPE_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT
        self.tolerance = settings.WEBHOOK_TOLERANCE_SECONDS
        self._transport = transport
        self._headers = {"Authorization": f"Bearer {self.secret_key}"}

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Make an async request to the Stripe API."""
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    endpoint,
                    headers=headers,
                    data=_form_encode(data) if data else None,
                )
        except httpx.TimeoutException as e:
            logger.warning(f"Stripe request timed out: {method} {endpoint}")
            raise PaymentGatewayError(
                "Payment processor timed out", retryable=True
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Stripe unreachable: {method} {endpoint}: {e}")
            raise PaymentGatewayError(
                "Payment processor unreachable", retryable=True
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.is_success:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            logger.error(f"Stripe API error: {response.status_code} - {error}")
            raise PaymentGatewayError(
                error.get("message", "Payment processor request failed"),
                retryable=response.status_code >= 500 or response.status_code == 429,
                details={
                    "status_code": response.status_code,
                    "type": error.get("type"),
                    "code": error.get("code"),
                },
            )

        return body

    @staticmethod
    def _to_intent(data: dict) -> PaymentIntent:
        return PaymentIntent(
            id=data["id"],
            status=data.get("status", ""),
            amount_minor=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            client_secret=data.get("client_secret"),
            metadata=data.get("metadata") or {},
        )

    # =========================================================================
    # Payment intents
    # =========================================================================

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict,
        payment_method: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        data = await self._request(
            "POST",
            "/v1/payment_intents",
            data={
                "amount": amount_minor,
                "currency": currency,
                "metadata": metadata,
                "payment_method": payment_method,
                "automatic_payment_methods": {"enabled": True},
            },
            idempotency_key=idempotency_key,
        )
        intent = self._to_intent(data)
        logger.info(f"Created payment intent {intent.id} for {amount_minor} {currency}")
        return intent

    async def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        data = await self._request("GET", f"/v1/payment_intents/{intent_id}")
        return self._to_intent(data)

    async def cancel_intent(self, intent_id: str) -> PaymentIntent:
        data = await self._request("POST", f"/v1/payment_intents/{intent_id}/cancel")
        return self._to_intent(data)

    # =========================================================================
    # Refunds and transfers
    # =========================================================================

    async def create_refund(
        self,
        intent_id: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        data = await self._request(
            "POST",
            "/v1/refunds",
            data={"payment_intent": intent_id, "amount": amount_minor},
            idempotency_key=idempotency_key,
        )
        return Refund(
            id=data["id"],
            status=data.get("status", ""),
            amount_minor=int(data.get("amount", amount_minor or 0)),
            payment_intent_id=data.get("payment_intent", intent_id),
        )

    async def create_transfer(
        self,
        destination: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[dict] = None,
    ) -> Transfer:
        data = await self._request(
            "POST",
            "/v1/transfers",
            data={
                "amount": amount_minor,
                "currency": currency,
                "destination": destination,
                "metadata": metadata or {},
            },
        )
        return Transfer(
            id=data["id"],
            amount_minor=int(data.get("amount", amount_minor)),
            currency=data.get("currency", currency),
            destination=data.get("destination", destination),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            raise InvalidSignatureError("Webhook secret not configured")
        verify_stripe_signature(
            payload, signature_header, self.webhook_secret, self.tolerance
        )
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignatureError("Webhook body is not JSON") from e
        return WebhookEvent(
            id=event.get("id", ""),
            type=event.get("type", ""),
            data=(event.get("data") or {}).get("object") or {},
        )
