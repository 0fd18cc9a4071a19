"""In-process stand-ins for the payment processor, Redis and the arq pool."""

import fnmatch
import itertools
import json
from typing import Optional

from libs.common.errors import InvalidSignatureError, PaymentGatewayError
from services.payments_service.gateway import (
    INTENT_CANCELED,
    PaymentGateway,
    PaymentIntent,
    Refund,
    Transfer,
    WebhookEvent,
)
from services.payments_service.stripe_client import verify_stripe_signature

WEBHOOK_SECRET = "whsec_stripe_test"


class FakeGateway(PaymentGateway):
    """Scripted processor. Intents start as `requires_payment_method`; tests
    move them with `set_status`."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[Refund] = []
        self.transfers: list[Transfer] = []
        self.cancelled: list[str] = []
        self.idempotency_keys: list[Optional[str]] = []
        self.fail_create: Optional[Exception] = None
        self.fail_transfer: Optional[Exception] = None

    def add_intent(self, amount_minor: int, status: str, currency: str = "usd") -> PaymentIntent:
        intent = PaymentIntent(
            id=f"pi_test_{next(self._ids)}",
            status=status,
            amount_minor=amount_minor,
            currency=currency,
            client_secret="secret",
        )
        self.intents[intent.id] = intent
        return intent

    def set_status(self, intent_id: str, status: str) -> None:
        intent = self.intents[intent_id]
        self.intents[intent_id] = PaymentIntent(
            id=intent.id,
            status=status,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            client_secret=intent.client_secret,
            metadata=intent.metadata,
        )

    async def create_intent(
        self,
        amount_minor,
        currency,
        metadata,
        payment_method=None,
        idempotency_key=None,
    ):
        if self.fail_create is not None:
            raise self.fail_create
        self.idempotency_keys.append(idempotency_key)
        intent = PaymentIntent(
            id=f"pi_test_{next(self._ids)}",
            status="requires_payment_method",
            amount_minor=amount_minor,
            currency=currency,
            client_secret=f"secret_{amount_minor}",
            metadata=dict(metadata),
        )
        self.intents[intent.id] = intent
        return intent

    async def retrieve_intent(self, intent_id):
        try:
            return self.intents[intent_id]
        except KeyError:
            raise PaymentGatewayError(f"No such payment_intent: {intent_id}")

    async def cancel_intent(self, intent_id):
        self.cancelled.append(intent_id)
        self.set_status(intent_id, INTENT_CANCELED)
        return self.intents[intent_id]

    async def create_refund(self, intent_id, amount_minor=None, idempotency_key=None):
        intent = await self.retrieve_intent(intent_id)
        refund = Refund(
            id=f"re_test_{len(self.refunds) + 1}",
            status="succeeded",
            amount_minor=intent.amount_minor if amount_minor is None else amount_minor,
            payment_intent_id=intent_id,
        )
        self.refunds.append(refund)
        self.idempotency_keys.append(idempotency_key)
        return refund

    async def create_transfer(self, destination, amount_minor, currency, metadata=None):
        if self.fail_transfer is not None:
            raise self.fail_transfer
        transfer = Transfer(
            id=f"tr_test_{len(self.transfers) + 1}",
            amount_minor=amount_minor,
            currency=currency,
            destination=destination,
        )
        self.transfers.append(transfer)
        return transfer

    def verify_webhook(self, payload, signature_header):
        verify_stripe_signature(payload, signature_header, WEBHOOK_SECRET, 300)
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignatureError("Webhook body is not JSON") from e
        return WebhookEvent(
            id=event["id"], type=event["type"], data=event["data"]["object"]
        )


class InMemoryRedis:
    """The subset of redis.asyncio.Redis the cache layer uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None


class RecordingPool:
    """Captures enqueue_job calls instead of talking to Redis."""

    def __init__(self):
        self.jobs: list[tuple[str, tuple, dict]] = []
        self.fail = False

    async def enqueue_job(self, name, *args, **kwargs):
        if self.fail:
            raise ConnectionError("queue down")
        self.jobs.append((name, args, kwargs))
        return object()

    def names(self) -> list[str]:
        return [name for name, _, _ in self.jobs]

    def of(self, name: str) -> list[tuple]:
        return [args for job, args, _ in self.jobs if job == name]

    async def aclose(self):
        return None
