"""Unit tests for the Stripe adapter, driven through httpx.MockTransport."""

import hashlib
import hmac
import json
import time
from urllib.parse import parse_qs

import httpx
import pytest
from libs.common.errors import InvalidSignatureError, PaymentGatewayError
from services.payments_service.stripe_client import (
    StripeGateway,
    parse_signature_header,
    verify_stripe_signature,
)

SECRET = "whsec_unit"


def _gateway(handler) -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_123",
        webhook_secret=SECRET,
        base_url="https://stripe.test",
        transport=httpx.MockTransport(handler),
    )


def _stripe_header(payload: bytes, timestamp=None, secret=SECRET) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_intent_posts_form_encoded_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["key"] = request.headers.get("Idempotency-Key")
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "id": "pi_1",
                "status": "requires_payment_method",
                "amount": 2700,
                "currency": "usd",
                "client_secret": "pi_1_secret",
            },
        )

    intent = await _gateway(handler).create_intent(
        2700, "usd", {"user_id": "u1"}, idempotency_key="checkout-1"
    )

    assert intent.id == "pi_1"
    assert intent.amount_minor == 2700
    assert intent.client_secret == "pi_1_secret"
    assert seen["path"] == "/v1/payment_intents"
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["key"] == "checkout-1"
    assert seen["form"]["amount"] == ["2700"]
    assert seen["form"]["metadata[user_id]"] == ["u1"]
    assert seen["form"]["automatic_payment_methods[enabled]"] == ["true"]
    assert "payment_method" not in seen["form"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_partial_refund_sends_amount():
    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "id": "re_1",
                "status": "succeeded",
                "amount": int(form["amount"][0]),
                "payment_intent": form["payment_intent"][0],
            },
        )

    refund = await _gateway(handler).create_refund("pi_9", 450, idempotency_key="r-1")

    assert refund.amount_minor == 450
    assert refund.payment_intent_id == "pi_9"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_card_error_is_not_retryable():
    def handler(request):
        return httpx.Response(
            402,
            json={"error": {"type": "card_error", "code": "card_declined", "message": "Declined"}},
        )

    with pytest.raises(PaymentGatewayError) as exc_info:
        await _gateway(handler).retrieve_intent("pi_1")

    assert exc_info.value.message == "Declined"
    assert exc_info.value.retryable is False
    assert exc_info.value.details["code"] == "card_declined"


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_server_errors_are_retryable(status_code):
    def handler(request):
        return httpx.Response(status_code, json={"error": {"message": "try later"}})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await _gateway(handler).cancel_intent("pi_1")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transport_failures_are_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentGatewayError) as exc_info:
        await _gateway(handler).create_transfer("acct_1", 100, "usd")

    assert exc_info.value.retryable is True


@pytest.mark.unit
def test_gateway_requires_secret_key(monkeypatch):
    from libs.common.config import get_settings

    monkeypatch.setattr(get_settings(), "STRIPE_SECRET_KEY", None)
    with pytest.raises(ValueError):
        StripeGateway()


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_parse_signature_header():
    assert parse_signature_header("t=12,v1=abc,v0=old,v1=def") == (12, ["abc", "def"])
    assert parse_signature_header("t=notanumber,v1=abc") == (None, [])


@pytest.mark.unit
def test_verify_webhook_parses_event():
    payload = json.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
    ).encode()
    event = _gateway(lambda r: httpx.Response(200)).verify_webhook(
        payload, _stripe_header(payload)
    )

    assert event.id == "evt_1"
    assert event.type == "payment_intent.succeeded"
    assert event.data == {"id": "pi_1"}


@pytest.mark.unit
@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        "t=1",
        _stripe_header(b"{}", secret="whsec_other"),
    ],
)
def test_bad_signatures_are_rejected(header):
    with pytest.raises(InvalidSignatureError):
        verify_stripe_signature(b"{}", header, SECRET, 300)


@pytest.mark.unit
def test_old_timestamp_is_rejected():
    header = _stripe_header(b"{}", timestamp=int(time.time()) - 301)
    with pytest.raises(InvalidSignatureError):
        verify_stripe_signature(b"{}", header, SECRET, 300)
