"""Integration tests for the signed webhook endpoints and the payments admin
routes."""

import hashlib
import hmac
import json
import time

import pytest
from libs.common.config import get_settings
from services.identity_service.models import User
from services.identity_service.services.signing import sign
from services.payments_service.gateway import INTENT_SUCCEEDED
from services.store_service.models import PaymentStatus
from sqlalchemy import select
from tests.factories import CartItemFactory, actor_for, auth_headers
from tests.stubs import WEBHOOK_SECRET

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _identity_headers(body: bytes, message_id: str) -> dict:
    timestamp = int(time.time())
    return {
        "svix-id": message_id,
        "svix-timestamp": str(timestamp),
        "svix-signature": sign(
            get_settings().IDENTITY_WEBHOOK_SECRET, message_id, timestamp, body
        ),
        "content-type": "application/json",
    }


def _stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _stripe_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256
    ).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


async def _checked_out_order(workflow, db, customer, make_vendor, make_product, price="10.00"):
    _, vendor = await make_vendor()
    product = await make_product(vendor, price=price)
    db.add(CartItemFactory.create(user_id=customer.id, product_id=product.id, quantity=1))
    await db.commit()
    result = await workflow.checkout(actor_for(customer))
    return result.orders[0], vendor


# ---------------------------------------------------------------------------
# Identity webhook
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_identity_webhook_mirrors_user_once(identity_client, db_session):
    body = json.dumps(
        {
            "type": "user.created",
            "data": {
                "id": "user_from_hook",
                "first_name": "Grace",
                "primary_email_address_id": "idn_1",
                "email_addresses": [{"id": "idn_1", "email_address": "grace@example.com"}],
            },
        }
    ).encode()
    headers = _identity_headers(body, "msg_hook_1")

    first = await identity_client.post("/webhooks/identity", content=body, headers=headers)
    second = await identity_client.post("/webhooks/identity", content=body, headers=headers)

    assert first.status_code == 200, first.text
    assert first.json() == {"status": "processed", "event_id": "msg_hook_1"}
    assert second.json()["status"] == "duplicate"
    users = (
        await db_session.execute(select(User).where(User.external_id == "user_from_hook"))
    ).scalars().all()
    assert len(users) == 1
    assert users[0].email == "grace@example.com"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_identity_webhook_without_user_id_is_acknowledged(identity_client):
    body = json.dumps({"type": "user.created", "data": {"first_name": "Nobody"}}).encode()

    response = await identity_client.post(
        "/webhooks/identity", content=body, headers=_identity_headers(body, "msg_no_id")
    )

    assert response.status_code == 200, response.text
    assert response.json() == {"status": "ignored", "event_id": "msg_no_id"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_identity_webhook_rejects_bad_signature(identity_client):
    body = b'{"type":"user.created","data":{}}'
    headers = _identity_headers(body, "msg_hook_2")
    headers["svix-signature"] = "v1,AAAA"

    response = await identity_client.post("/webhooks/identity", content=body, headers=headers)

    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Stripe webhook
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_stripe_success_event_completes_payment_once(
    payments_client, workflow, db_session, customer, make_vendor, make_product
):
    order, _ = await _checked_out_order(
        workflow, db_session, customer, make_vendor, make_product
    )
    body = _stripe_event(
        "evt_ok", "payment_intent.succeeded", {"id": order.payment_intent_id}
    )

    first = await payments_client.post(
        "/payments/webhooks/stripe", content=body, headers=_stripe_headers(body)
    )
    second = await payments_client.post(
        "/payments/webhooks/stripe", content=body, headers=_stripe_headers(body)
    )

    assert first.status_code == 200, first.text
    assert first.json() == {"received": True, "status": "processed", "event_id": "evt_ok"}
    assert second.json()["status"] == "duplicate"
    [paid] = await workflow.orders_for_intent(order.payment_intent_id)
    assert paid.payment_status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_stripe_webhook_rejects_bad_signature(payments_client):
    body = _stripe_event("evt_bad", "payment_intent.succeeded", {"id": "pi_x"})

    response = await payments_client.post(
        "/payments/webhooks/stripe",
        content=body,
        headers=_stripe_headers(body, secret="whsec_wrong"),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
@pytest.mark.integration
async def test_partial_charge_refund_event_is_ignored(
    payments_client, workflow, db_session, customer, make_vendor, make_product
):
    order, _ = await _checked_out_order(
        workflow, db_session, customer, make_vendor, make_product
    )
    await workflow.apply_payment_status(order.payment_intent_id, PaymentStatus.COMPLETED)
    body = _stripe_event(
        "evt_partial",
        "charge.refunded",
        {"id": "ch_1", "payment_intent": order.payment_intent_id, "refunded": False},
    )

    response = await payments_client.post(
        "/payments/webhooks/stripe", content=body, headers=_stripe_headers(body)
    )

    assert response.json()["status"] == "ignored"
    [unchanged] = await workflow.orders_for_intent(order.payment_intent_id)
    assert unchanged.payment_status == PaymentStatus.COMPLETED


# ---------------------------------------------------------------------------
# Admin routes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_payout_to_vendor(payments_client, gateway, admin, make_vendor):
    _, vendor = await make_vendor()

    response = await payments_client.post(
        f"/payments/admin/vendors/{vendor.id}/payouts",
        json={"amount": "42.00"},
        headers=auth_headers(admin),
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "paid"
    assert body["amount"] == "42.00"
    assert body["destination"] == vendor.payout_account_id
    assert gateway.transfers[0].amount_minor == 4200


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payout_requires_admin(payments_client, customer, make_vendor):
    _, vendor = await make_vendor()

    response = await payments_client.post(
        f"/payments/admin/vendors/{vendor.id}/payouts",
        json={"amount": "1.00"},
        headers=auth_headers(customer),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_partial_and_full_refunds(
    payments_client, workflow, db_session, gateway, admin, customer, make_vendor, make_product
):
    partly, _ = await _checked_out_order(
        workflow, db_session, customer, make_vendor, make_product, price="20.00"
    )
    wholly, _ = await _checked_out_order(
        workflow, db_session, customer, make_vendor, make_product, price="20.00"
    )
    for order in (partly, wholly):
        gateway.set_status(order.payment_intent_id, INTENT_SUCCEEDED)
        await workflow.apply_payment_status(order.payment_intent_id, PaymentStatus.COMPLETED)

    partial = await payments_client.post(
        f"/payments/admin/orders/{partly.id}/refund",
        json={"amount": "5.00", "reason": "damaged box"},
        headers=auth_headers(admin),
    )
    assert partial.status_code == 200, partial.text
    assert partial.json()["amount"] == "5.00"
    assert partial.json()["payment_status"] == "completed"

    full = await payments_client.post(
        f"/payments/admin/orders/{wholly.id}/refund", json={}, headers=auth_headers(admin)
    )
    assert full.status_code == 200
    assert full.json()["amount"] == "22.00"
    assert full.json()["payment_status"] == "refunded"
    assert gateway.idempotency_keys[-2:] == [
        f"refund-order-{partly.id}-500",
        f"refund-order-{wholly.id}",
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_of_unpaid_order_is_400(
    payments_client, workflow, db_session, admin, customer, make_vendor, make_product
):
    order, _ = await _checked_out_order(
        workflow, db_session, customer, make_vendor, make_product
    )

    response = await payments_client.post(
        f"/payments/admin/orders/{order.id}/refund", json={}, headers=auth_headers(admin)
    )

    assert response.status_code == 400
