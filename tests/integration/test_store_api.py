"""Integration tests for the store HTTP surface: catalog, cart, checkout,
order history and fulfilment."""

import uuid

import pytest
from services.payments_service.gateway import INTENT_SUCCEEDED
from tests.factories import UserFactory, auth_headers

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _add_to_cart(client, user, product, quantity=1):
    response = await client.post(
        "/store/cart/items",
        json={"product_id": str(product.id), "quantity": quantity},
        headers=auth_headers(user),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _checkout(client, user):
    response = await client.post(
        "/store/orders/checkout", json={}, headers=auth_headers(user)
    )
    assert response.status_code == 201, response.text
    return response.json()


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health_endpoints(store_client, identity_client, payments_client):
    for client, name in (
        (store_client, "store"),
        (identity_client, "identity"),
        (payments_client, "payments"),
    ):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": name}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_requests_without_token_are_rejected(store_client):
    response = await store_client.get("/store/cart")
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unprovisioned_user_is_forbidden(store_client):
    ghost = UserFactory.create()  # never persisted
    response = await store_client.get("/store/cart", headers=auth_headers(ghost))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_product_listing_is_cached_per_query(
    store_client, redis_client, make_vendor, make_product
):
    _, vendor = await make_vendor()
    await make_product(vendor, title="Blue Mug")
    await make_product(vendor, title="Desk Lamp")

    response = await store_client.get("/store/products", params={"search": "mug"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["items"][0]["title"] == "Blue Mug"
    assert any(key.startswith("search:") for key in redis_client.store)

    again = await store_client.get("/store/products", params={"search": "mug"})
    assert again.json() == body


@pytest.mark.asyncio
@pytest.mark.integration
async def test_product_detail_reports_stock_and_is_cached(
    store_client, redis_client, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor, stock=7)

    response = await store_client.get(f"/store/products/{product.id}")

    assert response.status_code == 200
    assert response.json()["quantity_available"] == 7
    assert f"product:{product.id}" in redis_client.store


@pytest.mark.asyncio
@pytest.mark.integration
async def test_missing_product_is_404(store_client):
    response = await store_client.get(f"/store/products/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_restock_invalidates_product_cache(
    store_client, redis_client, admin, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor, stock=1)
    await store_client.get(f"/store/products/{product.id}")
    assert f"product:{product.id}" in redis_client.store

    response = await store_client.post(
        f"/admin/store/inventory/{product.id}/restock",
        json={"quantity": 5},
        headers=auth_headers(admin),
    )

    assert response.status_code == 200, response.text
    assert response.json()["quantity_on_hand"] == 6
    assert f"product:{product.id}" not in redis_client.store


@pytest.mark.asyncio
@pytest.mark.integration
async def test_restock_requires_admin(store_client, customer, make_vendor, make_product):
    _, vendor = await make_vendor()
    product = await make_product(vendor)

    response = await store_client.post(
        f"/admin/store/inventory/{product.id}/restock",
        json={"quantity": 5},
        headers=auth_headers(customer),
    )

    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cart_add_merge_and_remove(store_client, customer, make_vendor, make_product):
    _, vendor = await make_vendor()
    product = await make_product(vendor)

    await _add_to_cart(store_client, customer, product, 2)
    cart = await _add_to_cart(store_client, customer, product, 3)

    assert len(cart["items"]) == 1
    assert cart["item_count"] == 5

    item_id = cart["items"][0]["id"]
    response = await store_client.delete(
        f"/store/cart/items/{item_id}", headers=auth_headers(customer)
    )
    assert response.status_code == 200
    assert response.json() == {"items": [], "item_count": 0}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cart_line_quantity_is_capped(
    store_client, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor)
    await _add_to_cart(store_client, customer, product, 60)

    response = await store_client.post(
        "/store/cart/items",
        json={"product_id": str(product.id), "quantity": 50},
        headers=auth_headers(customer),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_splits_cart_per_vendor(
    store_client, gateway, customer, make_vendor, make_product
):
    _, vendor_a = await make_vendor()
    _, vendor_b = await make_vendor()
    await _add_to_cart(store_client, customer, await make_product(vendor_a, price="10.00"))
    await _add_to_cart(store_client, customer, await make_product(vendor_b, price="20.00"))

    body = await _checkout(store_client, customer)

    assert len(body["orders"]) == 2
    assert {o["total"] for o in body["orders"]} == {"11.00", "22.00"}
    assert body["total"] == "33.00"
    assert gateway.intents[body["payment_intent_id"]].amount_minor == 3300
    assert body["client_secret"] == "secret_3300"

    cart = await store_client.get("/store/cart", headers=auth_headers(customer))
    assert cart.json()["item_count"] == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_empty_cart_is_400(store_client, customer):
    response = await store_client.post(
        "/store/orders/checkout", json={}, headers=auth_headers(customer)
    )

    assert response.status_code == 400
    assert response.json()["code"] == "EMPTY_CART"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_insufficient_stock_is_409(
    store_client, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor, stock=1)
    await _add_to_cart(store_client, customer, product, 2)

    response = await store_client.post(
        "/store/orders/checkout", json={}, headers=auth_headers(customer)
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INSUFFICIENT_STOCK"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_confirm_payment_after_processor_success(
    store_client, gateway, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    await _add_to_cart(store_client, customer, await make_product(vendor))
    intent_id = (await _checkout(store_client, customer))["payment_intent_id"]

    early = await store_client.post(
        f"/store/orders/payments/{intent_id}/confirm", headers=auth_headers(customer)
    )
    assert early.status_code == 409
    assert early.json()["code"] == "PAYMENT_NOT_SUCCEEDED"

    gateway.set_status(intent_id, INTENT_SUCCEEDED)
    response = await store_client.post(
        f"/store/orders/payments/{intent_id}/confirm", headers=auth_headers(customer)
    )

    assert response.status_code == 200
    assert [o["payment_status"] for o in response.json()] == ["completed"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_settle_creates_orders_for_paid_intent_once(
    store_client, gateway, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor, stock=5)
    intent = gateway.add_intent(1100, INTENT_SUCCEEDED)
    payload = {
        "payment_intent_id": intent.id,
        "items": [{"product_id": str(product.id), "quantity": 1}],
    }

    first = await store_client.post(
        "/store/orders/settle", json=payload, headers=auth_headers(customer)
    )
    second = await store_client.post(
        "/store/orders/settle", json=payload, headers=auth_headers(customer)
    )

    assert first.status_code == 200, first.text
    assert first.json()[0]["payment_status"] == "completed"
    assert [o["id"] for o in second.json()] == [o["id"] for o in first.json()]
    detail = await store_client.get(f"/store/products/{product.id}")
    assert detail.json()["quantity_available"] == 4


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_history_and_detail_visibility(
    store_client, db_session, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    await _add_to_cart(store_client, customer, await make_product(vendor))
    order = (await _checkout(store_client, customer))["orders"][0]
    stranger = UserFactory.create()
    db_session.add(stranger)
    await db_session.commit()

    listing = await store_client.get("/store/orders", headers=auth_headers(customer))
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["order_number"] == order["order_number"]

    detail = await store_client.get(
        f"/store/orders/{order['id']}", headers=auth_headers(customer)
    )
    assert detail.status_code == 200
    assert [h["status"] for h in detail.json()["status_history"]] == ["pending"]

    hidden = await store_client.get(
        f"/store/orders/{order['id']}", headers=auth_headers(stranger)
    )
    assert hidden.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_fulfils_and_customer_confirms_delivery(
    store_client, customer, make_vendor, make_product
):
    vendor_user, vendor = await make_vendor()
    await _add_to_cart(store_client, customer, await make_product(vendor))
    order_id = (await _checkout(store_client, customer))["orders"][0]["id"]
    vendor_auth = auth_headers(vendor_user)

    for status in ("confirmed", "processing"):
        response = await store_client.put(
            f"/store/orders/{order_id}/status", json={"status": status}, headers=vendor_auth
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == status

    shipped = await store_client.put(
        f"/store/orders/{order_id}/ship",
        json={"tracking_number": "1Z999"},
        headers=vendor_auth,
    )
    assert shipped.status_code == 200
    assert shipped.json()["tracking_number"] == "1Z999"

    too_late = await store_client.put(
        f"/store/orders/{order_id}/cancel", json={}, headers=auth_headers(customer)
    )
    assert too_late.status_code == 409

    delivered = await store_client.put(
        f"/store/orders/{order_id}/deliver", headers=auth_headers(customer)
    )
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "delivered"

    vendor_orders = await store_client.get("/store/vendor/orders", headers=vendor_auth)
    assert vendor_orders.json()["total"] == 1
    stats = await store_client.get("/store/vendor/orders/stats", headers=vendor_auth)
    assert stats.json()["completed_orders"] == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_skipping_a_status_is_409(store_client, customer, make_vendor, make_product):
    vendor_user, vendor = await make_vendor()
    await _add_to_cart(store_client, customer, await make_product(vendor))
    order_id = (await _checkout(store_client, customer))["orders"][0]["id"]

    response = await store_client.put(
        f"/store/orders/{order_id}/status",
        json={"status": "shipped"},
        headers=auth_headers(vendor_user),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_customer_cannot_use_vendor_routes(store_client, customer):
    response = await store_client.get("/store/vendor/orders", headers=auth_headers(customer))
    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_customer_cancel_returns_stock(
    store_client, customer, make_vendor, make_product
):
    _, vendor = await make_vendor()
    product = await make_product(vendor, stock=2)
    await _add_to_cart(store_client, customer, product, 2)
    order_id = (await _checkout(store_client, customer))["orders"][0]["id"]

    response = await store_client.put(
        f"/store/orders/{order_id}/cancel",
        json={"reason": "changed my mind"},
        headers=auth_headers(customer),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancellation_reason"] == "changed my mind"
    detail = await store_client.get(f"/store/products/{product.id}")
    assert detail.json()["quantity_available"] == 2
