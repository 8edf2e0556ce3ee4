from __future__ import annotations

import base64

import pytest
from fastapi import HTTPException

from settlement.core.security import MAC_SIZE, Actor, create_access_token, verify_access_token
from settlement.payments.gateway import GatewayErrorCode, PaymentGatewayError


def _checkout(client, headers, product_id: str, address: dict, quantity: int = 2) -> dict:
    added = client.post("/cart/items", json={"product_id": product_id, "quantity": quantity}, headers=headers)
    assert added.status_code == 201, added.text
    created = client.post("/orders", json={"shipping_address": address}, headers=headers)
    assert created.status_code == 201, created.text
    return created.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_credentials_are_required(client):
    assert client.get("/cart").status_code == 401
    assert client.get("/cart", headers={"Authorization": "Bearer not-a-token"}).status_code == 401
    assert client.get("/cart", headers={"X-API-Key": "wrong"}).status_code == 401


def test_roles_are_enforced(client, auth_headers, customer_headers):
    assert client.get("/disputes", headers=customer_headers).status_code == 403
    assert client.get("/ledger/retailers/any/entries", headers=customer_headers).status_code == 403
    assert client.get("/cart", headers=auth_headers["admin"]).status_code == 403
    assert client.get("/disputes", headers=auth_headers["system"]).status_code == 200


def test_token_round_trip_and_tampering():
    actor = Actor(type="customer", id="cust-token")
    token = create_access_token(actor)
    assert verify_access_token(token) == actor

    raw = base64.urlsafe_b64decode(token.encode("ascii"))
    body, mac = raw[:-MAC_SIZE], raw[-MAC_SIZE:]
    promoted = body.replace(b'"customer"', b'"admin"')
    forged = base64.urlsafe_b64encode(promoted + mac).decode("ascii")
    with pytest.raises(HTTPException) as exc:
        verify_access_token(forged)
    assert exc.value.status_code == 401

    with pytest.raises(HTTPException):
        verify_access_token(create_access_token(actor, ttl_seconds=-10))


def test_request_validation_errors(client, customer_headers, catalog, shipping_address):
    product_id = catalog.product(catalog.retailer(), price_fils=10_000)

    fractional = client.post("/cart/items", json={"product_id": product_id, "quantity": 1.5}, headers=customer_headers)
    assert fractional.status_code == 422
    too_many = client.post("/cart/items", json={"product_id": product_id, "quantity": 51}, headers=customer_headers)
    assert too_many.status_code == 422

    address = dict(shipping_address, planet="Mars")
    assert client.post("/orders", json={"shipping_address": address}, headers=customer_headers).status_code == 422


def test_empty_cart_and_stock_errors(client, customer_headers, catalog, shipping_address):
    empty = client.post("/orders", json={"shipping_address": shipping_address}, headers=customer_headers)
    assert empty.status_code == 400
    assert empty.json()["error"] == "EMPTY_CART"

    product_id = catalog.product(catalog.retailer(), price_fils=10_000, stock=1)
    over = client.post("/cart/items", json={"product_id": product_id, "quantity": 2}, headers=customer_headers)
    assert over.status_code == 409
    assert over.json()["error"] == "INSUFFICIENT_STOCK"


def test_order_payment_and_dispute_flow(client, customer_headers, auth_headers, catalog, shipping_address, tracker):
    retailer_id = catalog.retailer()
    order = _checkout(client, customer_headers, catalog.product(retailer_id, price_fils=10_000), shipping_address)
    assert order["total_fils"] == 25_000
    assert client.get("/cart", headers=customer_headers).json()["items"] == []

    paid = client.post(
        f"/orders/{order['id']}/payments",
        json={"method": "CARD", "token": "tok_visa", "customer_email": "layla@example.com"},
        headers=customer_headers,
    )
    assert paid.status_code == 200, paid.text
    assert paid.json()["order_status"] == "PAID"

    again = client.post(
        f"/orders/{order['id']}/payments", json={"method": "CARD", "token": "tok_visa"}, headers=customer_headers
    )
    assert again.status_code == 409
    assert "PAID" in again.json()["detail"]

    detail = client.get(f"/orders/{order['id']}", headers=customer_headers).json()
    assert detail["status"] == "PAID"
    listed = client.get("/orders", headers=customer_headers).json()
    assert [item["id"] for item in listed["items"]] == [order["id"]]

    opened = client.post(
        "/disputes",
        json={"order_id": order["id"], "reason": "DAMAGED", "description": "Both chairs arrived scratched."},
        headers=customer_headers,
    )
    assert opened.status_code == 201, opened.text
    ticket_id = opened.json()["id"]

    duplicate = client.post(
        "/disputes",
        json={"order_id": order["id"], "reason": "DAMAGED", "description": "Both chairs arrived scratched."},
        headers=customer_headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DUPLICATE_DISPUTE"

    resolved = client.post(
        f"/disputes/{ticket_id}/resolve",
        json={"resolution": "PARTIAL_REFUND", "refund_amount_fils": 5_000},
        headers=auth_headers["admin"],
    )
    assert resolved.status_code == 200, resolved.text
    assert resolved.json()["order_status"] == "PAID"

    statement = client.get(f"/ledger/retailers/{retailer_id}/statement", headers=auth_headers["admin"]).json()
    assert statement["commission_fils"] == 2_400
    assert statement["refund_adjustment_fils"] == -3_520

    report = client.get(f"/reconciliation/orders/{order['id']}", headers=auth_headers["admin"]).json()
    assert report["passed"]
    assert {"order.created", "order.paid", "dispute.created", "dispute.resolved"} <= set(tracker.names())


def test_payment_failures_map_to_402_and_502(client, customer_headers, catalog, shipping_address, gateway):
    order = _checkout(client, customer_headers, catalog.product(catalog.retailer(), price_fils=10_000), shipping_address)
    url = f"/orders/{order['id']}/payments"

    gateway.authorize_status = "Declined"
    declined = client.post(url, json={"method": "CARD", "token": "tok_bad"}, headers=customer_headers)
    assert declined.status_code == 402
    assert declined.json()["gateway_code"] == "DECLINED"

    gateway.authorize_status = "Captured"
    gateway.authorize_error = PaymentGatewayError("connection reset", GatewayErrorCode.NETWORK_ERROR)
    outage = client.post(url, json={"method": "CARD", "token": "tok_visa"}, headers=customer_headers)
    assert outage.status_code == 502
    assert outage.json()["gateway_code"] == "NETWORK_ERROR"

    gateway.authorize_error = None
    paid = client.post(url, json={"method": "CARD", "token": "tok_visa"}, headers=customer_headers)
    assert paid.json()["order_status"] == "PAID"


def test_admin_fulfilment_and_refund_failure(client, customer_headers, auth_headers, catalog, shipping_address, gateway):
    order = _checkout(client, customer_headers, catalog.product(catalog.retailer(), price_fils=10_000), shipping_address)
    client.post(f"/orders/{order['id']}/payments", json={"method": "CARD", "token": "t"}, headers=customer_headers)

    forbidden = client.post(f"/orders/{order['id']}/advance", json={"status": "PROCESSING"}, headers=customer_headers)
    assert forbidden.status_code == 403
    advanced = client.post(
        f"/orders/{order['id']}/advance", json={"status": "PROCESSING"}, headers=auth_headers["admin"]
    )
    assert advanced.status_code == 200, advanced.text

    gateway.refund_error = PaymentGatewayError("refund window closed", GatewayErrorCode.NOT_REFUNDABLE)
    failed = client.post(f"/orders/{order['id']}/refund", json={"reason": "late"}, headers=customer_headers)
    assert failed.status_code == 502
    assert failed.json()["gateway_code"] == "NOT_REFUNDABLE"

    gateway.refund_error = None
    refunded = client.post(f"/orders/{order['id']}/refund", headers=customer_headers)
    assert refunded.status_code == 200, refunded.text
    assert refunded.json()["order_status"] == "REFUNDED"

    cancelled = client.post(f"/orders/{order['id']}/cancel", headers=customer_headers)
    assert cancelled.status_code == 409


def test_statement_period_must_be_well_formed(client, auth_headers):
    bad = client.get("/ledger/retailers/any/statement", params={"period": "2026-01-01"}, headers=auth_headers["admin"])
    assert bad.status_code == 400
    empty = client.get(
        "/ledger/retailers/any/statement",
        params={"period": "2026-01-01T00:00:00Z/2026-02-01T00:00:00Z"},
        headers=auth_headers["admin"],
    )
    assert empty.status_code == 200
    assert empty.json()["entry_count"] == 0
