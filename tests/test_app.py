from __future__ import annotations

import re

import pytest
from fastapi.testclient import TestClient

from pos_order_service.app import create_app

STAFF = {"X-API-Key": "test-key", "X-User-Id": "2", "X-User-Role": "staff"}
CASHIER = {"X-API-Key": "test-key", "X-User-Id": "3", "X-User-Role": "cashier"}
OWNER = {"X-API-Key": "test-key", "X-User-Id": "1", "X-User-Role": "owner"}

VALID_ORDER = {
    "items": [
        {"id": "m-1", "name": "Pad Thai", "priceTHB": 199, "quantity": 1},
        {"id": "m-2", "name": "Tom Yum", "priceTHB": 249, "quantity": 1},
    ],
    "total": 448,
}


@pytest.fixture()
def client(connection_factory, monkeypatch):
    monkeypatch.setenv("API_KEY", "test-key")
    monkeypatch.delenv("GUEST_USER_ID", raising=False)
    return TestClient(create_app(connection_factory))


def count_rows(connection_factory, table):
    conn = connection_factory()
    try:
        return conn.execute(f"SELECT COUNT(1) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_menu_lists_seeded_items(client):
    response = client.get("/menu")
    assert response.status_code == 200
    menu = response.json()
    assert len(menu) == 9
    assert menu[0] == {
        "id": "m-1",
        "name": "Pad Thai",
        "priceTHB": 199.0,
        "imageUrl": "https://picsum.photos/seed/padthai/400/300",
    }


def test_guest_order_created(client):
    response = client.post("/orders/guest", json={**VALID_ORDER, "tableCode": "T-04"})

    assert response.status_code == 201
    body = response.json()
    assert body["id"]
    assert body["total"] == 448
    assert body["subtotal"] == 448
    assert body["status"] == "PENDING"
    assert body["tableCode"] == "T-04"
    assert body["createdBy"] == 0


def test_guest_order_total_mismatch(client):
    response = client.post(
        "/orders/guest",
        json={"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": 99, "quantity": 2}], "total": 1},
    )
    assert response.status_code == 400
    assert "total does not match" in response.json()["error"]


def test_guest_order_price_tamper(client):
    response = client.post(
        "/orders/guest",
        json={"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": 99, "quantity": 1}], "total": 99},
    )
    assert response.status_code == 400
    assert re.search(r"Price mismatch|Item not found", response.json()["error"])


def test_guest_order_idempotent_replay(client, connection_factory):
    headers = {"Idempotency-Key": "table-4-cart-7f3a"}
    first = client.post("/orders/guest", json=VALID_ORDER, headers=headers)
    second = client.post("/orders/guest", json=VALID_ORDER, headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert count_rows(connection_factory, "orders") == 1


def test_guest_order_idempotency_conflict(client, connection_factory):
    headers = {"Idempotency-Key": "table-4-cart-7f3a"}
    client.post("/orders/guest", json=VALID_ORDER, headers=headers)
    changed = {**VALID_ORDER, "tableCode": "T-09"}
    response = client.post("/orders/guest", json=changed, headers=headers)

    assert response.status_code == 409
    assert response.json() == {"error": "Idempotency key conflict: request body differs"}
    assert count_rows(connection_factory, "orders") == 1


def test_guest_order_with_invalid_key_is_not_deduplicated(client, connection_factory):
    headers = {"Idempotency-Key": "not a valid key!"}
    client.post("/orders/guest", json=VALID_ORDER, headers=headers)
    client.post("/orders/guest", json=VALID_ORDER, headers=headers)
    assert count_rows(connection_factory, "orders") == 2


@pytest.mark.parametrize(
    "payload",
    [
        {"items": [], "total": 10},
        {"items": VALID_ORDER["items"], "total": 0},
        {"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": 199, "quantity": 0}], "total": 199},
        {"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": -1, "quantity": 1}], "total": 1},
        {"items": [VALID_ORDER["items"][0]] * 51, "total": 199 * 51},
        {"total": 448},
        {"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": 1e30, "quantity": 1}], "total": 1e30},
        {"items": [{"id": "m-1", "name": "Pad Thai", "priceTHB": 199, "quantity": 10**27}], "total": 199},
        {"items": VALID_ORDER["items"], "total": 1e30},
        {"items": VALID_ORDER["items"], "total": 10_000_000_000},
    ],
)
def test_malformed_body_is_a_bad_request(client, payload):
    response = client.post("/orders/guest", json=payload)
    assert response.status_code == 400
    assert isinstance(response.json()["error"], str)


def test_non_finite_amounts_are_a_bad_request(client, connection_factory):
    body = '{"items":[{"id":"m-1","name":"Pad Thai","priceTHB":Infinity,"quantity":1}],"total":Infinity}'
    response = client.post("/orders/guest", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert isinstance(response.json()["error"], str)
    assert count_rows(connection_factory, "orders") == 0


@pytest.mark.parametrize(
    "item_id, error",
    [
        ("m-١", "Invalid item ID: m-١"),
        ("m-99999999999999999999", "Item not found: m-99999999999999999999"),
    ],
)
def test_unusable_item_id_is_a_bad_request(client, item_id, error):
    payload = {"items": [{"id": item_id, "name": "Pad Thai", "priceTHB": 199, "quantity": 1}], "total": 199}
    response = client.post("/orders/guest", json=payload)
    assert response.status_code == 400
    assert response.json() == {"error": error}


def test_guest_order_is_audited(client, connection_factory):
    client.post("/orders/guest", json=VALID_ORDER)
    assert count_rows(connection_factory, "audit_logs") == 1


def test_staff_order_requires_api_key(client):
    response = client.post("/orders", json=VALID_ORDER)
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_staff_order_rejects_wrong_role(client):
    response = client.post("/orders", json=VALID_ORDER, headers=OWNER)
    assert response.status_code == 403
    assert response.json() == {"error": "Insufficient permissions"}


def test_staff_order_created_by_cashier(client):
    response = client.post("/orders", json=VALID_ORDER, headers=CASHIER)
    assert response.status_code == 201
    body = response.json()
    assert body["total"] == 448
    assert body["createdBy"] == 3


def test_staff_order_ignores_idempotency_key(client, connection_factory):
    headers = {**CASHIER, "Idempotency-Key": "cashier-1"}
    client.post("/orders", json=VALID_ORDER, headers=headers)
    client.post("/orders", json=VALID_ORDER, headers=headers)
    assert count_rows(connection_factory, "orders") == 2


def test_list_and_get_orders(client):
    created = client.post("/orders/guest", json=VALID_ORDER).json()

    listing = client.get("/orders", headers=OWNER)
    assert listing.status_code == 200
    assert [order["id"] for order in listing.json()["orders"]] == [created["id"]]

    fetched = client.get(f"/orders/{created['id']}", headers=CASHIER)
    assert fetched.status_code == 200
    assert fetched.json() == created


def test_list_orders_requires_auth(client):
    assert client.get("/orders").status_code == 401


def test_get_unknown_order(client):
    response = client.get("/orders/nope", headers=STAFF)
    assert response.status_code == 404
    assert response.json() == {"error": "Order not found"}


def test_update_order_status(client, connection_factory):
    created = client.post("/orders/guest", json=VALID_ORDER).json()

    response = client.patch(f"/orders/{created['id']}/status", json={"status": "CONFIRMED"}, headers=STAFF)
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"
    assert response.json()["total"] == 448
    assert count_rows(connection_factory, "audit_logs") == 2


def test_update_order_status_validation(client):
    created = client.post("/orders/guest", json=VALID_ORDER).json()

    bad = client.patch(f"/orders/{created['id']}/status", json={"status": "EATEN"}, headers=STAFF)
    assert bad.status_code == 400

    missing = client.patch("/orders/nope/status", json={"status": "COMPLETED"}, headers=STAFF)
    assert missing.status_code == 404

    cashier = client.patch(f"/orders/{created['id']}/status", json={"status": "COMPLETED"}, headers=CASHIER)
    assert cashier.status_code == 403


def test_metrics_exposed(client):
    client.post("/orders/guest", json=VALID_ORDER)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "orders_created_total" in response.text
    assert "idempotency_requests_total" in response.text
