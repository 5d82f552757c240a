from datetime import timedelta
from decimal import Decimal

import pytest

from bullion.db_models.order import Order
from bullion.services.supplier_gateway import OrderStatusSnapshot
from bullion.utils.dates import utcnow

INTERNAL_HEADERS = {"X-Internal-Api-Key": "internal-test-key"}


@pytest.fixture
def placed_order(db, account_id):
    order = Order(
        account_id=account_id,
        account_email="jane.doe@example.com",
        items=[{"itemId": "1001", "name": "1 oz American Gold Eagle", "quantity": 1, "totalPrice": 1020.0}],
        subtotal=Decimal("1020.00"),
        platform_gold_cost=Decimal("1000.00"),
        total_markup=Decimal("20.00"),
        processing_fee=Decimal("29.88"),
        total=Decimal("1049.88"),
        payment_id="pi_placed",
        payment_status="completed",
        status="submitted_to_supplier",
        supplier_order_id="5001",
        supplier_status="order_created",
        supplier_last_synced_at=utcnow() - timedelta(minutes=30),
    )
    db.add(order)
    db.commit()
    return order.id


def test_list_orders_only_shows_own_orders(client, auth_headers, other_auth_headers, placed_order):
    resp = client.get("/api/orders", headers=auth_headers)

    assert resp.status_code == 200
    orders = resp.json()["orders"]
    assert [o["id"] for o in orders] == [placed_order]
    assert orders[0]["total"] == 1049.88
    assert orders[0]["supplierStatusMessage"] == "Order placed with supplier"

    assert client.get("/api/orders", headers=other_auth_headers).json()["orders"] == []


def test_sync_status_for_own_order(client, auth_headers, placed_order, fake_gateway):
    fake_gateway.status_snapshot = OrderStatusSnapshot(
        id=5001, status="Fulfillment Complete", transaction_id="SO-5001", tracking_numbers=["1Z999"]
    )

    resp = client.post("/api/orders/sync-status", json={"orderId": placed_order}, headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "Fulfillment Complete"
    assert body["trackingNumbers"] == ["1Z999"]
    assert body["transactionId"] == "SO-5001"


def test_sync_status_for_someone_elses_order_is_404(client, other_auth_headers, placed_order, fake_gateway):
    resp = client.post("/api/orders/sync-status", json={"orderId": placed_order}, headers=other_auth_headers)

    assert resp.status_code == 404
    assert fake_gateway.status_calls == []


def test_batch_sync_requires_internal_key(client, placed_order, fake_gateway):
    assert client.get("/api/orders/sync-status").status_code == 403
    assert client.get("/api/orders/sync-status", headers={"X-Internal-Api-Key": "wrong"}).status_code == 403
    assert fake_gateway.status_calls == []


def test_batch_sync_disabled_without_configured_key(client, placed_order, monkeypatch):
    from bullion.config import settings

    monkeypatch.setattr(settings, "INTERNAL_API_KEY", None)
    assert client.get("/api/orders/sync-status", headers=INTERNAL_HEADERS).status_code == 403


def test_batch_sync_with_internal_key(client, placed_order, fake_gateway):
    resp = client.get("/api/orders/sync-status", headers=INTERNAL_HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["syncedCount"] == 1
    assert body["results"][0]["orderId"] == placed_order
    assert fake_gateway.status_calls == [5001]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
