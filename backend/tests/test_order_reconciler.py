from datetime import timedelta
from decimal import Decimal

import pytest

from bullion.db_models.order import Order
from bullion.services.errors import InvalidInput, UpstreamUnavailable
from bullion.services.order_reconciler import (
    PaymentSnapshot,
    normalize_supplier_status,
    status_message,
)
from bullion.services.supplier_gateway import OrderStatusSnapshot, PollResult, SubmissionResult
from bullion.utils.dates import utcnow


@pytest.fixture
def make_order(db, account_id):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        values = {
            "account_id": account_id,
            "account_email": "jane.doe@example.com",
            "items": [{"itemId": "1001", "quantity": 1, "pricing": {"finalPrice": 1020.0}, "totalPrice": 1020.0}],
            "subtotal": Decimal("1020.00"),
            "platform_gold_cost": Decimal("1000.00"),
            "total_markup": Decimal("20.00"),
            "processing_fee": Decimal("29.88"),
            "total": Decimal("1049.88"),
            "shipping_address": {"fullName": "Jane Doe", "city": "Austin"},
            "payment_id": f"pi_order_{counter['n']}",
            "payment_status": "completed",
            "status": "pending_fulfillment",
        }
        values.update(overrides)
        order = Order(**values)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


def test_normalize_supplier_status():
    assert normalize_supplier_status("Pending Fulfillment") == "pending_fulfillment"
    assert normalize_supplier_status("On Hold - Contact Desk") == "on_hold_contact_desk"
    assert normalize_supplier_status(None) is None


def test_status_message():
    assert status_message("Fulfillment Complete") == "Order shipped"
    assert status_message(None) == "Processing"
    assert status_message("Something New") == "Something New"


def test_snapshot_from_payment_intent():
    snapshot = PaymentSnapshot.from_payment_intent(
        {
            "id": "pi_1",
            "amount": 102500,
            "amount_received": 102500,
            "payment_method_types": ["us_bank_account"],
            "metadata": {"userId": "jane_doe_example_com", "userEmail": "jane.doe@example.com"},
        }
    )

    assert snapshot.amount_received == Decimal("1025")
    assert snapshot.account_id == "jane_doe_example_com"
    assert snapshot.payment_method_type == "us_bank_account"


@pytest.mark.asyncio
async def test_handle_payment_succeeded_is_idempotent(db, reconciler, fill_cart, account_id, fake_gateway):
    fill_cart(account_id)
    payment = PaymentSnapshot(
        payment_id="pi_direct",
        amount_received=Decimal("1049.88"),
        account_id=account_id,
        email="jane.doe@example.com",
        metadata={"shippingAddress": '{"city": "Austin"}', "processingFee": "29.88"},
    )

    first = await reconciler.handle_payment_succeeded(db, payment)
    second = await reconciler.handle_payment_succeeded(db, payment)

    assert first.id == second.id
    assert db.query(Order).count() == 1
    assert len(fake_gateway.submitted) == 1


@pytest.mark.asyncio
async def test_concurrent_delivery_falls_back_to_existing_order(
    db, reconciler, make_order, fill_cart, account_id, fake_gateway, monkeypatch
):
    # Another delivery of the same event inserted its order between our lookup and our insert.
    winner = make_order(payment_id="pi_race")
    fill_cart(account_id)
    lookups = []
    real_find = reconciler.find_by_payment

    def racing_find(session, payment_id):
        lookups.append(payment_id)
        if len(lookups) == 1:
            return None
        return real_find(session, payment_id)

    monkeypatch.setattr(reconciler, "find_by_payment", racing_find)
    payment = PaymentSnapshot(
        payment_id="pi_race",
        amount_received=Decimal("1049.88"),
        account_id=account_id,
        email="jane.doe@example.com",
        metadata={"shippingAddress": '{"city": "Austin"}', "processingFee": "29.88"},
    )

    order = await reconciler.handle_payment_succeeded(db, payment)

    assert order.id == winner.id
    assert lookups == ["pi_race", "pi_race"]
    assert db.query(Order).count() == 1
    assert fake_gateway.submitted == []


@pytest.mark.asyncio
async def test_payment_without_metadata_creates_no_order(db, reconciler):
    payment = PaymentSnapshot(payment_id="pi_anon", amount_received=Decimal("10"), account_id=None, email=None)

    assert await reconciler.handle_payment_succeeded(db, payment) is None
    assert db.query(Order).count() == 0


@pytest.mark.asyncio
async def test_quote_mode_submission_records_handle(db, reconciler, make_order, fake_gateway):
    fake_gateway.submit_result = SubmissionResult(success=True, mode="quote", handle="q-77")
    order = make_order()

    await reconciler.submit_to_supplier(db, order)

    assert order.status == "submitted_to_supplier"
    assert order.supplier_handle == "q-77"
    assert order.supplier_order_id is None
    assert order.supplier_status == "quote_created"
    assert order.supplier_mode == "quote"


@pytest.mark.asyncio
async def test_rejected_submission_marks_supplier_error(db, reconciler, make_order, fake_gateway):
    fake_gateway.submit_result = SubmissionResult(success=False, mode="order", error="Invalid shipping address")
    order = make_order()

    await reconciler.submit_to_supplier(db, order)

    assert order.status == "supplier_error"
    assert order.supplier_status == "failed"
    assert order.supplier_error == "Invalid shipping address"
    assert order.payment_status == "completed"


@pytest.mark.asyncio
async def test_already_linked_order_is_not_resubmitted(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_order_id="5001", status="submitted_to_supplier")

    await reconciler.submit_to_supplier(db, order)

    assert fake_gateway.submitted == []


@pytest.mark.asyncio
async def test_retry_links_order_that_reached_supplier(db, reconciler, make_order, fake_gateway):
    order = make_order(status="supplier_error", supplier_status="failed", supplier_error="timeout")
    fake_gateway.search_results = [
        OrderStatusSnapshot(id=6001, status="Pending Fulfillment", transaction_id="SO-6001")
    ]

    result = await reconciler.sync_order(db, order)

    assert result["synced"] is True
    assert fake_gateway.searches == [{"customer_reference_number": order.id}]
    assert fake_gateway.submitted == []
    assert order.supplier_order_id == "6001"
    assert order.supplier_status == "pending_fulfillment"
    assert order.status == "submitted_to_supplier"
    assert order.supplier_error is None


@pytest.mark.asyncio
async def test_sync_by_order_id_updates_tracking(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_order_id="5001", supplier_status="order_created", status="submitted_to_supplier")
    fake_gateway.status_snapshot = OrderStatusSnapshot(
        id=5001,
        status="Fulfillment Complete",
        transaction_id="SO-5001",
        tracking_numbers=["1Z999AA10123456784"],
        item_fulfillments=[{"itemId": 1001, "quantity": 1}],
    )

    result = await reconciler.sync_order(db, order)

    assert fake_gateway.status_calls == [5001]
    assert result["statusMessage"] == "Order shipped"
    assert result["trackingNumbers"] == ["1Z999AA10123456784"]
    assert order.status == "shipped"
    assert order.supplier_status == "fulfillment_complete"
    assert order.tracking_numbers == ["1Z999AA10123456784"]
    assert order.supplier_last_synced_at is not None


@pytest.mark.asyncio
async def test_cancelled_upstream_cancels_order(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_order_id="5001", supplier_status="order_created", status="submitted_to_supplier")
    fake_gateway.status_snapshot = OrderStatusSnapshot(id=5001, status="Cancelled")

    await reconciler.sync_order(db, order)

    assert order.status == "cancelled"


@pytest.mark.asyncio
async def test_poll_promotes_handle_to_order_id(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_handle="q-77", supplier_status="quote_created", status="submitted_to_supplier")
    fake_gateway.poll_result = PollResult(handle="q-77", id=7001, transaction_id="SO-7001")

    result = await reconciler.sync_order(db, order)

    assert result["message"] == "Order created successfully"
    assert order.supplier_order_id == "7001"
    assert order.supplier_status == "order_created"
    assert order.supplier_transaction_id == "SO-7001"


@pytest.mark.asyncio
async def test_poll_sync_error_is_recorded_not_fatal(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_handle="q-77", supplier_status="quote_created", status="submitted_to_supplier")
    fake_gateway.poll_result = PollResult(handle="q-77", sync_error="Item out of stock", sync_attempts_remaining=3)

    result = await reconciler.sync_order(db, order)

    assert result["synced"] is True
    assert order.supplier_status == "sync_error"
    assert order.supplier_error == "Item out of stock"
    assert order.status == "submitted_to_supplier"


@pytest.mark.asyncio
async def test_poll_with_order_id_ignores_stale_sync_error(db, reconciler, make_order, fake_gateway):
    order = make_order(supplier_handle="q-77", supplier_status="sync_error", status="submitted_to_supplier")
    fake_gateway.poll_result = PollResult(handle="q-77", id=7001, transaction_id="SO-7001", sync_error="Item out of stock")

    await reconciler.sync_order(db, order)

    assert order.supplier_order_id == "7001"
    assert order.supplier_status == "order_created"
    assert order.supplier_error is None


@pytest.mark.asyncio
async def test_sync_unsubmitted_order_is_invalid(db, reconciler, make_order):
    order = make_order()
    with pytest.raises(InvalidInput):
        await reconciler.sync_order(db, order)


@pytest.mark.asyncio
async def test_resync_retries_failed_submission_after_debounce(db, reconciler, make_order, fake_gateway):
    now = utcnow()
    recent = make_order(
        status="supplier_error",
        supplier_status="failed",
        supplier_last_synced_at=now - timedelta(minutes=2),
    )
    stale = make_order(
        status="supplier_error",
        supplier_status="failed",
        supplier_last_synced_at=now - timedelta(minutes=10),
    )

    result = await reconciler.resync(db, now=now)

    assert [r["orderId"] for r in result["results"]] == [stale.id]
    assert result["syncedCount"] == 1
    db.refresh(stale)
    db.refresh(recent)
    assert stale.status == "submitted_to_supplier"
    assert stale.supplier_order_id == "5001"
    assert recent.status == "supplier_error"
    assert len(fake_gateway.submitted) == 1


@pytest.mark.asyncio
async def test_resync_skips_terminal_orders(db, reconciler, make_order):
    make_order(supplier_order_id="1", supplier_status="fulfillment_complete", status="shipped")
    make_order(supplier_order_id="2", supplier_status="cancelled", status="cancelled")

    result = await reconciler.resync(db)

    assert result == {"syncedCount": 0, "results": []}


@pytest.mark.asyncio
async def test_resync_isolates_failing_orders(db, reconciler, make_order, fake_gateway):
    failing = make_order(supplier_order_id="5001", supplier_status="order_created", status="submitted_to_supplier")
    healthy = make_order(supplier_handle="q-1", supplier_status="quote_created", status="submitted_to_supplier")

    async def broken_status(order_id):
        raise UpstreamUnavailable("Platform Gold API request failed: 500")

    fake_gateway.fetch_order_status = broken_status
    fake_gateway.poll_result = PollResult(handle="q-1", id=9001)

    result = await reconciler.resync(db)

    by_id = {r["orderId"]: r for r in result["results"]}
    assert by_id[failing.id]["synced"] is False
    assert by_id[healthy.id]["synced"] is True
    assert result["syncedCount"] == 1
    db.refresh(failing)
    assert failing.supplier_error == "Platform Gold API request failed: 500"


@pytest.mark.asyncio
async def test_resync_respects_batch_size(db, reconciler, make_order):
    for _ in range(3):
        make_order(supplier_handle="q-1", supplier_status="quote_created", status="submitted_to_supplier")

    result = await reconciler.resync(db, batch_size=2)

    assert len(result["results"]) == 2


CHECKOUT_ADDRESS = {
    "fullName": "Jane Doe",
    "streetAddress": "100 Main St",
    "city": "Austin",
    "state": "TX",
    "zipCode": "78701",
}


@pytest.mark.asyncio
async def test_resync_includes_on_hold_orders(db, reconciler, make_order, fake_gateway):
    make_order(supplier_order_id="5001", supplier_status="on_hold_contact_desk", status="submitted_to_supplier")

    result = await reconciler.resync(db)

    assert result["syncedCount"] == 1
    assert fake_gateway.status_calls == [5001]


@pytest.mark.asyncio
async def test_repair_on_hold_resends_shipping_details(db, reconciler, make_order, fake_gateway):
    held = make_order(
        supplier_order_id="5001",
        supplier_status="on_hold_contact_desk",
        status="submitted_to_supplier",
        shipping_address=CHECKOUT_ADDRESS,
    )
    make_order(supplier_order_id="5002", supplier_status="pending_fulfillment", status="submitted_to_supplier")

    result = await reconciler.repair_on_hold(db)

    assert result["fixedCount"] == 1
    assert result["results"] == [{"orderId": held.id, "fixed": True, "status": "Pending Fulfillment"}]
    order_id, changes = fake_gateway.updates[0]
    assert order_id == 5001
    assert changes["shipping_address"] == CHECKOUT_ADDRESS
    assert changes["shipping_instruction_id"] == 12
    assert "Confidential Drop Ship to Customer" in changes["notes"]
    assert fake_gateway.status_calls == [5001]
    db.refresh(held)
    assert held.supplier_status == "pending_fulfillment"


@pytest.mark.asyncio
async def test_repair_on_hold_skips_incomplete_address(db, reconciler, make_order, fake_gateway):
    held = make_order(
        supplier_order_id="5001",
        supplier_status="on_hold_contact_desk",
        status="submitted_to_supplier",
        shipping_address={"fullName": "Jane Doe", "city": "Austin"},
    )

    result = await reconciler.repair_on_hold(db)

    assert result["fixedCount"] == 0
    assert result["results"][0]["orderId"] == held.id
    assert result["results"][0]["error"] == "Incomplete shipping address: addr1, state, zip"
    assert fake_gateway.updates == []


@pytest.mark.asyncio
async def test_repair_on_hold_dry_run_changes_nothing(db, reconciler, make_order, fake_gateway):
    make_order(
        supplier_order_id="5001",
        supplier_status="on_hold_contact_desk",
        status="submitted_to_supplier",
        shipping_address=CHECKOUT_ADDRESS,
    )

    result = await reconciler.repair_on_hold(db, dry_run=True)

    assert result["results"][0]["dryRun"] is True
    assert fake_gateway.updates == []
    assert fake_gateway.status_calls == []


@pytest.mark.asyncio
async def test_repair_on_hold_records_update_failure(db, reconciler, make_order, fake_gateway):
    held = make_order(
        supplier_order_id="5001",
        supplier_status="on_hold_contact_desk",
        status="submitted_to_supplier",
        shipping_address=CHECKOUT_ADDRESS,
    )
    fake_gateway.update_error = UpstreamUnavailable("Platform Gold API request failed: 403")

    result = await reconciler.repair_on_hold(db)

    assert result["fixedCount"] == 0
    assert result["results"][0]["error"] == "Platform Gold API request failed: 403"
    db.refresh(held)
    assert held.supplier_status == "on_hold_contact_desk"
    assert held.supplier_error == "On-hold repair failed: Platform Gold API request failed: 403"
