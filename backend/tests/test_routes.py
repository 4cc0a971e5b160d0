"""
API route tests via the Flask test client.

Error bodies always carry error, code and details; status codes follow the
error class (400 validation, 404 missing, 409 stock and state guards).
"""

from datetime import timedelta

from sqlalchemy import update

from backoffice.models import Batch
from backoffice.services import order_service
from backoffice.time_utils import to_utc_z, utcnow


def _create_location(client, name="FRONT", max_capacity=50):
    response = client.post("/api/locations", json={"name": name, "max_capacity": max_capacity})
    assert response.status_code == 201
    return response.json["location"]


def _create_batch(client, product_id, code, location_id, quantity, days=7):
    response = client.post("/api/batches", json={
        "product_id": product_id,
        "batch_code": code,
        "quantity": quantity,
        "expiry_date": to_utc_z(utcnow() + timedelta(days=days)),
        "location_id": location_id,
    })
    assert response.status_code == 201, response.json
    return response.json["batch"]


def _shelve(client, batch_id, location_id, qty):
    response = client.post("/api/inventory/adjust", json={
        "batch_id": batch_id,
        "location_id": location_id,
        "delta": qty,
        "kind": "shelve",
    })
    assert response.status_code == 200, response.json
    return response.json["stock"]


def test_health(client, db_session):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json["status"] == "healthy"
    assert response.json["checks"]["database"]["details"]["locations"] == 0


def test_location_capacity_endpoints(client, db_session, product):
    loc = _create_location(client, "front", 20)
    assert loc["name"] == "FRONT"

    _create_batch(client, product.id, "R-1", loc["id"], 15)

    capacity = client.get(f"/api/locations/{loc['id']}/capacity").json["capacity"]
    assert (capacity["occupied"], capacity["available"]) == (15, 5)

    response = client.patch(f"/api/locations/{loc['id']}/capacity", json={"max_capacity": 10})
    assert response.status_code == 409
    assert response.json["code"] == "LocationCapacityError"

    response = client.post(f"/api/locations/{loc['id']}/deactivate")
    assert response.status_code == 409
    assert response.json["code"] == "LocationOccupiedError"
    assert response.json["details"]["occupied"] == 15


def test_batch_receipt_over_capacity(client, db_session, product):
    loc = _create_location(client, "TINY", 5)

    response = client.post("/api/batches", json={
        "product_id": product.id,
        "batch_code": "TOO-BIG",
        "quantity": 6,
        "location_id": loc["id"],
    })

    assert response.status_code == 409
    assert response.json["code"] == "LocationCapacityError"


def test_batch_rejects_unknown_fields(client, db_session, product):
    response = client.post("/api/batches", json={
        "product_id": product.id,
        "batch_code": "X-1",
        "status": "expired",
    })

    assert response.status_code == 400
    assert response.json["code"] == "ValidationError"


def test_inventory_adjust_and_stock_listing(client, db_session, product):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "INV-1", loc["id"], 10)

    stock = _shelve(client, batch["id"], loc["id"], 4)
    assert (stock["quantity_on_hand"], stock["quantity_on_shelf"]) == (6, 4)

    response = client.post("/api/inventory/adjust", json={
        "batch_id": batch["id"], "location_id": loc["id"], "delta": -7,
    })
    assert response.status_code == 409
    assert response.json["code"] == "NegativeStockError"

    records = client.get(f"/api/inventory/stock?product_id={product.id}").json["stock"]
    assert len(records) == 1
    assert records[0]["quantity_available"] == 4

    movements = client.get(f"/api/inventory/movements?batch_id={batch['id']}").json["movements"]
    assert [m["movement_type"] for m in movements] == ["RECEIVE", "SHELVE"]


def test_inventory_adjust_validation(client, db_session):
    response = client.post("/api/inventory/adjust", json={"batch_id": 1, "location_id": 1, "delta": 1.5})

    assert response.status_code == 400
    assert response.json["error"]


def test_fefo_preview(client, db_session, product):
    loc = _create_location(client)
    late = _create_batch(client, product.id, "LATE", loc["id"], 10, days=10)
    early = _create_batch(client, product.id, "EARLY", loc["id"], 10, days=5)
    _shelve(client, late["id"], loc["id"], 10)
    _shelve(client, early["id"], loc["id"], 10)

    listing = client.get(f"/api/batches/fefo/{product.id}").json
    assert [b["batch_code"] for b in listing["batches"]] == ["EARLY", "LATE"]

    plan = client.get(f"/api/batches/fefo/{product.id}?quantity=15").json["allocations"]
    assert [(a["batch_id"], a["quantity"]) for a in plan] == [(early["id"], 10), (late["id"], 5)]

    response = client.get(f"/api/batches/fefo/{product.id}?quantity=21")
    assert response.status_code == 409
    assert response.json["details"] == {"product_id": product.id, "requested": 21, "available": 20}


def test_batch_promotion_and_dispose(client, db_session, product):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "PROMO", loc["id"], 5)

    promoted = client.post(f"/api/batches/{batch['id']}/promotion", json={"discount_percentage": 25}).json["batch"]
    assert promoted["current_unit_price_cents"] == 750

    cleared = client.post(f"/api/batches/{batch['id']}/promotion", json={"discount_percentage": 0}).json["batch"]
    assert cleared["current_unit_price_cents"] == 1000

    disposed = client.post(f"/api/batches/{batch['id']}/dispose", json={"reason": "Recall"})
    assert disposed.status_code == 200
    assert disposed.json["batch"]["status"] == "disposed"

    again = client.post(f"/api/batches/{batch['id']}/dispose", json={"reason": "Recall"})
    assert again.status_code == 409
    assert again.json["code"] == "InvalidBatchTransitionError"


def test_order_payment_flow(client, db_session, product, customer):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "FLOW", loc["id"], 10)
    _shelve(client, batch["id"], loc["id"], 10)

    response = client.post("/api/orders", json={
        "customer_id": customer.id,
        "delivery_type": "pickup",
        "status": "pending",
        "items": [{"product_id": product.id, "quantity": 4}],
    })
    assert response.status_code == 201
    order = response.json["order"]
    assert order["total_cents"] == 4000

    response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "delivered"})
    assert response.status_code == 409
    assert response.json["code"] == "PaymentNotCompleteError"

    response = client.post("/api/payments", json={"order_id": order["id"], "amount_cents": 4000, "method": "card"})
    assert response.status_code == 201
    assert response.json["summary"]["payment_status"] == "paid"

    response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "delivered"})
    assert response.status_code == 200
    assert response.json["order"]["status"] == "delivered"

    response = client.delete(f"/api/orders/{order['id']}")
    assert response.status_code == 409
    assert response.json["code"] == "DeleteNotAllowedError"

    response = client.post(f"/api/orders/{order['id']}/refund", json={"reason": "Wrong size"})
    assert response.status_code == 200
    assert response.json["order"]["status"] == "refunded"

    detail = client.get(f"/api/orders/{order['id']}").json
    assert [line["stock_status"] for line in detail["order"]["lines"]] == ["RESTORED"]
    assert detail["payments"]["net_paid_cents"] == 4000


def test_order_over_request(client, db_session, product, customer):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "SHORT", loc["id"], 3)
    _shelve(client, batch["id"], loc["id"], 3)

    response = client.post("/api/orders", json={
        "customer_id": customer.id,
        "delivery_type": "pickup",
        "items": [{"product_id": product.id, "quantity": 5}],
    })

    assert response.status_code == 409
    assert response.json["code"] == "InsufficientStockError"
    assert response.json["details"]["requested"] == 5
    assert response.json["details"]["available"] == 3


def test_order_validation_and_not_found(client, db_session, customer):
    response = client.post("/api/orders", json={"customer_id": customer.id, "delivery_type": "delivery", "items": []})
    assert response.status_code == 400
    assert response.json["code"] == "ValidationError"

    response = client.get("/api/orders/424242")
    assert response.status_code == 404
    assert response.json["code"] == "NotFoundError"
    assert response.json["details"] == {"order_id": 424242}


def test_payment_refund_endpoint(client, db_session, product, customer):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "PAYREF", loc["id"], 5)
    _shelve(client, batch["id"], loc["id"], 5)
    order = client.post("/api/orders", json={
        "customer_id": customer.id,
        "delivery_type": "pickup",
        "status": "pending",
        "items": [{"product_id": product.id, "quantity": 1}],
    }).json["order"]
    payment = client.post("/api/payments", json={"order_id": order["id"], "amount_cents": 1000}).json["payment"]

    response = client.post(f"/api/payments/{payment['id']}/refund", json={"amount_cents": 400})

    assert response.status_code == 200
    assert response.json["payment"]["refunded_amount_cents"] == 400
    assert response.json["summary"]["payment_status"] == "pending"


def test_inventory_unshelve_and_write_off(client, db_session, product):
    loc = _create_location(client, "BACK", 20)
    batch = _create_batch(client, product.id, "BACK-1", loc["id"], 10)
    _shelve(client, batch["id"], loc["id"], 10)

    response = client.post("/api/inventory/adjust", json={
        "batch_id": batch["id"], "location_id": loc["id"], "delta": 4, "kind": "unshelve",
    })
    assert response.status_code == 200
    stock = response.json["stock"]
    assert (stock["quantity_on_hand"], stock["quantity_on_shelf"]) == (4, 6)

    response = client.post("/api/inventory/adjust", json={
        "batch_id": batch["id"], "location_id": loc["id"], "delta": 6, "kind": "write_off", "note": "expired",
    })
    assert response.status_code == 200
    assert response.json["stock"]["quantity_on_shelf"] == 0

    response = client.post("/api/inventory/adjust", json={
        "batch_id": batch["id"], "location_id": loc["id"], "delta": -1, "kind": "write_off",
    })
    assert response.status_code == 400

    capacity = client.get(f"/api/locations/{loc['id']}/capacity").json["capacity"]
    assert capacity["occupied"] == 4


def test_fefo_preview_persists_lazy_expiry(client, db_session, product):
    loc = _create_location(client)
    batch = _create_batch(client, product.id, "STALE", loc["id"], 5)
    db_session.execute(
        update(Batch).where(Batch.id == batch["id"]).values(expiry_date=utcnow() - timedelta(days=1))
    )
    db_session.commit()

    listing = client.get(f"/api/batches/fefo/{product.id}").json
    assert listing["batches"] == []

    db_session.rollback()
    assert db_session.query(Batch.status).filter_by(id=batch["id"]).scalar() == "expired"


def test_order_reads_report_unexpected_failures(client, db_session, monkeypatch):
    def _broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(order_service, "list_orders", _broken)
    monkeypatch.setattr(order_service, "get_order", _broken)

    for url in ("/api/orders", "/api/orders/1"):
        response = client.get(url)
        assert response.status_code == 500
        assert response.json == {"error": "Internal server error"}
