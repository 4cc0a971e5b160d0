"""
FEFO allocation tests.

Plans are read-only snapshots: every test that fails allocation also checks
that no stock record moved.
"""

import pytest

from backoffice.errors import InsufficientStockError, NotFoundError
from backoffice.models import StockMovement
from backoffice.services import batch_catalog, location_registry, stock_ledger
from backoffice.services.fefo_allocator import Allocation, plan_allocation, plan_explicit_allocation
from backoffice.validation import ValidationError


def _slices(plan):
    return [(a.batch_id, a.location_id, a.quantity) for a in plan]


def test_earliest_expiry_first(db_session, product, location, stocked_batch):
    b1 = stocked_batch(product, "B1", location, quantity=10, days=5)
    b2 = stocked_batch(product, "B2", location, quantity=10, days=10)

    plan = plan_allocation(product.id, 15)

    assert _slices(plan) == [(b1.id, location.id, 10), (b2.id, location.id, 5)]


def test_exact_fit_uses_single_batch(db_session, product, location, stocked_batch):
    b1 = stocked_batch(product, "B1", location, quantity=10, days=5)
    stocked_batch(product, "B2", location, quantity=10, days=10)

    assert _slices(plan_allocation(product.id, 10)) == [(b1.id, location.id, 10)]


def test_over_request_mutates_nothing(db_session, product, location, stocked_batch):
    b1 = stocked_batch(product, "B1", location, quantity=10, days=5)
    b2 = stocked_batch(product, "B2", location, quantity=10, days=10)
    movements_before = db_session.query(StockMovement).count()

    with pytest.raises(InsufficientStockError) as exc:
        plan_allocation(product.id, 25)

    assert exc.value.details["requested"] == 25
    assert exc.value.details["available"] == 20
    for batch in (b1, b2):
        record = stock_ledger.get_stock_record(batch.id, location.id)
        assert (record.quantity_on_shelf, record.quantity_reserved) == (10, 0)
    assert db_session.query(StockMovement).count() == movements_before


def test_batch_spread_over_locations_in_id_order(db_session, product, location):
    back = location_registry.create_location("BACK", 50)
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="SPLIT")
    for loc, qty in ((back, 4), (location, 3)):
        stock_ledger.adjust_on_hand(batch.id, loc.id, qty)
        stock_ledger.shelve_stock(batch.id, loc.id, qty)

    plan = plan_allocation(product.id, 5)

    assert _slices(plan) == [(batch.id, location.id, 3), (batch.id, back.id, 2)]


def test_reserved_and_warehouse_stock_are_skipped(db_session, product, location, stocked_batch):
    b1 = stocked_batch(product, "B1", location, quantity=10, days=5)
    b2 = stocked_batch(product, "B2", location, quantity=10, days=10)
    stocked_batch(product, "B0", location, quantity=10, days=1, shelve=False)
    stock_ledger.reserve(b1.id, location.id, 4)

    plan = plan_allocation(product.id, 10)

    assert _slices(plan) == [(b1.id, location.id, 6), (b2.id, location.id, 4)]


def test_allocation_carries_promotional_price(db_session, product, location, stocked_batch):
    batch = stocked_batch(product, "SALE", location, quantity=5, unit_price_cents=2000)
    batch_catalog.apply_promotion(batch.id, 25)

    (alloc,) = plan_allocation(product.id, 2)

    assert alloc.unit_price_cents == 1500
    assert alloc.to_dict()["expiry_date"] is not None


def test_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        plan_allocation(4242, 1)


@pytest.mark.parametrize("quantity", [0, -3, True])
def test_quantity_must_be_positive(db_session, product, quantity):
    with pytest.raises(ValidationError):
        plan_allocation(product.id, quantity)


def test_explicit_selection_at_location(db_session, fresh_product, location, stocked_batch):
    stocked_batch(fresh_product, "F1", location, quantity=5, days=1)
    chosen = stocked_batch(fresh_product, "F2", location, quantity=5, days=3)

    plan = plan_explicit_allocation(
        fresh_product.id, [{"batch_id": chosen.id, "quantity": 4, "location_id": location.id}]
    )

    assert plan == [Allocation(chosen.id, location.id, 4, chosen.unit_price_cents, chosen.expiry_date)]


def test_explicit_selection_spreads_without_location(db_session, fresh_product, location):
    second = location_registry.create_location("CHILLER", 20)
    batch = batch_catalog.create_batch(product_id=fresh_product.id, batch_code="F-SPREAD")
    for loc in (location, second):
        stock_ledger.adjust_on_hand(batch.id, loc.id, 3)
        stock_ledger.shelve_stock(batch.id, loc.id, 3)

    plan = plan_explicit_allocation(fresh_product.id, [{"batch_id": batch.id, "quantity": 5}])

    assert _slices(plan) == [(batch.id, location.id, 3), (batch.id, second.id, 2)]


def test_explicit_selection_rejects_foreign_batch(db_session, product, fresh_product, location, stocked_batch):
    other = stocked_batch(product, "MILK", location, quantity=5)

    with pytest.raises(ValidationError):
        plan_explicit_allocation(fresh_product.id, [{"batch_id": other.id, "quantity": 1}])


def test_explicit_selection_rejects_disposed_batch(db_session, fresh_product, location, stocked_batch):
    batch = stocked_batch(fresh_product, "F-BAD", location, quantity=5)
    batch_catalog.mark_disposed(batch.id, "Smell")

    with pytest.raises(InsufficientStockError):
        plan_explicit_allocation(fresh_product.id, [{"batch_id": batch.id, "quantity": 1}])


def test_explicit_selection_over_available(db_session, fresh_product, location, stocked_batch):
    batch = stocked_batch(fresh_product, "F-FEW", location, quantity=2)

    with pytest.raises(InsufficientStockError) as exc:
        plan_explicit_allocation(
            fresh_product.id, [{"batch_id": batch.id, "quantity": 3, "location_id": location.id}]
        )

    assert exc.value.details["available"] == 2
