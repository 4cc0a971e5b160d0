import pytest

from backoffice.errors import LocationCapacityError, LocationOccupiedError, NotFoundError
from backoffice.models import Location, StockMovement, StockRecord
from backoffice.services import batch_catalog, location_registry, stock_ledger
from backoffice.validation import ValidationError


def test_create_location_assigns_code(db_session):
    first = location_registry.create_location("  cold-room ", 40)
    second = location_registry.create_location("Dry Store")

    assert first.name == "COLD-ROOM"
    assert first.code == "LOC-000001"
    assert second.code == "LOC-000002"
    assert second.max_capacity == 100


def test_location_names_are_unique(db_session):
    location_registry.create_location("aisle 1", 10)

    with pytest.raises(ValidationError):
        location_registry.create_location("AISLE 1", 20)


@pytest.mark.parametrize("capacity", [0, -5, "ten", 2.5])
def test_capacity_must_be_positive_integer(db_session, capacity):
    with pytest.raises(ValidationError):
        location_registry.create_location("BAD", capacity)


def test_capacity_summary_counts_on_hand_and_shelf(db_session, product, location):
    batch = batch_catalog.create_batch(
        product_id=product.id, batch_code="SUM-1", quantity=30, location_id=location.id
    )
    stock_ledger.shelve_stock(batch.id, location.id, 10)
    stock_ledger.reserve(batch.id, location.id, 4)

    summary = location_registry.capacity_summary(location.id)

    assert summary["occupied"] == 30
    assert summary["available"] == 70
    assert summary["max_capacity"] == 100
    assert location_registry.can_accept(location.id, 70) is True
    assert location_registry.can_accept(location.id, 71) is False


def test_capacity_cannot_drop_below_occupancy(db_session, product, location):
    batch_catalog.create_batch(product_id=product.id, batch_code="OCC-1", quantity=25, location_id=location.id)

    with pytest.raises(LocationCapacityError):
        location_registry.update_capacity(location.id, 24)

    updated = location_registry.update_capacity(location.id, 25)
    assert updated.max_capacity == 25


def test_occupied_location_cannot_be_deactivated_or_deleted(db_session, product, location):
    batch_catalog.create_batch(product_id=product.id, batch_code="OCC-2", quantity=1, location_id=location.id)

    with pytest.raises(LocationOccupiedError):
        location_registry.deactivate_location(location.id)
    with pytest.raises(LocationOccupiedError):
        location_registry.delete_location(location.id)

    assert location_registry.get_location(location.id).is_active is True


def test_inactive_location_refuses_receipts(db_session, product):
    spare = location_registry.create_location("SPARE", 10)
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="INACT")

    location_registry.deactivate_location(spare.id)

    assert location_registry.can_accept(spare.id, 1) is False
    with pytest.raises(LocationCapacityError):
        stock_ledger.adjust_on_hand(batch.id, spare.id, 1)
    assert [loc.id for loc in location_registry.list_locations()] == []
    assert [loc.id for loc in location_registry.list_locations(include_inactive=True)] == [spare.id]


def test_delete_emptied_location_keeps_movements(db_session, product, location):
    batch = batch_catalog.create_batch(
        product_id=product.id, batch_code="EMPTY", quantity=5, location_id=location.id
    )
    stock_ledger.adjust_on_hand(batch.id, location.id, -5, note="moved out")

    location_registry.delete_location(location.id)

    assert db_session.get(Location, location.id) is None
    assert db_session.query(StockRecord).filter_by(location_id=location.id).count() == 0
    assert db_session.query(StockMovement).filter_by(location_id=location.id).count() == 2
    with pytest.raises(NotFoundError):
        location_registry.get_location(location.id)
