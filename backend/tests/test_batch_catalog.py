from datetime import timedelta

import pytest

from backoffice.errors import (
    BatchImmutableError,
    InvalidBatchTransitionError,
    LocationCapacityError,
)
from backoffice.models import Batch, Product
from backoffice.services import batch_catalog, location_registry, stock_ledger
from backoffice.time_utils import utcnow
from backoffice.validation import ValidationError


def test_create_batch_receives_initial_quantity(db_session, product, location):
    batch = batch_catalog.create_batch(
        product_id=product.id,
        batch_code="  mk-2401 ",
        quantity=24,
        expiry_date=utcnow() + timedelta(days=10),
        location_id=location.id,
    )

    assert batch.batch_code == "MK-2401"
    assert batch.status == "active"
    assert batch.unit_price_cents == product.unit_price_cents
    record = stock_ledger.get_stock_record(batch.id, location.id)
    assert record.quantity_on_hand == 24
    assert record.quantity_on_shelf == 0
    assert stock_ledger.list_movements(batch_id=batch.id)[0].movement_type == "RECEIVE"


def test_batch_code_is_unique(db_session, product):
    batch_catalog.create_batch(product_id=product.id, batch_code="dup-1")

    with pytest.raises(ValidationError):
        batch_catalog.create_batch(product_id=product.id, batch_code="DUP-1")


def test_inactive_product_rejected(db_session):
    product = Product(code="OLD", name="Discontinued", unit_price_cents=100, is_active=False)
    db_session.add(product)
    db_session.commit()

    with pytest.raises(ValidationError):
        batch_catalog.create_batch(product_id=product.id, batch_code="OLD-1")


def test_expiry_must_follow_mfg_date(db_session, product):
    now = utcnow()
    with pytest.raises(ValidationError):
        batch_catalog.create_batch(
            product_id=product.id,
            batch_code="BAD-DATES",
            mfg_date=now,
            expiry_date=now - timedelta(days=1),
        )


def test_failed_initial_receipt_creates_nothing(db_session, product):
    small = location_registry.create_location("CRATE", 5)

    with pytest.raises(LocationCapacityError):
        batch_catalog.create_batch(
            product_id=product.id, batch_code="BIG-1", quantity=6, location_id=small.id
        )

    assert db_session.query(Batch).count() == 0


def test_fefo_order_null_expiry_last(db_session, product, location, stocked_batch):
    late = stocked_batch(product, "LATE", location, days=10)
    forever = stocked_batch(product, "FOREVER", location, days=None)
    early = stocked_batch(product, "EARLY", location, days=5)

    codes = [b.batch_code for b in batch_catalog.list_active_batches_for_product(product.id)]

    assert codes == [early.batch_code, late.batch_code, forever.batch_code]


def test_fefo_ties_break_by_creation_order(db_session, product):
    expiry = utcnow() + timedelta(days=3)
    first = batch_catalog.create_batch(product_id=product.id, batch_code="TIE-B", expiry_date=expiry)
    second = batch_catalog.create_batch(product_id=product.id, batch_code="TIE-A", expiry_date=expiry)

    ids = [b.id for b in batch_catalog.list_active_batches_for_product(product.id)]

    assert ids == [first.id, second.id]


def test_sequence_is_restartable(db_session, product, location, stocked_batch):
    stocked_batch(product, "R1", location, days=2)
    stocked_batch(product, "R2", location, days=4)
    sequence = batch_catalog.list_active_batches_for_product(product.id)

    first_pass = [b.id for b in sequence]
    second_pass = [b.id for b in sequence]

    assert first_pass == second_pass
    assert len(first_pass) == 2


def test_overdue_batches_expire_when_observed(db_session, product, location, stocked_batch):
    soon = stocked_batch(product, "SOON", location, days=5)
    later = stocked_batch(product, "LATER", location, days=10)

    week_ahead = utcnow() + timedelta(days=7)
    codes = [b.batch_code for b in batch_catalog.list_active_batches_for_product(product.id, now=week_ahead)]

    assert codes == [later.batch_code]
    assert batch_catalog.get_batch(soon.id).status == "expired"


def test_disposed_and_other_products_excluded(db_session, product, fresh_product, location, stocked_batch):
    keep = stocked_batch(product, "KEEP", location, days=5)
    gone = stocked_batch(product, "GONE", location, days=2)
    stocked_batch(fresh_product, "FISH", location, days=1)
    batch_catalog.mark_disposed(gone.id, "Dropped pallet")

    ids = [b.id for b in batch_catalog.list_active_batches_for_product(product.id)]

    assert ids == [keep.id]


def test_immutable_fields_cannot_change(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="FIXED", unit_price_cents=500)

    batch.unit_price_cents = 1
    with pytest.raises(BatchImmutableError):
        db_session.commit()
    db_session.rollback()

    assert batch_catalog.get_batch(batch.id).unit_price_cents == 500


def test_notes_remain_mutable(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="NOTES")

    batch.notes = "Checked by QA"
    db_session.commit()

    assert batch_catalog.get_batch(batch.id).notes == "Checked by QA"


def test_dispose_appends_reason(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="DISP", notes="Received damp")

    disposed = batch_catalog.mark_disposed(batch.id, "Mould found")

    assert disposed.status == "disposed"
    assert disposed.notes.startswith("Received damp\n")
    assert disposed.notes.endswith("Mould found")


def test_dispose_requires_reason(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="NOREASON")

    with pytest.raises(ValidationError):
        batch_catalog.mark_disposed(batch.id, "  ")


def test_terminal_states_reject_transitions(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="TERM")
    batch_catalog.mark_expired(batch.id)

    with pytest.raises(InvalidBatchTransitionError):
        batch_catalog.mark_disposed(batch.id, "Too late")
    with pytest.raises(InvalidBatchTransitionError):
        batch_catalog.mark_expired(batch.id)

    assert batch_catalog.get_batch(batch.id).status == "expired"


def test_promotion_price_rounds_half_up(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="PROMO", unit_price_cents=999)

    batch = batch_catalog.apply_promotion(batch.id, 30)

    # 30% of 999 = 299.7 -> 300
    assert batch_catalog.current_unit_price_cents(batch) == 699

    batch = batch_catalog.clear_promotion(batch.id)
    assert batch_catalog.current_unit_price_cents(batch) == 999


@pytest.mark.parametrize("pct", [0, 101, True])
def test_promotion_percentage_bounds(db_session, product, pct):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="BOUNDS")

    with pytest.raises(ValidationError):
        batch_catalog.apply_promotion(batch.id, pct)


def test_promotion_requires_active_batch(db_session, product):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="DEAD")
    batch_catalog.mark_disposed(batch.id, "Recalled")

    with pytest.raises(InvalidBatchTransitionError):
        batch_catalog.apply_promotion(batch.id, 10)


def test_apply_fresh_promotions(app, db_session, product, fresh_product):
    now = utcnow()
    due = batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-DUE", expiry_date=now + timedelta(hours=20)
    )
    later = batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-LATER", expiry_date=now + timedelta(days=5)
    )
    deeper = batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-DEEP", expiry_date=now + timedelta(hours=30)
    )
    batch_catalog.apply_promotion(deeper.id, 50)
    overdue = batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-OVER", expiry_date=now - timedelta(hours=2)
    )
    batch_catalog.apply_promotion(overdue.id, 20)
    dairy = batch_catalog.create_batch(
        product_id=product.id, batch_code="D-DUE", expiry_date=now + timedelta(hours=20)
    )

    summary = batch_catalog.apply_fresh_promotions(now=now)

    pct = app.config["FRESH_PROMOTION_DISCOUNT_PERCENT"]
    assert summary["discount_percentage"] == pct
    assert summary["applied_batches"] == ["F-DUE"]
    assert summary["removed_batches"] == ["F-OVER"]
    assert summary["skipped"] == 1

    assert batch_catalog.get_batch(due.id).discount_percentage == pct
    assert batch_catalog.get_batch(later.id).promotion_applied is False
    assert batch_catalog.get_batch(deeper.id).discount_percentage == 50
    assert batch_catalog.get_batch(dairy.id).promotion_applied is False

    expired = batch_catalog.get_batch(overdue.id)
    assert expired.promotion_applied is False
    assert expired.discount_percentage == 0
    assert expired.status == "expired"


def test_apply_fresh_promotions_is_repeatable(db_session, fresh_product):
    now = utcnow()
    batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-AGAIN", expiry_date=now + timedelta(hours=5)
    )

    first = batch_catalog.apply_fresh_promotions(now=now)
    second = batch_catalog.apply_fresh_promotions(now=now)

    assert first["applied"] == 1
    assert second["applied"] == 0
    assert second["skipped"] == 1
