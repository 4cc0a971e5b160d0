from datetime import timedelta

from backoffice.services import batch_catalog, location_registry, stock_ledger
from backoffice.time_utils import utcnow


def test_locations_create_and_list(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["locations", "create", "--name", "b-07", "--max-capacity", "50"])
    assert result.exit_code == 0, result.output
    assert "PASS Created LOC-000001 B-07 (capacity 50)" in result.output

    result = runner.invoke(args=["locations", "list"])
    assert result.exit_code == 0
    assert "B-07" in result.output
    assert "0/50" in result.output


def test_locations_create_duplicate_fails(app, db_session):
    location_registry.create_location("DUP", 10)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["locations", "create", "--name", "dup"])

    assert result.exit_code != 0
    assert "already exists" in result.output


def test_fefo_listing_and_plan(app, db_session, product, location, stocked_batch):
    early = stocked_batch(product, "EARLY", location, quantity=4, days=2)
    stocked_batch(product, "LATE", location, quantity=4, days=9)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["batches", "fefo", str(product.id)])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert "EARLY" in lines[0]
    assert "LATE" in lines[1]

    result = runner.invoke(args=["batches", "fefo", str(product.id), "--quantity", "3"])
    assert result.exit_code == 0
    assert f"batch {early.id} @ location {location.id}: 3 x 1000" in result.output

    result = runner.invoke(args=["batches", "fefo", str(product.id), "--quantity", "9"])
    assert result.exit_code != 0
    assert "requested 9, available 8" in result.output


def test_apply_fresh_promotions_command(app, db_session, fresh_product):
    batch_catalog.create_batch(
        product_id=fresh_product.id, batch_code="F-CLI", expiry_date=utcnow() + timedelta(hours=6)
    )
    runner = app.test_cli_runner()

    result = runner.invoke(args=["batches", "apply-fresh-promotions"])

    assert result.exit_code == 0
    assert "applied=1" in result.output
    assert "  + F-CLI" in result.output


def test_reset_db_requires_confirmation(app, db_session, product, location):
    batch = batch_catalog.create_batch(product_id=product.id, batch_code="KEEP", quantity=2, location_id=location.id)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "reset-db"], input="n\n")

    assert result.exit_code != 0
    assert stock_ledger.get_stock_record(batch.id, location.id).quantity_on_hand == 2
