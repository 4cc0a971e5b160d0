"""
Pytest fixtures for back-office tests.

Provides the application, a clean database per test and small factories
for products, customers, locations and stocked batches.
"""

from datetime import timedelta

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Customer, Product
from backoffice.services import batch_catalog, location_registry, stock_ledger
from backoffice.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(code="MILK-1L", name="Milk 1L", category="dairy", unit_price_cents=1000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def fresh_product(db_session):
    product = Product(code="SALMON", name="Salmon fillet", category="fresh", unit_price_cents=5000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(code="C-001", full_name="Walk-in Guest", customer_type="guest")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def vip_customer(db_session):
    customer = Customer(code="C-VIP", full_name="Big Buyer", customer_type="vip")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def location(db_session):
    return location_registry.create_location("A-01", 100)


@pytest.fixture(scope='function')
def stocked_batch(db_session):
    """
    Factory: create a batch received at a location and put on the shelf.

    stocked_batch(product, "B1", location, quantity=10, days=5)
    days=None creates a batch without expiry date.
    """
    def _make(product, code, location, *, quantity=10, days=30, shelve=True, unit_price_cents=None):
        expiry = utcnow() + timedelta(days=days) if days is not None else None
        batch = batch_catalog.create_batch(
            product_id=product.id,
            batch_code=code,
            unit_price_cents=unit_price_cents,
            quantity=quantity,
            expiry_date=expiry,
            location_id=location.id,
        )
        if shelve and quantity > 0:
            stock_ledger.shelve_stock(batch.id, location.id, quantity)
        return batch

    return _make
