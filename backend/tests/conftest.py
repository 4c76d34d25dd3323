"""
Pytest fixtures for TradeLedger backend tests.

Provides an in-memory database, a per-test clean session and small factories
for products, vendors and customers.
"""

import pytest

from tradeledger import create_app
from tradeledger.config import Config
from tradeledger.extensions import db
from tradeledger.models import Customer, Product, Vendor


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DB_RETRY_BACKOFF_SECONDS = 0


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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
def make_product(db_session):
    """Factory: stock-tracked product with opening stock recorded as opening_quantity."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        on_hand = overrides.pop("on_hand_quantity", 0)
        fields = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "product_type": "inventory",
            "price_cents": 1000,
            "tax_rate_bps": 0,
            "opening_quantity": on_hand,
            "on_hand_quantity": on_hand,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def vendor(db_session):
    """Create an active vendor with 30-day terms."""
    v = Vendor(name="Acme Supplies", code="ACME", payment_terms_days=30, credit_limit_cents=100000)
    db_session.add(v)
    db_session.commit()
    return v


@pytest.fixture(scope='function')
def customer(db_session):
    """Create an active customer."""
    c = Customer(name="Jane Buyer", email="jane@example.com", credit_limit_cents=50000)
    db_session.add(c)
    db_session.commit()
    return c
