import logging

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tradeledger import create_app
from tradeledger.config import Config
from tradeledger.errors import InsufficientStock, InvalidState
from tradeledger.extensions import db
from tradeledger.models import LedgerEntry, Product, Sale, StockMovement, Vendor
from tradeledger.services import credit_memo_service as memo_service
from tradeledger.services import integrity_service, ledger_service, sales_service
from tradeledger.services.concurrency import run_with_retry


def test_failed_unit_of_work_is_rolled_back(db_session):
    def _op():
        db_session.add(Vendor(name="Half Written"))
        db_session.flush()
        raise ValueError("boom")

    with pytest.raises(ValueError):
        run_with_retry(_op)

    assert db_session.query(Vendor).count() == 0


def test_conflicts_are_retried_then_raised(db_session, caplog):
    calls = []

    def _op():
        calls.append(1)
        raise StaleDataError("row changed underneath us")

    with caplog.at_level(logging.WARNING):
        with pytest.raises(StaleDataError):
            run_with_retry(_op, attempts=3, backoff_base=0)

    assert len(calls) == 3
    assert "Concurrency conflict" in caplog.text


def test_retried_approval_applies_once(db_session, customer, make_product, monkeypatch):
    product = make_product()
    memo = memo_service.create_credit_memo(
        memo_type="CUSTOMER",
        reason="RETURN",
        customer_id=customer.id,
        lines=[{"product_id": product.id, "quantity": 2, "unit_price_cents": 500}],
    )

    real_post = ledger_service.post
    attempts = []

    def flaky_post(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise StaleDataError("concurrent approval")
        return real_post(*args, **kwargs)

    monkeypatch.setattr(ledger_service, "post", flaky_post)

    memo = memo_service.approve_credit_memo(memo.id)

    assert len(attempts) == 2
    assert memo.status == "APPROVED"
    assert db_session.query(LedgerEntry).count() == 2
    assert product.on_hand_quantity == 2

    with pytest.raises(InvalidState):
        memo_service.approve_credit_memo(memo.id)


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database so two connections see each other's commits."""
    class FileConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        DB_RETRY_BACKOFF_SECONDS = 0

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_rival_writer_on_same_product_forces_retry_then_insufficient_stock(file_app, caplog):
    product = Product(
        sku="LAST-1", name="Last Unit", product_type="inventory",
        price_cents=1000, opening_quantity=1, on_hand_quantity=1,
    )
    db.session.add(product)
    db.session.commit()
    product_id = product.id

    # This session now holds the row at version 1 with one unit on hand.
    assert product.on_hand_quantity == 1
    assert product.version_id == 1

    # A second till sells the last unit on its own connection and commits first.
    with Session(db.engine) as rival:
        row = rival.get(Product, product_id)
        row.on_hand_quantity -= 1
        rival.add(StockMovement(product_id=product_id, movement_type="SALE", quantity_change=-1, note="Rival till"))
        rival.commit()
        assert row.version_id == 2

    with caplog.at_level(logging.WARNING):
        with pytest.raises(InsufficientStock):
            sales_service.create_sale(items=[{"product_id": product_id, "quantity": 1}], payment_method="cash")

    assert "Concurrency conflict" in caplog.text
    db.session.expire_all()
    refreshed = db.session.get(Product, product_id)
    assert refreshed.on_hand_quantity == 0
    assert refreshed.version_id == 2
    assert db.session.query(Sale).count() == 0
    assert db.session.query(StockMovement).count() == 1
    assert db.session.query(LedgerEntry).count() == 0
    assert integrity_service.verify_stock() == []
