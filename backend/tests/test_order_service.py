import pytest

from tradeledger.errors import InsufficientStock, InvalidState
from tradeledger.models import LedgerEntry, StockMovement
from tradeledger.services import order_service


@pytest.fixture
def placed(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=2000, tax_rate_bps=500)
    order = order_service.place_order(
        customer_id=customer.id,
        items=[{"product_id": product.id, "quantity": 3}],
        payment_reference="gw_123",
    )
    return order, product


def test_place_reserves_without_moving_stock(placed, db_session):
    order, product = placed

    assert order.status == "placed"
    assert order.document_number == "ORD-0001"
    assert order.total_cents == 6300
    assert order.loyalty_points_awarded == 63
    assert product.on_hand_quantity == 10
    assert product.committed_quantity == 3
    assert product.available_quantity == 7
    assert db_session.query(StockMovement).count() == 0
    assert db_session.query(LedgerEntry).count() == 0


def test_place_cannot_overcommit(db_session, customer, make_product):
    product = make_product(on_hand_quantity=2)
    with pytest.raises(InsufficientStock):
        order_service.place_order(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 3}])
    assert product.committed_quantity == 0


def test_completion_converts_reservation_to_sale(placed, db_session):
    order, product = placed
    for status in ("packed", "ready_for_pickup", "completed"):
        order = order_service.update_order_status(order.id, status)

    assert order.completed_at is not None
    assert product.on_hand_quantity == 7
    assert product.committed_quantity == 0
    movement = db_session.query(StockMovement).one()
    assert movement.movement_type == "SALE"
    assert movement.reference_type == "ORDER"

    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    assert [(e.account_type, e.debit_cents, e.credit_cents) for e in entries] == [
        ("BANK", 6300, 0),
        ("SALES", 0, 6300),
    ]


def test_cancel_releases_reservation(placed, db_session):
    order, product = placed
    order_service.update_order_status(order.id, "packed")
    order = order_service.update_order_status(order.id, "cancelled")

    assert order.status == "cancelled"
    assert product.committed_quantity == 0
    assert product.on_hand_quantity == 10
    assert order_service.list_open_orders() == []

    with pytest.raises(InvalidState):
        order_service.update_order_status(order.id, "packed")


def test_status_cannot_skip_steps(placed):
    order, product = placed
    with pytest.raises(InvalidState):
        order_service.update_order_status(order.id, "completed")
    assert order_service.get_order(order.id).status == "placed"
    assert product.committed_quantity == 3
