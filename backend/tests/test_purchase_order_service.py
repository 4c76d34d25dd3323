import pytest

from tradeledger.errors import InvalidState, MissingParty, NotFound, ValidationError
from tradeledger.models import LedgerEntry, StockMovement
from tradeledger.services import purchase_order_service as po_service
from tradeledger.services import ledger_service
from tradeledger.services.ledger_service import Party


@pytest.fixture
def sent_po(db_session, vendor, make_product):
    product = make_product()
    po = po_service.create_purchase_order(
        vendor_id=vendor.id,
        lines=[{"product_id": product.id, "quantity_ordered": 100, "unit_cost_cents": 200}],
    )
    po_service.send_purchase_order(po.id)
    return po, product


def test_create_requires_vendor(db_session, make_product):
    product = make_product()
    with pytest.raises(MissingParty):
        po_service.create_purchase_order(
            vendor_id=None,
            lines=[{"product_id": product.id, "quantity_ordered": 1, "unit_cost_cents": 1}],
        )
    with pytest.raises(NotFound):
        po_service.create_purchase_order(
            vendor_id=999,
            lines=[{"product_id": product.id, "quantity_ordered": 1, "unit_cost_cents": 1}],
        )


def test_create_computes_totals(db_session, vendor, make_product):
    a = make_product()
    b = make_product()
    po = po_service.create_purchase_order(
        vendor_id=vendor.id,
        lines=[
            {"product_id": a.id, "quantity_ordered": 10, "unit_cost_cents": 150},
            {"product_id": b.id, "quantity_ordered": 2, "unit_cost_cents": 1000},
        ],
        tax_cents=175,
    )
    assert po.status == "draft"
    assert po.document_number == "PO-0001"
    assert po.subtotal_cents == 3500
    assert po.total_cents == 3675


def test_partial_then_full_receipt_posts_payable_once(sent_po, db_session, vendor):
    po, product = sent_po

    po = po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 60}])
    assert po.status == "partial"
    assert product.on_hand_quantity == 60
    assert db_session.query(LedgerEntry).count() == 0

    po = po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 40}])
    assert po.status == "received"
    assert po.received_at is not None
    assert product.on_hand_quantity == 100

    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    assert [(e.account_type, e.debit_cents, e.credit_cents) for e in entries] == [
        ("VENDOR", 20000, 0),
        ("PURCHASE", 0, 20000),
    ]
    assert entries[0].reference_type == "PURCHASE_ORDER"
    assert ledger_service.balance(Party.vendor(vendor.id)) == 20000


def test_over_receipt_is_clamped(sent_po, db_session):
    po, product = sent_po
    po = po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 150}])

    assert po.lines[0].quantity_received == 100
    assert po.status == "received"
    assert product.on_hand_quantity == 100


def test_zero_quantity_receipt_marks_po_partial(sent_po, db_session):
    po, product = sent_po
    po = po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 0}])

    assert po.status == "partial"
    assert po.lines[0].quantity_received == 0
    assert product.on_hand_quantity == 0
    assert db_session.query(StockMovement).count() == 0
    assert db_session.query(LedgerEntry).count() == 0


def test_receiving_a_received_po_is_a_no_op(sent_po, db_session):
    po, product = sent_po
    po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 100}])

    po = po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 100}])

    assert po.status == "received"
    assert product.on_hand_quantity == 100
    assert db_session.query(StockMovement).count() == 1
    assert db_session.query(LedgerEntry).count() == 2


def test_receive_requires_sent_po(db_session, vendor, make_product):
    product = make_product()
    po = po_service.create_purchase_order(
        vendor_id=vendor.id,
        lines=[{"product_id": product.id, "quantity_ordered": 5, "unit_cost_cents": 100}],
    )
    with pytest.raises(InvalidState):
        po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 5}])
    assert product.on_hand_quantity == 0


def test_unknown_line_rolls_back_whole_receipt(sent_po, db_session, make_product):
    po, product = sent_po
    stranger = make_product()

    with pytest.raises(ValidationError):
        po_service.receive_purchase_order(po.id, [
            {"product_id": product.id, "quantity_received": 10},
            {"product_id": stranger.id, "quantity_received": 1},
        ])

    assert product.on_hand_quantity == 0
    assert db_session.query(StockMovement).count() == 0
    assert po_service.get_purchase_order(po.id).status == "sent"


def test_cancel_rules(sent_po, db_session):
    po, product = sent_po
    po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 10}])
    po = po_service.cancel_purchase_order(po.id)
    assert po.status == "cancelled"

    with pytest.raises(InvalidState):
        po_service.cancel_purchase_order(po.id)
    with pytest.raises(InvalidState):
        po_service.receive_purchase_order(po.id, [{"product_id": product.id, "quantity_received": 1}])


def test_only_draft_can_be_edited(db_session, vendor, make_product):
    product = make_product()
    po = po_service.create_purchase_order(
        vendor_id=vendor.id,
        lines=[{"product_id": product.id, "quantity_ordered": 5, "unit_cost_cents": 100}],
    )
    po = po_service.update_purchase_order(
        po.id,
        lines=[{"product_id": product.id, "quantity_ordered": 8, "unit_cost_cents": 100}],
    )
    assert po.total_cents == 800

    po_service.send_purchase_order(po.id)
    with pytest.raises(InvalidState):
        po_service.update_purchase_order(po.id, notes="late change")
    with pytest.raises(InvalidState):
        po_service.send_purchase_order(po.id)
