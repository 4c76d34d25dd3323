import logging

import pytest

from tradeledger.errors import InvalidState, MissingParty, ValidationError
from tradeledger.models import Customer, LedgerEntry, StockMovement
from tradeledger.services import credit_memo_service as memo_service
from tradeledger.services import ledger_service
from tradeledger.services.ledger_service import Party


def _customer_return(customer, product, **overrides):
    fields = dict(
        memo_type="CUSTOMER",
        reason="RETURN",
        customer_id=customer.id,
        lines=[{"product_id": product.id, "quantity": 3, "unit_price_cents": 1000, "tax_percent": 10}],
    )
    fields.update(overrides)
    return memo_service.create_credit_memo(**fields)


def test_line_tax_and_totals(db_session, customer, make_product):
    product = make_product()
    memo = _customer_return(customer, product)

    assert memo.status == "DRAFT"
    assert memo.document_number == "CM-0001"
    assert memo.lines[0].tax_cents == 300
    assert memo.lines[0].total_cents == 3300
    assert memo.subtotal_cents == 3000
    assert memo.total_cents == 3300


def test_line_tax_rounds_half_up(db_session, customer, make_product):
    product = make_product()
    memo = _customer_return(customer, product, lines=[
        {"product_id": product.id, "quantity": 1, "unit_price_cents": 5, "tax_percent": 10},
    ])
    # 5 * 10% = 0.5 -> 1
    assert memo.tax_cents == 1
    assert memo.total_cents == 6


def test_approve_customer_memo_posts_and_restocks(db_session, customer, make_product):
    product = make_product(on_hand_quantity=2)
    memo = _customer_return(customer, product)

    memo = memo_service.approve_credit_memo(memo.id, actor_user_id=7)

    assert memo.status == "APPROVED"
    assert memo.approved_by_user_id == 7
    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    assert [(e.account_type, e.debit_cents, e.credit_cents) for e in entries] == [
        ("SALES_RETURN", 3300, 0),
        ("CUSTOMER", 0, 3300),
    ]
    assert ledger_service.balance(Party.customer(customer.id)) == -3300
    assert db_session.get(Customer, customer.id).outstanding_balance_cents == -3300
    assert product.on_hand_quantity == 5

    movement = db_session.query(StockMovement).one()
    assert movement.movement_type == "CREDIT_MEMO"
    assert movement.reference_type == "CREDIT_MEMO"
    assert movement.reference_id == memo.id


def test_approve_vendor_memo(db_session, vendor, make_product):
    product = make_product(on_hand_quantity=10)
    memo = memo_service.create_credit_memo(
        memo_type="VENDOR",
        reason="DAMAGED",
        vendor_id=vendor.id,
        affects_inventory=False,
        lines=[{"product_id": product.id, "quantity": 2, "unit_price_cents": 500}],
    )
    memo_service.approve_credit_memo(memo.id)

    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    assert [(e.account_type, e.debit_cents, e.credit_cents) for e in entries] == [
        ("VENDOR", 1000, 0),
        ("PURCHASE_RETURN", 0, 1000),
    ]
    assert entries[0].party_type == "VENDOR"
    assert product.on_hand_quantity == 10


def test_approve_twice_is_rejected(db_session, customer, make_product):
    product = make_product()
    memo = _customer_return(customer, product)
    memo_service.approve_credit_memo(memo.id)

    with pytest.raises(InvalidState):
        memo_service.approve_credit_memo(memo.id)

    assert db_session.query(LedgerEntry).count() == 2
    assert product.on_hand_quantity == 3


def test_approve_without_party_is_rejected(db_session, make_product):
    product = make_product()
    memo = memo_service.create_credit_memo(
        memo_type="CUSTOMER",
        reason="OTHER",
        lines=[{"product_id": product.id, "quantity": 1, "unit_price_cents": 100}],
    )
    with pytest.raises(MissingParty):
        memo_service.approve_credit_memo(memo.id)

    assert memo_service.get_credit_memo(memo.id).status == "DRAFT"
    assert product.on_hand_quantity == 0


def test_invalid_inputs(db_session, customer, vendor, make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        _customer_return(customer, product, reason="GOODWILL")
    with pytest.raises(ValidationError):
        _customer_return(customer, product, vendor_id=vendor.id)
    with pytest.raises(ValidationError):
        _customer_return(customer, product, lines=[])
    with pytest.raises(ValidationError):
        _customer_return(customer, product, lines=[
            {"product_id": product.id, "quantity": 0, "unit_price_cents": 100},
        ])


def test_update_only_in_draft(db_session, customer, make_product):
    product = make_product()
    memo = _customer_return(customer, product)
    memo = memo_service.update_credit_memo(memo.id, lines=[
        {"product_id": product.id, "quantity": 1, "unit_price_cents": 2000, "tax_rate_bps": 500},
    ])
    assert memo.total_cents == 2100

    memo_service.approve_credit_memo(memo.id)
    with pytest.raises(InvalidState):
        memo_service.update_credit_memo(memo.id, notes="too late")


def test_cancel_draft_is_pure_status_change(db_session, customer, make_product):
    product = make_product()
    memo = _customer_return(customer, product)
    memo = memo_service.cancel_credit_memo(memo.id)

    assert memo.status == "CANCELLED"
    assert memo.cancelled_without_reversal is False
    assert db_session.query(LedgerEntry).count() == 0
    with pytest.raises(InvalidState):
        memo_service.approve_credit_memo(memo.id)


def test_cancel_approved_requires_acknowledgement(db_session, customer, make_product, caplog):
    product = make_product()
    memo = _customer_return(customer, product)
    memo_service.approve_credit_memo(memo.id)

    with pytest.raises(InvalidState):
        memo_service.cancel_credit_memo(memo.id)

    with caplog.at_level(logging.WARNING):
        memo = memo_service.cancel_credit_memo(memo.id, acknowledge_unreversed=True)

    assert memo.status == "CANCELLED"
    assert memo.cancelled_without_reversal is True
    assert "not reversed" in caplog.text
    # Effects stay in place.
    assert db_session.query(LedgerEntry).count() == 2
    assert product.on_hand_quantity == 3


def test_list_credit_memos_filters(db_session, customer, vendor, make_product):
    product = make_product()
    _customer_return(customer, product)
    memo_service.create_credit_memo(
        memo_type="VENDOR", reason="SCHEME", vendor_id=vendor.id,
        lines=[{"product_id": product.id, "quantity": 1, "unit_price_cents": 100}],
    )
    assert len(memo_service.list_credit_memos()) == 2
    assert [m.memo_type for m in memo_service.list_credit_memos(vendor_id=vendor.id)] == ["VENDOR"]
    assert memo_service.list_credit_memos(status="APPROVED") == []
