import pytest

from tradeledger.errors import InvalidState, MissingParty, ValidationError
from tradeledger.models import (
    Customer,
    CustomerRewardAccount,
    CustomerRewardTransaction,
    LedgerEntry,
    SaleReturn,
    StockMovement,
)
from tradeledger.services import integrity_service, ledger_service, return_service, sales_service
from tradeledger.services.ledger_service import Party


def _postings(db_session, reference_type="RETURN"):
    entries = (
        db_session.query(LedgerEntry)
        .filter_by(reference_type=reference_type)
        .order_by(LedgerEntry.id)
        .all()
    )
    return [(e.account_type, e.debit_cents, e.credit_cents) for e in entries]


def test_partial_return_restocks_and_refunds_tender(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=2500)
    sale = sales_service.create_sale(items=[{"product_id": product.id, "quantity": 2}], payment_method="cash")

    ret = return_service.create_return(
        sale_id=sale.id,
        items=[{"product_id": product.id, "quantity": 1, "reason": "damaged"}],
        reason="Customer request",
    )

    assert ret.document_number == "RET-0001"
    assert ret.refund_account == "CASH"
    assert ret.total_refund_cents == 2500
    assert ret.lines[0].restocked is True
    assert product.on_hand_quantity == 9
    movement = db_session.query(StockMovement).filter_by(movement_type="RETURN").one()
    assert (movement.quantity_change, movement.reference_type, movement.reference_id) == (1, "RETURN", ret.id)
    assert _postings(db_session) == [("SALES_RETURN", 2500, 0), ("CASH", 0, 2500)]
    assert sale.status == "PARTIALLY_RETURNED"
    assert sale.refunded_cents == 2500
    assert sale.lines[0].returned_quantity == 1


def test_refund_shares_bill_discount_and_tax(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 2}],
        bill_discount_cents=1000,
        payment_method="card",
    )
    assert sale.total_cents == 9720

    first = return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Wrong size",
    )
    second = return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Wrong size",
    )

    assert first.total_refund_cents == 4860
    assert second.total_refund_cents == 4860
    assert sale.status == "RETURNED"
    assert sale.refunded_cents == sale.total_cents
    assert product.on_hand_quantity == 10

    with pytest.raises(InvalidState):
        return_service.create_return(
            sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Again",
        )


def test_over_return_is_rejected_atomically(db_session, make_product):
    product = make_product(on_hand_quantity=5)
    sale = sales_service.create_sale(items=[{"product_id": product.id, "quantity": 2}], payment_method="cash")

    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale.id,
            items=[{"product_id": product.id, "quantity": 2}, {"product_id": product.id, "quantity": 1}],
            reason="Too many",
        )

    assert product.on_hand_quantity == 3
    assert db_session.query(SaleReturn).count() == 0
    assert _postings(db_session) == []
    assert sales_service.get_sale(sale.id).lines[0].returned_quantity == 0


@pytest.mark.parametrize("items, reason", [
    ([{"product_id": 999, "quantity": 1}], "Unknown product"),
    ([{"quantity": 1}], "Missing product"),
    ([], "Nothing returned"),
    (None, "   "),
])
def test_invalid_return_requests(db_session, make_product, items, reason):
    product = make_product(on_hand_quantity=5)
    sale = sales_service.create_sale(items=[{"product_id": product.id, "quantity": 1}], payment_method="cash")
    with pytest.raises(ValidationError):
        return_service.create_return(sale_id=sale.id, items=items, reason=reason)


def test_on_account_return_credits_customer(db_session, customer, make_product):
    product = make_product(on_hand_quantity=5, price_cents=4000)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 1}],
        payment_method="on_account",
        customer_id=customer.id,
    )

    ret = return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Faulty",
    )

    assert ret.refund_account == "CUSTOMER"
    assert _postings(db_session) == [("SALES_RETURN", 4000, 0), ("CUSTOMER", 0, 4000)]
    credit = db_session.query(LedgerEntry).filter_by(reference_type="RETURN", account_type="CUSTOMER").one()
    assert credit.party_id == customer.id
    assert ledger_service.balance(Party.customer(customer.id)) == 0
    assert db_session.get(Customer, customer.id).outstanding_balance_cents == 0


def test_store_credit_needs_a_customer(db_session, make_product):
    product = make_product(on_hand_quantity=5)
    sale = sales_service.create_sale(items=[{"product_id": product.id, "quantity": 1}], payment_method="cash")

    with pytest.raises(MissingParty):
        return_service.create_return(
            sale_id=sale.id,
            items=[{"product_id": product.id, "quantity": 1}],
            reason="Exchange later",
            refund_method="store_credit",
        )
    assert product.on_hand_quantity == 4


def test_split_sale_needs_explicit_refund_method(db_session, make_product):
    product = make_product(on_hand_quantity=5, price_cents=3000)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 1}],
        payment_method="split",
        payment_split={"cash": 1000, "card": 2000},
    )

    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Changed mind",
        )

    ret = return_service.create_return(
        sale_id=sale.id,
        items=[{"product_id": product.id, "quantity": 1}],
        reason="Changed mind",
        refund_method="digital",
    )
    assert _postings(db_session) == [("SALES_RETURN", 3000, 0), ("UPI", 0, 3000)]
    assert ret.refund_method == "digital"


def test_return_claws_back_loyalty(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 2}],
        bill_discount_cents=1000,
        payment_method="cash",
        customer_id=customer.id,
    )
    assert sale.loyalty_points_awarded == 97

    ret = return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 2}], reason="Defective batch",
    )

    account = db_session.query(CustomerRewardAccount).filter_by(customer_id=customer.id).one()
    assert account.points_balance == 0
    adjust = db_session.query(CustomerRewardTransaction).filter_by(transaction_type="ADJUST").one()
    assert adjust.points == -97
    assert (adjust.reference_type, adjust.reference_id) == ("RETURN", ret.id)


def test_service_lines_are_not_restocked(db_session, make_product):
    service = make_product(product_type="service", price_cents=3000)
    sale = sales_service.create_sale(items=[{"product_id": service.id, "quantity": 1}], payment_method="card")

    ret = return_service.create_return(
        sale_id=sale.id, items=[{"product_id": service.id, "quantity": 1}], reason="Not delivered",
    )

    assert ret.lines[0].restocked is False
    assert db_session.query(StockMovement).count() == 0
    assert _postings(db_session) == [("SALES_RETURN", 3000, 0), ("CARD", 0, 3000)]


def test_returns_keep_logs_consistent(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1999, tax_rate_bps=1800)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 3}],
        payment_method="on_account",
        customer_id=customer.id,
    )
    return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}], reason="Scratched",
        refund_method="store_credit",
    )
    return_service.create_return(
        sale_id=sale.id, items=[{"product_id": product.id, "quantity": 2}], reason="Scratched",
    )

    assert integrity_service.verify_stock() == []
    assert integrity_service.verify_ledger() == []
    assert ledger_service.balance(Party.customer(customer.id)) == 0
    assert [r.sale_id for r in return_service.list_returns(customer_id=customer.id)] == [sale.id, sale.id]
    assert return_service.get_return(return_service.list_returns(sale_id=sale.id)[0].id).sale_id == sale.id
