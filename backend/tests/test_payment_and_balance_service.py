from datetime import date, datetime

import pytest

from tradeledger.errors import MissingParty, NotFound, ValidationError
from tradeledger.models import Customer, PartyPayment
from tradeledger.services import balance_service, payment_service, purchase_order_service, sales_service


def _on_account_sale(customer, product, quantity, when):
    return sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": quantity}],
        payment_method="on_account",
        customer_id=customer.id,
        occurred_at=when,
    )


def _received_po(vendor, product, quantity, unit_cost, expected_date):
    po = purchase_order_service.create_purchase_order(
        vendor_id=vendor.id,
        lines=[{"product_id": product.id, "quantity_ordered": quantity, "unit_cost_cents": unit_cost}],
        expected_date=expected_date,
    )
    purchase_order_service.send_purchase_order(po.id)
    return purchase_order_service.receive_purchase_order(
        po.id, [{"product_id": product.id, "quantity_received": quantity}],
    )


def test_customer_receipt_reduces_receivable(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1000)
    _on_account_sale(customer, product, 5, datetime(2026, 3, 1, 10, 0))

    receipt = payment_service.record_customer_receipt(customer_id=customer.id, amount_cents=2000)

    assert receipt.document_number == "RCT-0001"
    assert receipt.direction == "RECEIPT"
    assert balance_service.get_balance("CUSTOMER", customer.id) == 3000
    assert db_session.get(Customer, customer.id).outstanding_balance_cents == 3000


def test_vendor_payment_reduces_payable(db_session, vendor, make_product):
    product = make_product()
    _received_po(vendor, product, 10, 500, date(2026, 3, 1))

    payment = payment_service.record_vendor_payment(vendor_id=vendor.id, amount_cents=2000, reference_number="CHQ-1")

    assert payment.document_number == "PAY-0001"
    assert payment.settlement_account == "BANK"
    assert balance_service.get_balance("VENDOR", vendor.id) == 3000


def test_payment_validation(db_session, vendor):
    with pytest.raises(MissingParty):
        payment_service.record_vendor_payment(vendor_id=None, amount_cents=100)
    with pytest.raises(ValidationError):
        payment_service.record_vendor_payment(vendor_id=vendor.id, amount_cents=0)
    with pytest.raises(ValidationError):
        payment_service.record_vendor_payment(vendor_id=vendor.id, amount_cents=100, settlement_account="SALES")
    with pytest.raises(NotFound):
        payment_service.record_customer_receipt(customer_id=999, amount_cents=100)
    assert db_session.query(PartyPayment).count() == 0


def test_statement_running_balance(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1000)
    _on_account_sale(customer, product, 2, datetime(2026, 1, 10, 9, 0))
    payment_service.record_customer_receipt(
        customer_id=customer.id, amount_cents=500, occurred_at=datetime(2026, 2, 1, 9, 0),
    )
    _on_account_sale(customer, product, 1, datetime(2026, 3, 1, 9, 0))

    statement = balance_service.get_statement(
        "CUSTOMER", customer.id,
        from_date=datetime(2026, 2, 1), to_date=datetime(2026, 3, 31),
    )

    assert statement["party_name"] == "Jane Buyer"
    assert statement["opening_balance_cents"] == 2000
    assert [e["running_balance_cents"] for e in statement["entries"]] == [1500, 2500]
    assert statement["closing_balance_cents"] == 2500


def test_balance_as_of(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1000)
    _on_account_sale(customer, product, 2, datetime(2026, 1, 10, 9, 0))
    _on_account_sale(customer, product, 1, datetime(2026, 3, 1, 9, 0))

    assert balance_service.get_balance("CUSTOMER", customer.id, as_of=datetime(2026, 1, 10, 9, 0)) == 2000
    assert balance_service.get_balance("CUSTOMER", customer.id) == 3000


def test_outstanding_includes_utilization(db_session, customer, make_product):
    product = make_product(on_hand_quantity=100, price_cents=1000)
    _on_account_sale(customer, product, 30, datetime(2026, 1, 10, 9, 0))
    paid_up = Customer(name="Paid Up", email="paid@example.com")
    db_session.add(paid_up)
    db_session.commit()

    rows = balance_service.list_outstanding("CUSTOMER")

    assert len(rows) == 1
    assert rows[0]["party_id"] == customer.id
    assert rows[0]["balance_cents"] == 30000
    assert rows[0]["credit_utilization_pct"] == 60


def test_credit_utilization_caps_at_100():
    assert balance_service.credit_utilization(150000, 100000) == 100
    assert balance_service.credit_utilization(1, 300) == 0
    assert balance_service.credit_utilization(500, None) is None


def test_overdue_customers_use_terms(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1000)
    _on_account_sale(customer, product, 1, datetime(2026, 1, 1, 12, 0))

    assert balance_service.list_overdue("CUSTOMER", today=date(2026, 1, 31)) == []

    rows = balance_service.list_overdue("CUSTOMER", today=date(2026, 2, 10))
    assert len(rows) == 1
    assert rows[0]["due_date"] == "2026-01-31"
    assert rows[0]["payment_terms_days"] == 30
    assert rows[0]["overdue_days"] == 10


def test_overdue_vendors_use_expected_date(db_session, vendor, make_product):
    product = make_product()
    _received_po(vendor, product, 4, 250, date(2026, 1, 15))

    rows = balance_service.list_overdue("VENDOR", today=date(2026, 3, 1))

    assert len(rows) == 1
    assert rows[0]["balance_cents"] == 1000
    assert rows[0]["due_date"] == "2026-02-14"
    assert rows[0]["overdue_days"] == 15


def test_unknown_party_type(db_session):
    with pytest.raises(ValidationError):
        balance_service.list_outstanding("EMPLOYEE")
    with pytest.raises(NotFound):
        balance_service.get_balance("VENDOR", 12345)
