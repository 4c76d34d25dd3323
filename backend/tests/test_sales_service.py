import pytest

from tradeledger.errors import InsufficientStock, MissingParty, SplitMismatch, ValidationError
from tradeledger.models import Customer, CustomerRewardAccount, LedgerEntry, Sale, StockMovement
from tradeledger.services import ledger_service, sales_service
from tradeledger.services.ledger_service import Party


def _postings(db_session):
    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    return [(e.account_type, e.debit_cents, e.credit_cents) for e in entries]


def test_bill_discount_scales_tax(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    totals = sales_service.compute_totals(
        [{"product_id": product.id, "quantity": 2}],
        bill_discount_cents=1000,
    )
    assert totals.subtotal_cents == 10000
    assert totals.tax_cents == 720
    assert totals.total_cents == 9720


def test_full_bill_discount_zeroes_tax(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=10000, tax_rate_bps=800)
    totals = sales_service.compute_totals(
        [{"product_id": product.id, "quantity": 1}],
        bill_discount_cents=10000,
    )
    assert totals.tax_cents == 0
    assert totals.total_cents == 0


def test_line_discount_reduces_taxable_amount(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=1000, tax_rate_bps=1000)
    totals = sales_service.compute_totals([{"product_id": product.id, "quantity": 2, "line_discount_cents": 500}])
    assert totals.line_discount_cents == 500
    assert totals.tax_cents == 150
    assert totals.total_cents == 1650


def test_repeated_items_are_consolidated(db_session, make_product):
    product = make_product(on_hand_quantity=10)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 1}, {"product_id": product.id, "quantity": 2}],
        payment_method="cash",
    )
    assert len(sale.lines) == 1
    assert sale.lines[0].quantity == 3
    assert product.on_hand_quantity == 7
    assert db_session.query(StockMovement).count() == 1


def test_cash_sale_posts_and_decrements(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=2500)
    sale = sales_service.create_sale(items=[{"product_id": product.id, "quantity": 2}], payment_method="cash")

    assert sale.status == "COMPLETED"
    assert sale.document_number == "S-0001"
    assert sale.invoice_number == "INV-0001"
    assert sale.total_cents == 5000
    assert product.on_hand_quantity == 8
    assert _postings(db_session) == [("CASH", 5000, 0), ("SALES", 0, 5000)]


def test_split_payment_within_tolerance(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 2}],
        bill_discount_cents=1000,
        payment_method="split",
        payment_split={"cash": 5000, "card": 4719},
    )
    assert sale.total_cents == 9720
    assert sorted((p.tender, p.amount_cents) for p in sale.payments) == [("card", 4720), ("cash", 5000)]
    assert _postings(db_session) == [("CASH", 5000, 0), ("CARD", 4720, 0), ("SALES", 0, 9720)]


def test_split_mismatch_leaves_no_trace(db_session, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    with pytest.raises(SplitMismatch) as excinfo:
        sales_service.create_sale(
            items=[{"product_id": product.id, "quantity": 2}],
            bill_discount_cents=1000,
            payment_method="split",
            payment_split={"cash": 5000, "card": 4000},
        )
    assert excinfo.value.details["total_cents"] == 9720
    assert db_session.query(Sale).count() == 0
    assert db_session.query(LedgerEntry).count() == 0
    assert product.on_hand_quantity == 10


def test_insufficient_stock_is_atomic(db_session, make_product):
    plenty = make_product(on_hand_quantity=10)
    scarce = make_product(on_hand_quantity=1)

    with pytest.raises(InsufficientStock) as excinfo:
        sales_service.create_sale(
            items=[{"product_id": plenty.id, "quantity": 2}, {"product_id": scarce.id, "quantity": 2}],
            payment_method="cash",
        )

    assert excinfo.value.details == {"product_id": scarce.id, "requested": 2, "available": 1}
    assert plenty.on_hand_quantity == 10
    assert db_session.query(StockMovement).count() == 0


def test_committed_stock_is_not_sellable(db_session, make_product):
    product = make_product(on_hand_quantity=5, committed_quantity=4)
    with pytest.raises(InsufficientStock):
        sales_service.create_sale(items=[{"product_id": product.id, "quantity": 2}], payment_method="cash")


def test_service_items_skip_stock(db_session, make_product):
    service = make_product(product_type="service", price_cents=3000)
    sale = sales_service.create_sale(items=[{"product_id": service.id, "quantity": 4}], payment_method="card")

    assert sale.total_cents == 12000
    assert db_session.query(StockMovement).count() == 0
    assert _postings(db_session) == [("CARD", 12000, 0), ("SALES", 0, 12000)]


def test_on_account_sale_builds_receivable(db_session, customer, make_product):
    product = make_product(on_hand_quantity=5, price_cents=4000)
    sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 1}],
        payment_method="on_account",
        customer_id=customer.id,
    )

    assert ledger_service.balance(Party.customer(customer.id)) == 4000
    assert db_session.get(Customer, customer.id).outstanding_balance_cents == 4000
    entry = db_session.query(LedgerEntry).filter_by(account_type="CUSTOMER").one()
    assert entry.party_id == customer.id


def test_on_account_requires_customer(db_session, make_product):
    product = make_product(on_hand_quantity=5)
    with pytest.raises(MissingParty):
        sales_service.create_sale(items=[{"product_id": product.id, "quantity": 1}], payment_method="on_account")


def test_customer_sale_awards_loyalty(db_session, customer, make_product):
    product = make_product(on_hand_quantity=10, price_cents=5000, tax_rate_bps=800)
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 2}],
        bill_discount_cents=1000,
        payment_method="cash",
        customer_id=customer.id,
    )

    assert sale.loyalty_points_awarded == 97
    account = db_session.query(CustomerRewardAccount).filter_by(customer_id=customer.id).one()
    assert account.points_balance == 97
    refreshed = db_session.get(Customer, customer.id)
    assert refreshed.total_spent_cents == 9720
    assert refreshed.total_visits == 1


def test_tax_exempt_customer_pays_no_tax(db_session, customer, make_product):
    customer.tax_exempt = True
    db_session.commit()
    product = make_product(on_hand_quantity=5, price_cents=1000, tax_rate_bps=1800)

    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 1}],
        payment_method="cash",
        customer_id=customer.id,
    )
    assert sale.tax_cents == 0
    assert sale.total_cents == 1000


def test_rejects_bad_discounts(db_session, make_product):
    product = make_product(on_hand_quantity=5, price_cents=1000)
    with pytest.raises(ValidationError):
        sales_service.compute_totals([{"product_id": product.id, "quantity": 1, "line_discount_cents": 1001}])
    with pytest.raises(ValidationError):
        sales_service.compute_totals([{"product_id": product.id, "quantity": 1}], bill_discount_cents=1001)
    with pytest.raises(ValidationError):
        sales_service.compute_totals([])
