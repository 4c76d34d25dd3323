from datetime import datetime

import pytest

from tradeledger.errors import NotFound, ValidationError
from tradeledger.models import Expense, LedgerEntry
from tradeledger.services import expense_service, integrity_service


def test_expense_posts_expense_against_payment_mode(db_session):
    expense = expense_service.record_expense(
        expense_type="Electricity",
        amount_cents=12550,
        payment_mode="UPI",
        vendor_name="City Power",
    )

    assert expense.document_number == "EXP-0001"
    entries = db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()
    assert [(e.account_type, e.debit_cents, e.credit_cents) for e in entries] == [
        ("EXPENSE", 12550, 0),
        ("UPI", 0, 12550),
    ]
    assert all(e.party_type is None for e in entries)
    assert {(e.reference_type, e.reference_id) for e in entries} == {("EXPENSE", expense.id)}
    assert entries[0].description == f"Expense {expense.document_number}"
    assert integrity_service.verify_ledger() == []


@pytest.mark.parametrize("kwargs", [
    {"expense_type": "Rent", "amount_cents": 0},
    {"expense_type": "Rent", "amount_cents": 10.5},
    {"expense_type": "", "amount_cents": 100},
    {"expense_type": "Rent", "amount_cents": 100, "payment_mode": "CHEQUE"},
    {"expense_type": "Rent", "amount_cents": 100, "payment_mode": "VENDOR"},
])
def test_invalid_expenses_write_nothing(db_session, kwargs):
    with pytest.raises(ValidationError):
        expense_service.record_expense(**kwargs)
    assert db_session.query(Expense).count() == 0
    assert db_session.query(LedgerEntry).count() == 0


def test_list_and_get_expenses(db_session):
    expense_service.record_expense(expense_type="Rent", amount_cents=50000, payment_mode="BANK",
                                   occurred_at=datetime(2026, 5, 1))
    wifi = expense_service.record_expense(expense_type="WiFi", amount_cents=1500, description="May plan",
                                          occurred_at="2026-05-03T10:00:00Z")

    assert [e.expense_type for e in expense_service.list_expenses()] == ["WiFi", "Rent"]
    assert [e.id for e in expense_service.list_expenses(expense_type="WiFi")] == [wifi.id]
    assert [e.expense_type for e in expense_service.list_expenses(to_date=datetime(2026, 5, 2))] == ["Rent"]
    assert expense_service.get_expense(wifi.id).description == "May plan"
    assert wifi.payment_mode == "CASH"

    with pytest.raises(NotFound):
        expense_service.get_expense(wifi.id + 10)
