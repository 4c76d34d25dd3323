from datetime import datetime

import pytest

from tradeledger.errors import InvalidState, MissingParty, UnbalancedPosting, ValidationError
from tradeledger.models import LedgerEntry, PartyPayment
from tradeledger.references import DocumentRef
from tradeledger.services import ledger_service
from tradeledger.services.ledger_service import Party, PostingLine


def _ref(db_session, vendor, amount=100):
    """Any persisted document works as a reference; use a payment row."""
    doc = PartyPayment(
        document_number=f"PAY-T{amount}",
        direction="PAYMENT",
        party_type="VENDOR",
        party_id=vendor.id,
        settlement_account="CASH",
        amount_cents=amount,
    )
    db_session.add(doc)
    db_session.flush()
    return DocumentRef("PAYMENT", doc.id)


def test_post_writes_balanced_rows_with_shared_posting_id(db_session, vendor):
    ref = _ref(db_session, vendor)
    entries = ledger_service.post(
        [
            PostingLine.debit("VENDOR", 2000, party=Party.vendor(vendor.id)),
            PostingLine.credit("PURCHASE", 2000),
        ],
        reference=ref,
    )
    db_session.commit()

    assert len(entries) == 2
    assert len({e.posting_id for e in entries}) == 1
    assert entries[1].party_type is None
    assert ledger_service.balance(Party.vendor(vendor.id)) == 2000


def test_unbalanced_posting_is_rejected_and_logged(db_session, vendor, caplog):
    ref = _ref(db_session, vendor)
    with pytest.raises(UnbalancedPosting):
        ledger_service.post(
            [
                PostingLine.debit("VENDOR", 2000, party=Party.vendor(vendor.id)),
                PostingLine.credit("PURCHASE", 1999),
            ],
            reference=ref,
        )
    assert db_session.query(LedgerEntry).count() == 0
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


@pytest.mark.parametrize("line", [
    PostingLine("CASH", debit_cents=10, credit_cents=10),
    PostingLine("CASH"),
    PostingLine("CASH", debit_cents=-5),
    PostingLine("NOT_AN_ACCOUNT", debit_cents=5),
])
def test_malformed_rows_are_rejected(db_session, vendor, line):
    ref = _ref(db_session, vendor)
    with pytest.raises(ValidationError):
        ledger_service.post([line], reference=ref)


def test_control_account_requires_party(db_session, vendor):
    ref = _ref(db_session, vendor)
    with pytest.raises(MissingParty):
        ledger_service.post(
            [PostingLine.debit("VENDOR", 100), PostingLine.credit("PURCHASE", 100)],
            reference=ref,
        )


def test_contra_account_cannot_carry_party(db_session, vendor):
    ref = _ref(db_session, vendor)
    with pytest.raises(ValidationError):
        ledger_service.post(
            [
                PostingLine.debit("VENDOR", 100, party=Party.vendor(vendor.id)),
                PostingLine.credit("PURCHASE", 100, party=Party.vendor(vendor.id)),
            ],
            reference=ref,
        )


def test_balance_as_of_is_inclusive(db_session, vendor):
    ref = _ref(db_session, vendor)
    party = Party.vendor(vendor.id)
    for day, amount in ((1, 500), (5, 300), (9, 200)):
        ledger_service.post(
            [PostingLine.debit("VENDOR", amount, party=party), PostingLine.credit("PURCHASE", amount)],
            reference=ref,
            occurred_at=datetime(2026, 3, day),
        )
    db_session.commit()

    assert ledger_service.balance(party, as_of=datetime(2026, 3, 5)) == 800
    assert ledger_service.balance(party, as_of=datetime(2026, 3, 4)) == 500
    assert ledger_service.balance(party) == 1000


def test_statement_folds_from_opening_anchor(db_session, vendor):
    ref = _ref(db_session, vendor)
    party = Party.vendor(vendor.id)
    ledger_service.post(
        [PostingLine.debit("VENDOR", 1000, party=party), PostingLine.credit("PURCHASE", 1000)],
        reference=ref, occurred_at=datetime(2026, 1, 10),
    )
    ledger_service.post(
        [PostingLine.debit("BANK", 400), PostingLine.credit("VENDOR", 400, party=party)],
        reference=ref, occurred_at=datetime(2026, 2, 1),
    )
    ledger_service.post(
        [PostingLine.debit("VENDOR", 250, party=party), PostingLine.credit("PURCHASE", 250)],
        reference=ref, occurred_at=datetime(2026, 2, 15),
    )
    db_session.commit()

    stmt = ledger_service.statement(party, from_date=datetime(2026, 2, 1), to_date=datetime(2026, 2, 28))

    assert stmt["opening_balance_cents"] == 1000
    assert [row["running_balance_cents"] for row in stmt["entries"]] == [600, 850]
    assert stmt["closing_balance_cents"] == 850
    assert stmt["closing_balance_cents"] == ledger_service.balance(party, as_of=datetime(2026, 2, 28))


def test_statement_limit_truncates_rows_not_closing_balance(db_session, vendor):
    ref = _ref(db_session, vendor)
    party = Party.vendor(vendor.id)
    for day, amount in ((1, 500), (2, 300), (3, 200)):
        ledger_service.post(
            [PostingLine.debit("VENDOR", amount, party=party), PostingLine.credit("PURCHASE", amount)],
            reference=ref,
            occurred_at=datetime(2026, 4, day),
        )
    db_session.commit()

    stmt = ledger_service.statement(party, to_date=datetime(2026, 4, 30), limit=2)

    assert [row["running_balance_cents"] for row in stmt["entries"]] == [500, 800]
    assert stmt["closing_balance_cents"] == 1000
    assert stmt["closing_balance_cents"] == ledger_service.balance(party, as_of=datetime(2026, 4, 30))


def test_reverse_posting_mirrors_and_cannot_repeat(db_session, vendor):
    ref = _ref(db_session, vendor)
    party = Party.vendor(vendor.id)
    entries = ledger_service.post(
        [PostingLine.debit("VENDOR", 700, party=party), PostingLine.credit("PURCHASE", 700)],
        reference=ref,
    )
    posting_id = entries[0].posting_id

    reversal = ledger_service.reverse_posting(posting_id)
    db_session.commit()

    assert all(e.reverses_posting_id == posting_id for e in reversal)
    assert ledger_service.balance(party) == 0
    with pytest.raises(InvalidState):
        ledger_service.reverse_posting(posting_id)


def test_balances_bulk_groups_by_party(db_session, vendor):
    ref = _ref(db_session, vendor)
    ledger_service.post(
        [PostingLine.debit("VENDOR", 300, party=Party.vendor(vendor.id)), PostingLine.credit("PURCHASE", 300)],
        reference=ref,
    )
    db_session.commit()
    assert ledger_service.balances_bulk("VENDOR") == {vendor.id: 300}
    assert ledger_service.balances_bulk("VENDOR", []) == {}
