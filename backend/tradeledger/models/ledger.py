from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

# Control accounts carry a party; every other account is a contra account.
ACCOUNT_VENDOR = "VENDOR"
ACCOUNT_CUSTOMER = "CUSTOMER"
ACCOUNT_CASH = "CASH"
ACCOUNT_BANK = "BANK"
ACCOUNT_UPI = "UPI"
ACCOUNT_CARD = "CARD"
ACCOUNT_PURCHASE = "PURCHASE"
ACCOUNT_PURCHASE_RETURN = "PURCHASE_RETURN"
ACCOUNT_SALES = "SALES"
ACCOUNT_SALES_RETURN = "SALES_RETURN"
ACCOUNT_EXPENSE = "EXPENSE"

ACCOUNT_TYPES = {
    ACCOUNT_VENDOR, ACCOUNT_CUSTOMER, ACCOUNT_CASH, ACCOUNT_BANK, ACCOUNT_UPI, ACCOUNT_CARD,
    ACCOUNT_PURCHASE, ACCOUNT_PURCHASE_RETURN, ACCOUNT_SALES, ACCOUNT_SALES_RETURN, ACCOUNT_EXPENSE,
}

PARTY_VENDOR = "VENDOR"
PARTY_CUSTOMER = "CUSTOMER"
PARTY_TYPES = {PARTY_VENDOR, PARTY_CUSTOMER}

# Control account -> party type it must carry
CONTROL_ACCOUNTS = {
    ACCOUNT_VENDOR: PARTY_VENDOR,
    ACCOUNT_CUSTOMER: PARTY_CUSTOMER,
}

# Accounts a party payment may settle through
SETTLEMENT_ACCOUNTS = {ACCOUNT_CASH, ACCOUNT_BANK, ACCOUNT_UPI, ACCOUNT_CARD}


class LedgerEntry(db.Model):
    """
    One row of a double-entry posting.

    INVARIANTS:
    - Exactly one of debit_cents/credit_cents is positive, the other is zero.
    - Rows sharing a posting_id net to zero and are flushed together.
    - Rows are never updated or deleted; reversal is a new opposite posting.
    - party_type/party_id is set only on VENDOR/CUSTOMER control rows.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.CheckConstraint("debit_cents >= 0", name="ck_ledger_debit_nonneg"),
        db.CheckConstraint("credit_cents >= 0", name="ck_ledger_credit_nonneg"),
        db.Index("ix_ledger_party_occurred", "party_type", "party_id", "occurred_at"),
        db.Index("ix_ledger_reference", "reference_type", "reference_id"),
        db.Index("ix_ledger_account_occurred", "account_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    posting_id = db.Column(db.String(36), nullable=False, index=True)

    account_type = db.Column(db.String(32), nullable=False)
    party_type = db.Column(db.String(16), nullable=True)
    party_id = db.Column(db.Integer, nullable=True)

    debit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_cents = db.Column(db.Integer, nullable=False, default=0)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)

    # Set on rows written by reverse_posting
    reverses_posting_id = db.Column(db.String(36), nullable=True, index=True)

    description = db.Column(db.String(255), nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "posting_id": self.posting_id,
            "account_type": self.account_type,
            "party_type": self.party_type,
            "party_id": self.party_id,
            "debit_cents": self.debit_cents,
            "credit_cents": self.credit_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reverses_posting_id": self.reverses_posting_id,
            "description": self.description,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class PartyPayment(db.Model):
    """
    Money settled with a party outside of a sale.

    direction=PAYMENT: we pay a vendor (reduces payable).
    direction=RECEIPT: a customer pays us (reduces receivable).
    """
    __tablename__ = "party_payments"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_party_payments_docnum"),
        db.Index("ix_party_payments_party", "party_type", "party_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    direction = db.Column(db.String(16), nullable=False)  # PAYMENT, RECEIPT
    party_type = db.Column(db.String(16), nullable=False)
    party_id = db.Column(db.Integer, nullable=False)

    settlement_account = db.Column(db.String(32), nullable=False)  # CASH, BANK, UPI, CARD
    amount_cents = db.Column(db.Integer, nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)  # cheque / UTR / slip number
    notes = db.Column(db.Text, nullable=True)

    actor_user_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def reference_kind(self) -> str:
        return self.direction

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "direction": self.direction,
            "party_type": self.party_type,
            "party_id": self.party_id,
            "settlement_account": self.settlement_account,
            "amount_cents": self.amount_cents,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
