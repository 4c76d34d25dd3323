from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Expense(db.Model):
    """Operating expense paid out of a settlement account (DR EXPENSE / CR payment mode)."""
    __tablename__ = "expenses"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_expenses_docnum"),
        db.Index("ix_expenses_type_occurred", "expense_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "EXPENSE"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    expense_type = db.Column(db.String(64), nullable=False)  # free text: Electricity, Rent, Transport...
    description = db.Column(db.String(255), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_mode = db.Column(db.String(16), nullable=False)  # CASH, BANK, UPI, CARD
    vendor_name = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "expense_type": self.expense_type,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "payment_mode": self.payment_mode,
            "vendor_name": self.vendor_name,
            "occurred_at": to_utc_z(self.occurred_at),
        }
