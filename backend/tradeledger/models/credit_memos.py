from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CreditMemo(db.Model):
    """
    Vendor or customer credit memo (returns, damages, rate corrections).

    LIFECYCLE:
    1. DRAFT: Created, editable, no side effects
    2. APPROVED: Ledger posted and (if affects_inventory) stock restored, exactly once
    3. CANCELLED: From DRAFT, or from APPROVED with an explicit acknowledgement
       that nothing is reversed (cancelled_without_reversal=True)

    ADJUSTED and CLOSED are declared for settlement tracking; no operation
    currently moves a memo into them.
    """
    __tablename__ = "credit_memos"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_credit_memos_docnum"),
        db.Index("ix_credit_memos_type_status", "memo_type", "status"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "CREDIT_MEMO"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    memo_type = db.Column(db.String(16), nullable=False)  # VENDOR, CUSTOMER
    reason = db.Column(db.String(32), nullable=False)  # DAMAGED, RATE_DIFFERENCE, RETURN, SCHEME, OTHER
    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    reference_shipment_id = db.Column(db.Integer, db.ForeignKey("shipments.id"), nullable=True, index=True)
    reference_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    affects_inventory = db.Column(db.Boolean, nullable=False, default=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_without_reversal = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    vendor = db.relationship("Vendor")
    customer = db.relationship("Customer")
    lines = db.relationship(
        "CreditMemoLine",
        backref="credit_memo",
        lazy=True,
        order_by="CreditMemoLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "memo_type": self.memo_type,
            "reason": self.reason,
            "status": self.status,
            "vendor_id": self.vendor_id,
            "customer_id": self.customer_id,
            "reference_shipment_id": self.reference_shipment_id,
            "reference_sale_id": self.reference_sale_id,
            "affects_inventory": self.affects_inventory,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "approved_by_user_id": self.approved_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancelled_without_reversal": self.cancelled_without_reversal,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class CreditMemoLine(db.Model):
    __tablename__ = "credit_memo_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    credit_memo_id = db.Column(db.Integer, db.ForeignKey("credit_memos.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credit_memo_id": self.credit_memo_id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }
