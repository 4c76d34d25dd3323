from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class PurchaseOrder(db.Model):
    """
    Purchase order from a vendor.

    LIFECYCLE (lower-case statuses):
    draft -> sent -> partial -> received
    draft/sent/partial -> cancelled

    Header status is a pure function of line completion once receiving starts.
    The vendor payable is posted once, on the transition into 'received'.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_purchase_orders_docnum"),
        db.Index("ix_purchase_orders_vendor_status", "vendor_id", "status"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "PURCHASE_ORDER"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)

    expected_date = db.Column(db.Date, nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    vendor = db.relationship("Vendor", backref=db.backref("purchase_orders", lazy=True))
    lines = db.relationship(
        "PurchaseOrderLine",
        backref="purchase_order",
        lazy=True,
        order_by="PurchaseOrderLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "vendor_id": self.vendor_id,
            "status": self.status,
            "expected_date": to_iso_date(self.expected_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "sent_at": to_utc_z(self.sent_at) if self.sent_at else None,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class PurchaseOrderLine(db.Model):
    __tablename__ = "purchase_order_lines"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_lines_po_product"),
        db.CheckConstraint("quantity_received <= quantity_ordered", name="ck_po_lines_not_over_received"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_ordered = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    line_cost_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")

    @property
    def quantity_outstanding(self) -> int:
        return self.quantity_ordered - (self.quantity_received or 0)

    @property
    def is_complete(self) -> bool:
        return (self.quantity_received or 0) == self.quantity_ordered

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity_ordered": self.quantity_ordered,
            "quantity_received": self.quantity_received,
            "unit_cost_cents": self.unit_cost_cents,
            "line_cost_cents": self.line_cost_cents,
        }
