from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class SaleReturn(db.Model):
    """
    Goods handed back against a completed sale.

    A return is written complete in one unit of work: stock restored for
    stock-tracked lines, refund posted DR SALES_RETURN / CR <refund account>,
    and the sale's status moved to PARTIALLY_RETURNED or RETURNED.
    """
    __tablename__ = "sale_returns"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_sale_returns_docnum"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "RETURN"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED")

    reason = db.Column(db.String(255), nullable=False)
    refund_method = db.Column(db.String(16), nullable=False)  # original, cash, card, digital, store_credit
    refund_account = db.Column(db.String(32), nullable=False)
    total_refund_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True, order_by="SaleReturn.id"))
    lines = db.relationship(
        "SaleReturnLine",
        backref="sale_return",
        lazy=True,
        order_by="SaleReturnLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "reason": self.reason,
            "refund_method": self.refund_method,
            "refund_account": self.refund_account,
            "total_refund_cents": self.total_refund_cents,
            "occurred_at": to_utc_z(self.occurred_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleReturnLine(db.Model):
    __tablename__ = "sale_return_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    sale_line_id = db.Column(db.Integer, db.ForeignKey("sale_lines.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    restocked = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_line_id": self.sale_line_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "reason": self.reason,
            "restocked": self.restocked,
        }
