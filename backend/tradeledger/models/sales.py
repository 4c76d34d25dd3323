from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Sale(db.Model):
    """
    Completed sale / invoice snapshot.

    IMMUTABLE: amounts and lines are captured at sale time (price snapshot,
    not a live product reference) and never recomputed.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_sales_docnum"),
        db.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        db.Index("ix_sales_customer_occurred", "customer_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "SALE"

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable numbers (e.g., "S-0001", "INV-0001")
    document_number = db.Column(db.String(64), nullable=False)
    invoice_number = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    sale_type = db.Column(db.String(16), nullable=False, default="pos")  # pos, website, store_pickup
    status = db.Column(db.String(24), nullable=False, default="COMPLETED", index=True)  # COMPLETED, PARTIALLY_RETURNED, RETURNED

    payment_method = db.Column(db.String(16), nullable=False)  # cash, card, digital, split, on_account

    # Amounts (all in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    line_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    bill_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    loyalty_points_awarded = db.Column(db.Integer, nullable=False, default=0)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    lines = db.relationship("SaleLine", backref="sale", lazy=True, order_by="SaleLine.id")
    payments = db.relationship("SalePayment", backref="sale", lazy=True, order_by="SalePayment.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "sale_type": self.sale_type,
            "status": self.status,
            "payment_method": self.payment_method,
            "subtotal_cents": self.subtotal_cents,
            "line_discount_cents": self.line_discount_cents,
            "bill_discount_cents": self.bill_discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "refunded_cents": self.refunded_cents,
            "loyalty_points_awarded": self.loyalty_points_awarded,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_by_user_id": self.created_by_user_id,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["payments"] = [p.to_dict() for p in self.payments]
        return data


class SaleLine(db.Model):
    __tablename__ = "sale_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot at sale time
    sku = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)  # pre bill-discount line tax
    line_total_cents = db.Column(db.Integer, nullable=False)  # qty * price - discount
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
            "returned_quantity": self.returned_quantity,
        }


class SalePayment(db.Model):
    """One tender of a sale (a split sale has several)."""
    __tablename__ = "sale_payments"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    tender = db.Column(db.String(16), nullable=False)  # cash, card, digital, on_account
    account_type = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "tender": self.tender,
            "account_type": self.account_type,
            "amount_cents": self.amount_cents,
        }


class Order(db.Model):
    """
    Online (website / store pickup) order.

    LIFECYCLE: placed -> packed -> ready_for_pickup -> completed
               any non-terminal -> cancelled

    Placing reserves stock (committed_quantity); completion converts the
    reservation into an on-hand decrement; cancellation releases it.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_orders_docnum"),
        db.Index("ix_orders_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "ORDER"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    status = db.Column(db.String(24), nullable=False, default="placed", index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_reference = db.Column(db.String(128), nullable=True)  # gateway reference
    loyalty_points_awarded = db.Column(db.Integer, nullable=False, default=0)

    placed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        order_by="OrderLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "customer_id": self.customer_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "payment_reference": self.payment_reference,
            "loyalty_points_awarded": self.loyalty_points_awarded,
            "placed_at": to_utc_z(self.placed_at) if self.placed_at else None,
            "packed_at": to_utc_z(self.packed_at) if self.packed_at else None,
            "ready_at": to_utc_z(self.ready_at) if self.ready_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    __tablename__ = "order_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
        }
