from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

PRODUCT_TYPE_INVENTORY = "inventory"
PRODUCT_TYPE_NON_INVENTORY = "non_inventory"
PRODUCT_TYPE_SERVICE = "service"
PRODUCT_TYPES = {PRODUCT_TYPE_INVENTORY, PRODUCT_TYPE_NON_INVENTORY, PRODUCT_TYPE_SERVICE}


class Product(db.Model):
    """
    Product master data plus its stock projection.

    QUANTITY FIELDS:
    - on_hand_quantity: physical stock, mutated only through stock_ledger_service.adjust
    - committed_quantity: reserved by open online orders (reserve/release)
    - opening_quantity: on-hand at creation; on_hand = opening + SUM(movements)

    Only product_type='inventory' is stock-tracked. Service and non-inventory
    products never get movements and are exempt from availability checks.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.UniqueConstraint("plu", name="uq_products_plu"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "PRODUCT"

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    plu = db.Column(db.String(16), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    product_type = db.Column(db.String(16), nullable=False, default=PRODUCT_TYPE_INVENTORY)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_price_cents = db.Column(db.Integer, nullable=True)  # internal only, never on receipts
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    opening_quantity = db.Column(db.Integer, nullable=False, default=0)
    on_hand_quantity = db.Column(db.Integer, nullable=False, default=0)
    committed_quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return (self.on_hand_quantity or 0) - (self.committed_quantity or 0)

    @property
    def is_stock_tracked(self) -> bool:
        return self.product_type == PRODUCT_TYPE_INVENTORY

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "plu": self.plu,
            "name": self.name,
            "product_type": self.product_type,
            "price_cents": self.price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "on_hand_quantity": self.on_hand_quantity,
            "committed_quantity": self.committed_quantity,
            "available_quantity": self.available_quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock movement log.

    Exactly one row per on-hand change. Rows are never updated or deleted;
    corrections are new ADJUSTMENT rows.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_change = db.Column(db.Integer, nullable=False)

    # Originating document; NULL for free-standing manual adjustments
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    note = db.Column(db.String(255), nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity_change": self.quantity_change,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class Vendor(db.Model):
    """
    Vendor (supplier) master data.

    Payable balance is NOT stored here; it is derived from LedgerEntry rows
    (see ledger_service.balance).
    """
    __tablename__ = "vendors"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_vendors_code"),
        db.Index("ix_vendors_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "VENDOR"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), nullable=True)
    contact_name = db.Column(db.String(255), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)

    payment_terms_days = db.Column(db.Integer, nullable=True)
    credit_limit_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "address": self.address,
            "payment_terms_days": self.payment_terms_days,
            "credit_limit_cents": self.credit_limit_cents,
            "is_active": self.is_active,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
