from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class Shipment(db.Model):
    """
    Outbound (GROUND) or return-goods inbound (GROUND_RG) shipment.

    PENDING/PACKED/DISPATCHED/IN_TRANSIT are metadata-only statuses.
    DELIVERED, RETURNED and FAILED are terminal; only DELIVERED (GROUND)
    and RETURNED (GROUND_RG) move stock, once.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_shipments_docnum"),
        db.Index("ix_shipments_type_status", "shipment_type", "status"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "SHIPMENT"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)

    shipment_type = db.Column(db.String(16), nullable=False)  # GROUND, GROUND_RG
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Transport metadata
    transporter_name = db.Column(db.String(255), nullable=True)
    vehicle_number = db.Column(db.String(32), nullable=True)
    lr_number = db.Column(db.String(64), nullable=True)  # lorry receipt
    freight_charge_cents = db.Column(db.Integer, nullable=False, default=0)
    weight_kg = db.Column(db.Numeric(12, 3), nullable=True)
    volume_cbm = db.Column(db.Numeric(12, 3), nullable=True)

    dispatch_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    delivered_date = db.Column(db.DateTime(timezone=True), nullable=True)
    proof_of_delivery_url = db.Column(db.String(512), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale")
    lines = db.relationship(
        "ShipmentLine",
        backref="shipment",
        lazy=True,
        order_by="ShipmentLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "shipment_type": self.shipment_type,
            "status": self.status,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "transporter_name": self.transporter_name,
            "vehicle_number": self.vehicle_number,
            "lr_number": self.lr_number,
            "freight_charge_cents": self.freight_charge_cents,
            "weight_kg": str(self.weight_kg) if self.weight_kg is not None else None,
            "volume_cbm": str(self.volume_cbm) if self.volume_cbm is not None else None,
            "dispatch_date": to_utc_z(self.dispatch_date) if self.dispatch_date else None,
            "expected_delivery_date": to_iso_date(self.expected_delivery_date),
            "delivered_date": to_utc_z(self.delivered_date) if self.delivered_date else None,
            "proof_of_delivery_url": self.proof_of_delivery_url,
            "failure_reason": self.failure_reason,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class ShipmentLine(db.Model):
    __tablename__ = "shipment_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shipment_id = db.Column(db.Integer, db.ForeignKey("shipments.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)  # snapshot
    quantity = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shipment_id": self.shipment_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
        }
